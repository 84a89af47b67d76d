# Outbound translation: CanonicalMessage → Mattermost calls.
#
# What a message can do depends on the sink picked by the connection plan:
#
#   webhook – post only.  Edits are posted as new messages and deletes are
#             accepted and ignored, because incoming webhooks have no verb
#             for either.  Files are sent as their media-server URL appended
#             to the text.  Every payload carries the bridge-origin marker so
#             our own posts can be recognised when they come back in.
#   session – post, edit, delete, and native file upload.

from __future__ import annotations

from typing import TYPE_CHECKING

import services.logger as log
from services.config_schema import GeneralConfig, MattermostConfig
from services.message import CanonicalMessage, EventKind
from drivers.mattermost import action
from drivers.mattermost.avatar import AvatarCache
from drivers.mattermost.plan import ConnectionPlan, Outbound

if TYPE_CHECKING:
    from drivers.mattermost.client import MattermostClient
    from drivers.mattermost.hook import MattermostHook

l = log.get_logger()

ORIGIN_PROP = "matterbridge"


class OutboundTranslator:

    def __init__(
        self,
        instance_id: str,
        config:      MattermostConfig,
        general:     GeneralConfig,
        plan:        ConnectionPlan,
        avatars:     AvatarCache,
        client:      MattermostClient | None = None,
        hook:        MattermostHook | None   = None,
    ):
        self.instance_id = instance_id
        self.config      = config
        self.general     = general
        self.plan        = plan
        self.avatars     = avatars
        self.client      = client
        self.hook        = hook

    def _tag(self) -> str:
        return f"Mattermost [{self.instance_id}]"

    async def send(self, msg: CanonicalMessage) -> str:
        """Deliver *msg*; returns the Mattermost post id or ``""``."""
        l.debug(
            f"{self._tag()} sending {msg.kind.value} from {msg.username!r} "
            f"to {msg.channel!r} (id={msg.id!r}, {len(msg.extra)} extra)"
        )

        # The gateway hands avatar downloads back once they are on the media
        # server; all that is left to do is remember the hash.
        if msg.kind is EventKind.AVATAR_DOWNLOAD:
            files = msg.files()
            if files and files[0].content_hash:
                self.avatars.confirm_upload(msg.user_id, files[0].content_hash)
            return ""

        text = self._render_text(msg)

        if self.plan.outbound is Outbound.WEBHOOK:
            return await self._send_webhook(msg, text)
        if self.plan.outbound is Outbound.SESSION:
            return await self._send_session(msg, text)

        l.warning(f"{self._tag()} is receive-only, dropping message to {msg.channel!r}")
        return ""

    def _render_text(self, msg: CanonicalMessage) -> str:
        text = msg.text
        if msg.kind is EventKind.USER_ACTION:
            text = action.encode(text)
        elif msg.kind is EventKind.FILE_TOO_LARGE:
            text = "\n".join(
                f"file {n.name} too big to download "
                f"({n.size} > allowed size: {self.general.media_download_size})"
                for n in msg.notices()
            )
        return self._with_nick(msg, text)

    def _with_nick(self, msg: CanonicalMessage, text: str) -> str:
        if self.config.prefix_messages_with_nick:
            return msg.username + text
        return text

    # ------------------------------------------------------------------
    # Webhook sink
    # ------------------------------------------------------------------

    async def _send_webhook(self, msg: CanonicalMessage, text: str) -> str:
        if msg.kind is EventKind.MESSAGE_DELETE:
            l.debug(f"{self._tag()} webhooks cannot delete, ignoring delete of {msg.id!r}")
            return ""

        for f in msg.files():
            if f.url:
                text = f"{text} {f.url}" if text else f.url

        await self.hook.send({
            "channel":  msg.channel,
            "username": msg.username,
            "icon_url": msg.avatar or self.config.icon_url,
            "text":     text,
            "props":    {ORIGIN_PROP: True},
        })
        return ""

    # ------------------------------------------------------------------
    # Session sink
    # ------------------------------------------------------------------

    async def _send_session(self, msg: CanonicalMessage, text: str) -> str:
        if msg.kind is EventKind.MESSAGE_DELETE:
            if not msg.id:
                return ""
            await self.client.delete(msg.id)
            return msg.id

        # Files we have no bytes for can only be linked
        for f in msg.files():
            if f.data is None and f.url:
                text = f"{text} {f.url}" if text else f.url

        files = [f for f in msg.files() if f.data is not None]
        if files:
            channel_id = await self.client.channel_id(msg.channel)
            post_id = ""
            for i, f in enumerate(files):
                try:
                    file_id = await self.client.upload_file(f.data, channel_id, f.name)
                except Exception as e:
                    l.error(f"{self._tag()} upload of {f.name!r} failed, not posting caption: {e}")
                    raise
                if f.comment:
                    caption = self._with_nick(msg, f.comment)
                else:
                    caption = text if i == 0 else ""
                post_id = await self.client.post_with_files(channel_id, caption, [file_id])
            return post_id

        if msg.id:
            return await self.client.edit(msg.id, text)

        channel_id = await self.client.channel_id(msg.channel)
        return await self.client.post(channel_id, text)
