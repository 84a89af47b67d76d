# Inbound event normalization.
#
# Both pumps hand us loosely-typed dicts: enriched websocket events from the
# session client, or outgoing-webhook bodies from the webhook server.  They
# are validated into the models below first; fields of the wrong type are
# treated as absent, and events that still fail validation are skipped.

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Annotated, Any

import aiohttp
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

import services.logger as log
from services.config_schema import GeneralConfig, MattermostConfig
from services.error import BridgeError
from services.message import (
    AttachmentMeta,
    CanonicalMessage,
    EventKind,
    FileAttachment,
    FileTooLargeNotice,
)
from drivers.mattermost import action
from drivers.mattermost.avatar import AvatarCache, MediaGuard

if TYPE_CHECKING:
    from drivers.mattermost.client import MattermostClient

l = log.get_logger()

POST_EVENTS = ("posted", "post_edited", "post_deleted")
JOIN_LEAVE_TYPES = ("system_join_leave", "system_join_channel", "system_leave_channel")
SYSTEM_USER = "system"

_FETCH_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, BridgeError)


# ---------------------------------------------------------------------------
# Validated vendor shapes
# ---------------------------------------------------------------------------

def _typed(tp: type, default: Any = None) -> BeforeValidator:
    """Replace a value of the wrong type by *default* instead of failing."""
    return BeforeValidator(lambda v: v if isinstance(v, tp) else default)


def _str_list(v: object) -> list[str]:
    if not isinstance(v, list):
        return []
    return [x for x in v if isinstance(x, str)]


class PostProps(BaseModel):
    model_config = ConfigDict(extra="ignore")

    from_bridge:       Annotated[bool | None, _typed(bool)] = Field(None, alias="matterbridge")
    override_username: Annotated[str | None, _typed(str)]   = None
    attachments:       Annotated[list | None, _typed(list)] = None


class Post(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id:            str = ""
    message:       str = ""
    type:          Annotated[str, _typed(str, "")]                 = ""
    props:         Annotated[PostProps, _typed(dict, {})]          = Field(default_factory=PostProps)
    file_ids:      Annotated[list[str], BeforeValidator(_str_list)] = []
    has_reactions: Annotated[bool, _typed(bool, False)]            = False
    metadata:      Annotated[dict, _typed(dict, {})]               = {}

    @property
    def reacted(self) -> bool:
        return self.has_reactions or bool(self.metadata.get("reactions"))


class SessionEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event:      str
    team_id:    str = ""
    channel:    str = ""
    channel_id: str = ""
    user_id:    str = ""
    username:   str = ""
    post:       Post


class HookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id:      str = ""
    user_name:    str = ""
    channel_name: str = ""
    text:         str = ""
    team_id:      str = ""


class FileMeta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    size: int = Field(ge=0)


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

class EventNormalizer:
    """Turns vendor events into CanonicalMessages.

    ``team_id`` and ``own_user_id`` are filled in by the driver after login;
    they stay empty on webhook-only connections.
    """

    def __init__(
        self,
        instance_id: str,
        config:      MattermostConfig,
        general:     GeneralConfig,
        avatars:     AvatarCache,
        guard:       MediaGuard,
        client:      MattermostClient | None = None,
    ):
        self.instance_id = instance_id
        self.config      = config
        self.general     = general
        self.avatars     = avatars
        self.guard       = guard
        self.client      = client
        self.team_id:     str = ""
        self.own_user_id: str = ""

    def _tag(self) -> str:
        return f"Mattermost [{self.instance_id}]"

    # ------------------------------------------------------------------
    # Session events
    # ------------------------------------------------------------------

    async def from_session(self, raw: dict) -> list[CanonicalMessage]:
        if raw.get("event") not in POST_EVENTS:
            l.debug(f"{self._tag()} ignoring event {raw.get('event')!r}")
            return []
        try:
            ev = SessionEvent.model_validate(raw)
        except ValidationError as e:
            l.warning(f"{self._tag()} skipping malformed {raw.get('event')} event: {e}")
            return []

        post = ev.post
        if ev.team_id != self.team_id:
            l.debug(f"{self._tag()} dropping post {post.id} from team {ev.team_id!r}")
            return []

        if post.type in JOIN_LEAVE_TYPES:
            return [CanonicalMessage(
                text=post.message,
                channel=ev.channel,
                username=SYSTEM_USER,
                kind=EventKind.JOIN_LEAVE,
                account=self.instance_id,
            )]
        if post.type.startswith("system_"):
            l.debug(f"{self._tag()} ignoring system post {post.type}")
            return []

        if ev.event == "post_edited" and self.config.edit_disable:
            return []

        if post.props.from_bridge or (self.own_user_id and ev.user_id == self.own_user_id):
            l.debug(f"{self._tag()} post {post.id} sent by the bridge, ignoring")
            return []

        # A reaction arrives as an update of a post we have already relayed;
        # there is no way to tell it from a new post that already has one.
        if ev.event != "post_deleted" and post.reacted:
            l.debug(f"{self._tag()} post {post.id} has reactions, ignoring")
            return []

        out: list[CanonicalMessage] = []
        if ev.event != "post_deleted" and self.general.media_server_upload:
            avatar_msg = await self._avatar_event(ev.user_id, ev.channel)
            if avatar_msg is not None:
                out.append(avatar_msg)

        msg = CanonicalMessage(
            channel=ev.channel,
            username=post.props.override_username or ev.username,
            user_id=ev.user_id,
            id=post.id,
            account=self.instance_id,
            avatar=self._avatar_url(ev.user_id),
        )

        if ev.event == "post_deleted":
            msg.kind = EventKind.MESSAGE_DELETE
            out.append(msg)
            return out

        text = post.message
        if ev.event == "post_edited":
            text += self.config.edit_suffix
        msg.text, is_action = action.decode(text)
        if is_action:
            msg.kind = EventKind.USER_ACTION

        for meta in post.props.attachments or []:
            if isinstance(meta, dict):
                msg.extra.append(AttachmentMeta(meta))

        too_large: list[CanonicalMessage] = []
        for file_id in post.file_ids:
            result = await self._fetch_file(file_id, post.message)
            if isinstance(result, FileTooLargeNotice):
                too_large.append(CanonicalMessage(
                    channel=msg.channel,
                    username=msg.username,
                    user_id=msg.user_id,
                    kind=EventKind.FILE_TOO_LARGE,
                    extra=[result],
                    account=self.instance_id,
                    avatar=msg.avatar,
                ))
            elif result is not None:
                msg.extra.append(result)

        if msg.text.strip() or msg.extra:
            out.append(msg)
        out.extend(too_large)
        return out

    async def _fetch_file(
        self, file_id: str, caption: str
    ) -> FileAttachment | FileTooLargeNotice | None:
        try:
            meta = FileMeta.model_validate(await self.client.file_info(file_id))
        except (ValidationError, *_FETCH_ERRORS) as e:
            l.warning(f"{self._tag()} file {file_id} metadata lookup failed: {e}")
            return None

        name = meta.name or file_id
        l.debug(f"{self._tag()} trying to download {name!r} ({file_id}) with size {meta.size}")
        if not self.guard.check_size(meta.size):
            l.error(
                f"{self._tag()} file {name!r} too large to download ({meta.size}). "
                f"media_download_size is {self.guard.max_size}"
            )
            return FileTooLargeNotice(name=name, size=meta.size, comment=caption)

        try:
            data = await self.client.download_file(file_id)
            url  = await self.client.file_link(file_id)
        except _FETCH_ERRORS as e:
            l.error(f"{self._tag()} download of {name!r} failed: {e}")
            return None

        # Metadata can understate the size
        if not self.guard.check_size(len(data)):
            l.error(
                f"{self._tag()} file {name!r} is {len(data)} bytes, more than its metadata said. "
                f"media_download_size is {self.guard.max_size}"
            )
            return FileTooLargeNotice(name=name, size=len(data), comment=caption)

        l.debug(f"{self._tag()} download OK {name!r} {len(data)}")
        return FileAttachment(name=name, data=data, size=len(data), url=url, comment=caption)

    async def _avatar_event(self, user_id: str, channel: str) -> CanonicalMessage | None:
        if not user_id or not self.avatars.should_fetch(user_id):
            return None
        try:
            data = await self.client.profile_image(user_id)
        except _FETCH_ERRORS as e:
            l.error(f"{self._tag()} profile image download failed for {user_id}: {e}")
            return None

        name = f"{user_id}.png"
        if not self.guard.check_size(len(data)):
            l.error(
                f"{self._tag()} avatar {name!r} too large to download ({len(data)}). "
                f"media_download_size is {self.guard.max_size}"
            )
            return None

        l.debug(f"{self._tag()} sending avatar download message for {user_id}")
        return CanonicalMessage(
            text="avatar",
            channel=channel,
            username=SYSTEM_USER,
            user_id=user_id,
            kind=EventKind.AVATAR_DOWNLOAD,
            extra=[FileAttachment(name=name, data=data, size=len(data), is_avatar=True)],
            account=self.instance_id,
        )

    def _avatar_url(self, user_id: str) -> str:
        content_hash = self.avatars.lookup(user_id)
        download = self.general.media_server_download
        if not content_hash or not download:
            return ""
        return f"{download.rstrip('/')}/{content_hash}/{user_id}.png"

    # ------------------------------------------------------------------
    # Outgoing-webhook payloads
    # ------------------------------------------------------------------

    async def from_hook(self, raw: dict) -> list[CanonicalMessage]:
        try:
            payload = HookPayload.model_validate(raw)
        except ValidationError as e:
            l.warning(f"{self._tag()} skipping malformed webhook payload: {e}")
            return []

        if self.team_id and payload.team_id != self.team_id:
            l.debug(f"{self._tag()} dropping webhook post from team {payload.team_id!r}")
            return []
        if self.own_user_id and payload.user_id == self.own_user_id:
            return []

        text, is_action = action.decode(payload.text)
        if not text.strip():
            return []
        return [CanonicalMessage(
            text=text,
            channel=payload.channel_name,
            username=payload.user_name,
            user_id=payload.user_id,
            kind=EventKind.USER_ACTION if is_action else EventKind.NORMAL,
            account=self.instance_id,
            avatar=self._avatar_url(payload.user_id),
        )]
