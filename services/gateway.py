import asyncio
from collections import OrderedDict
from dataclasses import replace
from typing import TYPE_CHECKING

import services.logger as log
import services.media as media
from services.config_schema import GatewayRule, GeneralConfig
from services.message import CanonicalMessage, EventKind

if TYPE_CHECKING:
    from drivers import BaseDriver

l = log.get_logger()


class MessageIdMap:
    """Maps a source message id to the ids of its relayed copies.

    Kept in memory only and capped at *capacity* source messages; the oldest
    mapping is forgotten first.
    """

    def __init__(self, capacity: int = 5000):
        self.capacity = capacity
        self._map: OrderedDict[tuple[str, str], dict[str, str]] = OrderedDict()

    def save_mapping(self, src_account: str, src_id: str, dst_account: str, dst_id: str) -> None:
        key = (src_account, src_id)
        self._map.setdefault(key, {})[dst_account] = dst_id
        self._map.move_to_end(key)
        while len(self._map) > self.capacity:
            self._map.popitem(last=False)

    def get_platform_msg_id(self, src_account: str, src_id: str, dst_account: str) -> str:
        if not src_id:
            return ""
        return self._map.get((src_account, src_id), {}).get(dst_account, "")

    def __len__(self) -> int:
        return len(self._map)


class Gateway:
    """
    Core routing engine.

    Drivers register themselves via ``register_driver`` once connected and put
    every inbound message on ``remote``.  ``run`` drains that queue, uploads
    attached files to the media server and relays each message to every other
    channel a rule connects it with.
    """

    def __init__(
        self,
        general: GeneralConfig | None = None,
        rules:   list[GatewayRule] | None = None,
    ):
        self.general = general or GeneralConfig()
        self.rules   = rules or []
        self.remote: asyncio.Queue[CanonicalMessage] = asyncio.Queue()
        self._drivers: dict[str, "BaseDriver"] = {}
        self._ids = MessageIdMap()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def register_driver(self, instance_id: str, driver: "BaseDriver") -> None:
        self._drivers[instance_id] = driver
        l.debug(f"Registered driver for instance: {instance_id}")

    def channels_for(self, instance_id: str) -> list[str]:
        """Every channel name the rules list for *instance_id*."""
        names: list[str] = []
        for rule in self.rules:
            name = rule.channels.get(instance_id)
            if name and name not in names:
                names.append(name)
        return names

    # ------------------------------------------------------------------
    # Message routing
    # ------------------------------------------------------------------

    async def run(self) -> None:
        while True:
            msg = await self.remote.get()
            try:
                await self.handle(msg)
            except Exception as e:
                l.error(f"Gateway failed to handle message from '{msg.account}': {e}")

    async def handle(self, msg: CanonicalMessage) -> None:
        if self.general.media_server_upload:
            for f in msg.files():
                if f.data is not None:
                    await media.upload(f, self.general)

        # Avatars only go back to the driver that fetched them, so it can
        # remember the uploaded hash.
        if msg.kind is EventKind.AVATAR_DOWNLOAD:
            await self._deliver(msg.account, msg)
            return

        for account, channel in self._targets(msg):
            out = replace(
                msg,
                channel=channel,
                id=self._ids.get_platform_msg_id(msg.account, msg.id, account),
                extra=list(msg.extra),
            )
            remote_id = await self._deliver(account, out)
            if remote_id and msg.id:
                self._ids.save_mapping(msg.account, msg.id, account, remote_id)

    def _targets(self, msg: CanonicalMessage) -> list[tuple[str, str]]:
        """Return ``(account, channel)`` pairs connected to the message's
        channel, excluding the source itself."""
        targets: list[tuple[str, str]] = []
        for rule in self.rules:
            if rule.channels.get(msg.account) != msg.channel:
                continue
            for account, channel in rule.channels.items():
                if (account, channel) == (msg.account, msg.channel):
                    continue
                if (account, channel) not in targets:
                    targets.append((account, channel))
        return targets

    async def _deliver(self, account: str, msg: CanonicalMessage) -> str:
        driver = self._drivers.get(account)
        if driver is None:
            l.warning(f"No driver registered for instance '{account}'")
            return ""
        try:
            return await driver.send(msg)
        except Exception as e:
            l.error(f"Failed to send to '{account}': {e}")
            return ""
