# Mattermost driver.
#
# Connection strategies (see plan.py for the full rule table):
#
#   webhook_bind_address  – receive outgoing webhooks on a local server
#   webhook_url           – send through an incoming webhook
#   token / login         – API session (REST + websocket) for whatever the
#                           webhooks do not cover
#
# Receive: exactly one pump (webhook server or session websocket) feeds raw
#          events into a queue; a single normalizer task turns them into
#          CanonicalMessages and puts them on the gateway's remote queue.
#          File and avatar downloads run inside that task, one at a time.
#
# Send:    the gateway awaits send(); see outbound.py for what each sink can do.
#
# Config keys (under mattermost.<instance_id>): see MattermostConfig.
# General keys used: media_server_upload, media_server_download,
#                    media_download_size.

import asyncio
from typing import Awaitable, Callable, Coroutine

import aiohttp

import services.logger as log
from services.config_schema import MattermostConfig
from services.error import BridgeError, SendError
from services.message import CanonicalMessage
from drivers import BaseDriver
from drivers.mattermost.avatar import AvatarCache, MediaGuard
from drivers.mattermost.client import TOKEN_PREFIX, MattermostClient
from drivers.mattermost.events import EventNormalizer
from drivers.mattermost.hook import MattermostHook
from drivers.mattermost.outbound import OutboundTranslator
from drivers.mattermost.plan import Auth, ConnectionPlan, Inbound, Outbound, resolve_plan

l = log.get_logger()


class MattermostDriver(BaseDriver[MattermostConfig]):

    def __init__(self, instance_id: str, config: MattermostConfig, bridge):
        super().__init__(instance_id, config, bridge)
        self.general = bridge.general
        self.avatars = AvatarCache()
        self.guard   = MediaGuard(self.general.media_download_size)

        self.plan:       ConnectionPlan | None     = None
        self.client:     MattermostClient | None   = None
        self.hook:       MattermostHook | None     = None
        self.normalizer: EventNormalizer | None    = None
        self.outbound:   OutboundTranslator | None = None

        self._raw:   asyncio.Queue[dict] = asyncio.Queue()
        self._tasks: list[asyncio.Task]  = []

    def _tag(self) -> str:
        return f"Mattermost [{self.instance_id}]"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        try:
            await self.connect()
            await self._join_channels()
            await asyncio.Event().wait()
        finally:
            await self.close()

    async def connect(self) -> None:
        """Resolve the connection plan and open its transports.

        Raises ``ConfigError`` when nothing is configured and ``AuthError``
        when login fails; neither is retried.
        """
        cfg  = self.config
        plan = resolve_plan(cfg.webhook_bind_address, cfg.webhook_url, cfg.token, cfg.login)
        l.info(f"{self._tag()} connecting ({plan.describe()})")

        if plan.needs_session:
            client = self._make_client(plan)
            l.info(f"{self._tag()} logging in as {cfg.login or '<token>'} (team: {cfg.team}) on {cfg.server}")
            await client.login()
            self.client = client

        if plan.inbound is Inbound.WEBHOOK or plan.outbound is Outbound.WEBHOOK:
            hook = self._make_hook(plan)
            await hook.start()
            self.hook = hook

        self.normalizer = EventNormalizer(
            self.instance_id, cfg, self.general, self.avatars, self.guard, self.client
        )
        if self.client is not None:
            self.normalizer.team_id     = self.client.team_id
            self.normalizer.own_user_id = self.client.user_id
        self.outbound = OutboundTranslator(
            self.instance_id, cfg, self.general, plan, self.avatars, self.client, self.hook
        )
        self.plan = plan

        if self.client is not None:
            self._spawn(self.client.status_loop(), "status")
        if plan.inbound is Inbound.WEBHOOK:
            self._spawn(self._pump_hook(), "pump")
            self._spawn(self._consume(self.normalizer.from_hook), "normalizer")
        elif plan.inbound is Inbound.SESSION:
            self._spawn(self._pump_session(), "pump")
            self._spawn(self._consume(self.normalizer.from_session), "normalizer")

        self.bridge.register_driver(self.instance_id, self)
        l.info(f"{self._tag()} connection succeeded")

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self.hook is not None:
            await self.hook.close()
            self.hook = None
        if self.client is not None:
            await self.client.close()
            self.client = None

    def _make_client(self, plan: ConnectionPlan) -> MattermostClient:
        cfg = self.config
        secret = TOKEN_PREFIX + cfg.token if plan.auth is Auth.TOKEN else cfg.password
        return MattermostClient(
            cfg.login, secret, cfg.team, cfg.server,
            no_tls=cfg.no_tls, skip_tls_verify=cfg.skip_tls_verify,
        )

    def _make_hook(self, plan: ConnectionPlan) -> MattermostHook:
        cfg = self.config
        return MattermostHook(
            url=cfg.webhook_url if plan.outbound is Outbound.WEBHOOK else "",
            bind_address=cfg.webhook_bind_address if plan.inbound is Inbound.WEBHOOK else "",
            skip_tls_verify=cfg.skip_tls_verify,
        )

    def _spawn(self, coro: Coroutine, name: str) -> None:
        task = asyncio.create_task(coro, name=f"mattermost/{self.instance_id}/{name}")
        task.add_done_callback(self._on_task_done)
        self._tasks.append(task)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            l.error(f"{self._tag()} task '{task.get_name()}' crashed: {exc}")

    async def _join_channels(self) -> None:
        # Channels can only be joined through the API
        if self.client is None or self.hook is not None:
            return
        for name in self.bridge.channels_for(self.instance_id):
            try:
                await self.client.join_channel(await self.client.channel_id(name))
                l.info(f"{self._tag()} joined channel {name}")
            except (BridgeError, aiohttp.ClientError) as e:
                l.error(f"{self._tag()} could not join channel {name}: {e}")

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    async def _pump_hook(self) -> None:
        while True:
            await self._raw.put(await self.hook.receive())

    async def _pump_session(self) -> None:
        async for event in self.client.events():
            await self._raw.put(event)

    async def _consume(
        self, handle: Callable[[dict], Awaitable[list[CanonicalMessage]]]
    ) -> None:
        while True:
            raw = await self._raw.get()
            try:
                messages = await handle(raw)
            except Exception as e:
                l.error(f"{self._tag()} handler error: {e}")
                continue
            for msg in messages:
                l.debug(
                    f"{self._tag()} sending {msg.kind.value} from {msg.username!r} "
                    f"on {msg.channel!r} to gateway"
                )
                await self.bridge.remote.put(msg)

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send(self, msg: CanonicalMessage) -> str:
        if self.outbound is None:
            raise SendError(f"{self._tag()} not connected")
        return await self.outbound.send(msg)


from drivers.registry import register
register("mattermost", MattermostConfig, MattermostDriver)
