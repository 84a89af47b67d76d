# Mattermost webhook client.
#
# Receive: a local aiohttp server on webhook_bind_address ("host:port")
#          accepting Mattermost *outgoing* webhooks, either form-encoded or
#          JSON.  Each request body is queued as a plain dict with the fields
#          Mattermost sends (user_id, user_name, channel_name, text, team_id,
#          post_id, ...).
#
# Send:    POST a JSON payload to an *incoming* webhook URL:
#            {"channel", "username", "icon_url", "text", "props"}
#          Incoming webhooks can only create posts; there is no edit or
#          delete verb.

import asyncio

import aiohttp
from aiohttp import web

import services.logger as log
from services.error import ConfigError, SendError

l = log.get_logger()


def split_bind_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ConfigError(f"webhook_bind_address must be host:port, got {address!r}")
    return host or "0.0.0.0", int(port)


class MattermostHook:

    def __init__(
        self,
        url:             str  = "",
        bind_address:    str  = "",
        skip_tls_verify: bool = False,
    ):
        self.url          = url
        self.bind_address = bind_address
        self._ssl         = not skip_tls_verify
        self._queue:   asyncio.Queue[dict]         = asyncio.Queue()
        self._session: aiohttp.ClientSession | None = None
        self._runner:  web.AppRunner | None         = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/", self._handle)
        return app

    async def start(self) -> None:
        if self.bind_address:
            host, port = split_bind_address(self.bind_address)
        if self.url:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(ssl=self._ssl)
            )
        if self.bind_address:
            self._runner = web.AppRunner(self.make_app())
            try:
                await self._runner.setup()
                await web.TCPSite(self._runner, host, port).start()
            except Exception:
                await self.close()
                raise
            l.info(f"Mattermost webhook server listening on {host}:{port}")

    async def close(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    async def _handle(self, request: web.Request) -> web.Response:
        try:
            if request.content_type == "application/json":
                body = await request.json()
            else:
                body = dict(await request.post())
        except ValueError:
            return web.json_response({"error": "bad request"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "bad request"}, status=400)

        await self._queue.put(body)
        return web.json_response({})

    async def receive(self) -> dict:
        """Block until the next outgoing-webhook payload arrives."""
        return await self._queue.get()

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send(self, payload: dict) -> None:
        if self._session is None:
            raise SendError("webhook sender not started")
        try:
            async with self._session.post(self.url, json=payload) as resp:
                if resp.status not in (200, 201, 204):
                    body = await resp.text()
                    raise SendError(f"webhook send failed HTTP {resp.status}: {body[:200]}")
        except aiohttp.ClientError as e:
            raise SendError(f"webhook send failed: {e}") from e
