# Mattermost API v4 session client.
#
# Login:   token (passed as "MMAUTHTOKEN=<token>" in place of the password)
#          or POST /api/v4/users/login with login/password.  The session
#          token returned in the "Token" header is sent as a Bearer token.
#
# Events:  WebSocket /api/v4/websocket, authenticated by a token challenge
#          immediately after connect.  Post events are enriched with the
#          author's username, the channel name and the team id before being
#          yielded as plain dicts:
#
#            {"event": "posted", "team_id": ..., "channel_id": ...,
#             "channel": <name>, "user_id": ..., "username": ...,
#             "post": {<decoded post object>}}
#
#          Other websocket events are yielded as {"event": <name>}.

import asyncio
import json
from typing import AsyncIterator

import aiohttp

import services.logger as log
from services.error import AuthError, ChannelNotFoundError, SendError

l = log.get_logger()

TOKEN_PREFIX = "MMAUTHTOKEN="

_POST_EVENTS = ("posted", "post_edited", "post_deleted")


def base_url(server: str, no_tls: bool = False) -> str:
    server = server.rstrip("/")
    if server.startswith(("http://", "https://")):
        return server
    return ("http://" if no_tls else "https://") + server


class MattermostClient:

    def __init__(
        self,
        login:           str,
        secret:          str,
        team:            str,
        server:          str,
        no_tls:          bool = False,
        skip_tls_verify: bool = False,
    ):
        self.login_name = login
        self._secret    = secret
        self.team       = team
        self.server     = base_url(server, no_tls)
        self._ssl       = not skip_tls_verify

        self.user_id:  str = ""
        self.username: str = ""
        self.team_id:  str = ""

        self._session:       aiohttp.ClientSession | None = None
        self._token:         str                          = ""
        self._channel_ids:   dict[str, str]               = {}
        self._channel_infos: dict[str, tuple[str, str]]   = {}
        self._usernames:     dict[str, str]               = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def login(self) -> None:
        """Authenticate and resolve the team id.  Raises ``AuthError``."""
        self._session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(ssl=self._ssl)
        )
        try:
            if self._secret.startswith(TOKEN_PREFIX):
                self._token = self._secret[len(TOKEN_PREFIX):]
            else:
                async with self._session.post(
                    self._url("/users/login"),
                    json={"login_id": self.login_name, "password": self._secret},
                ) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        raise AuthError(f"login failed HTTP {resp.status}: {body[:200]}")
                    self._token = resp.headers.get("Token", "")

            me = await self._get_json("/users/me")
            self.user_id  = me.get("id", "")
            self.username = me.get("username", "")

            team = await self._get_json(f"/teams/name/{self.team}")
            self.team_id = team.get("id", "")
        except (aiohttp.ClientError, SendError) as e:
            await self.close()
            raise AuthError(f"login to {self.server} failed: {e}") from e
        except AuthError:
            await self.close()
            raise

        if not self.team_id:
            await self.close()
            raise AuthError(f"team {self.team!r} not found on {self.server}")

        l.info(
            f"Mattermost logged in as {self.username} ({self.user_id}), "
            f"team {self.team} ({self.team_id})"
        )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.server}/api/v4{path}"

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._token}"} if self._token else {}

    async def _request(self, method: str, path: str, **kwargs) -> aiohttp.ClientResponse:
        if self._session is None:
            raise SendError("client not logged in")
        resp = await self._session.request(
            method, self._url(path), headers=self._headers, **kwargs
        )
        if resp.status not in (200, 201):
            body = await resp.text()
            resp.release()
            raise SendError(f"{method} {path} failed HTTP {resp.status}: {body[:200]}")
        return resp

    async def _get_json(self, path: str) -> dict:
        resp = await self._request("GET", path)
        async with resp:
            return await resp.json()

    async def _send_json(self, method: str, path: str, payload: dict) -> dict:
        resp = await self._request(method, path, json=payload)
        async with resp:
            return await resp.json()

    # ------------------------------------------------------------------
    # Channels and users
    # ------------------------------------------------------------------

    async def channel_id(self, name: str) -> str:
        """Resolve a channel name (in our team) to its id."""
        if name in self._channel_ids:
            return self._channel_ids[name]
        try:
            info = await self._get_json(f"/teams/{self.team_id}/channels/name/{name}")
        except SendError as e:
            raise ChannelNotFoundError(f"could not find channel ID for channel {name}") from e
        channel_id = info.get("id", "")
        if not channel_id:
            raise ChannelNotFoundError(f"could not find channel ID for channel {name}")
        self._channel_ids[name] = channel_id
        self._channel_infos[channel_id] = (name, info.get("team_id", ""))
        return channel_id

    async def join_channel(self, channel_id: str) -> None:
        await self._send_json(
            "POST", f"/channels/{channel_id}/members", {"user_id": self.user_id}
        )

    async def _channel_info(self, channel_id: str) -> tuple[str, str]:
        """Return ``(name, team_id)`` for *channel_id*."""
        if channel_id in self._channel_infos:
            return self._channel_infos[channel_id]
        info = await self._get_json(f"/channels/{channel_id}")
        result = (info.get("name", channel_id), info.get("team_id", ""))
        self._channel_infos[channel_id] = result
        self._channel_ids.setdefault(result[0], channel_id)
        return result

    async def _username(self, user_id: str) -> str:
        if user_id in self._usernames:
            return self._usernames[user_id]
        user = await self._get_json(f"/users/{user_id}")
        name = user.get("username", user_id)
        self._usernames[user_id] = name
        return name

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------

    async def post(self, channel_id: str, text: str) -> str:
        post = await self._send_json(
            "POST", "/posts", {"channel_id": channel_id, "message": text}
        )
        return post.get("id", "")

    async def post_with_files(self, channel_id: str, text: str, file_ids: list[str]) -> str:
        post = await self._send_json(
            "POST",
            "/posts",
            {"channel_id": channel_id, "message": text, "file_ids": file_ids},
        )
        return post.get("id", "")

    async def edit(self, post_id: str, text: str) -> str:
        post = await self._send_json(
            "PUT", f"/posts/{post_id}/patch", {"message": text}
        )
        return post.get("id", post_id)

    async def delete(self, post_id: str) -> None:
        resp = await self._request("DELETE", f"/posts/{post_id}")
        resp.release()

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def upload_file(self, data: bytes, channel_id: str, name: str) -> str:
        form = aiohttp.FormData()
        form.add_field("channel_id", channel_id)
        form.add_field("files", data, filename=name)
        resp = await self._request("POST", "/files", data=form)
        async with resp:
            js = await resp.json()
        infos = js.get("file_infos") or []
        if not infos or not infos[0].get("id"):
            raise SendError(f"upload of {name!r} returned no file id")
        return infos[0]["id"]

    async def file_info(self, file_id: str) -> dict:
        return await self._get_json(f"/files/{file_id}/info")

    async def download_file(self, file_id: str) -> bytes:
        resp = await self._request("GET", f"/files/{file_id}")
        async with resp:
            return await resp.read()

    async def file_link(self, file_id: str) -> str:
        try:
            js = await self._get_json(f"/files/{file_id}/link")
        except SendError as e:
            # Public links are disabled on many servers
            l.debug(f"Mattermost file link for {file_id} unavailable: {e}")
            return ""
        return js.get("link", "")

    async def profile_image(self, user_id: str) -> bytes:
        resp = await self._request("GET", f"/users/{user_id}/image")
        async with resp:
            return await resp.read()

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    async def status_loop(self, interval: float = 60.0) -> None:
        """Keep the bot marked online; errors are logged and retried next round."""
        while True:
            try:
                await self._send_json(
                    "PUT",
                    f"/users/{self.user_id}/status",
                    {"user_id": self.user_id, "status": "online"},
                )
            except (aiohttp.ClientError, asyncio.TimeoutError, SendError) as e:
                l.warning(f"Mattermost status update failed: {e}")
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Event stream
    # ------------------------------------------------------------------

    async def events(self) -> AsyncIterator[dict]:
        """Yield events forever, reconnecting after connection loss."""
        ws_url = (
            self.server
            .replace("https://", "wss://")
            .replace("http://",  "ws://")
        ) + "/api/v4/websocket"

        seq = 0
        while True:
            if self._session is None:
                raise AuthError("client not logged in")
            try:
                async with self._session.ws_connect(ws_url, headers=self._headers) as ws:
                    seq += 1
                    await ws.send_json({
                        "seq":    seq,
                        "action": "authentication_challenge",
                        "data":   {"token": self._token},
                    })
                    l.info(f"Mattermost websocket connected to {ws_url}")
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            try:
                                raw = json.loads(msg.data)
                            except ValueError:
                                l.debug(f"Mattermost websocket: non-JSON frame {msg.data[:100]!r}")
                                continue
                            try:
                                event = await self._enrich(raw)
                            except Exception as e:
                                l.error(f"Mattermost websocket handler error: {e}")
                                continue
                            if event is not None:
                                yield event
                        elif msg.type in (
                            aiohttp.WSMsgType.CLOSE,
                            aiohttp.WSMsgType.ERROR,
                            aiohttp.WSMsgType.CLOSED,
                        ):
                            break
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                l.error(f"Mattermost websocket error: {e}")

            l.info("Mattermost websocket reconnecting in 5 s…")
            await asyncio.sleep(5)

    async def _enrich(self, raw: dict) -> dict | None:
        name = raw.get("event")
        if not isinstance(name, str):
            return None  # replies to our own seq'd actions
        if name not in _POST_EVENTS:
            return {"event": name}

        data = raw.get("data") or {}
        post = data.get("post", "{}")
        if isinstance(post, str):
            try:
                post = json.loads(post)
            except ValueError:
                return {"event": name}
        if not isinstance(post, dict):
            return {"event": name}

        channel_id = post.get("channel_id", "")
        user_id    = post.get("user_id", "")
        channel, team_id, username = channel_id, data.get("team_id", ""), user_id
        try:
            if channel_id:
                channel, channel_team = await self._channel_info(channel_id)
                team_id = team_id or channel_team
            if user_id:
                username = await self._username(user_id)
        except (aiohttp.ClientError, asyncio.TimeoutError, SendError) as e:
            l.warning(f"Mattermost could not resolve names for post {post.get('id')}: {e}")

        return {
            "event":      name,
            "team_id":    team_id,
            "channel_id": channel_id,
            "channel":    channel,
            "user_id":    user_id,
            "username":   username,
            "post":       post,
        }
