"""Shared fixtures: fake Mattermost collaborators and event builders."""

import asyncio
import os
import tempfile
from pathlib import Path

# Keep per-run log files out of the working tree; must happen before
# services.logger is imported.
os.environ.setdefault("BRIDGE_LOG_PATH", str(Path(tempfile.gettempdir()) / "mmbridge-test-logs"))

import pytest

from services.config_schema import GeneralConfig, MattermostConfig
from services.error import ChannelNotFoundError, SendError


class FakeClient:
    """Stands in for MattermostClient; records every call."""

    def __init__(self):
        self.team_id  = "team1"
        self.user_id  = "bot"
        self.username = "bridgebot"
        self.calls: list[tuple] = []
        self.files:  dict[str, tuple[str, int, bytes]] = {}
        self.images: dict[str, bytes] = {}
        self.channels = {"town-square": "ch1", "off-topic": "ch2"}
        self.failing_info: set[str] = set()
        self.fail_upload = False
        self.events_to_yield: list[dict] = []
        self.logged_in = False

    async def login(self):
        self.logged_in = True

    async def close(self):
        self.calls.append(("close",))

    async def status_loop(self, interval: float = 60.0):
        self.calls.append(("status_loop",))

    async def events(self):
        for event in self.events_to_yield:
            yield event

    async def file_info(self, file_id):
        self.calls.append(("file_info", file_id))
        if file_id in self.failing_info or file_id not in self.files:
            raise SendError(f"GET /files/{file_id}/info failed HTTP 404")
        name, size, _ = self.files[file_id]
        return {"id": file_id, "name": name, "size": size}

    async def download_file(self, file_id):
        self.calls.append(("download", file_id))
        return self.files[file_id][2]

    async def file_link(self, file_id):
        return f"https://mm.example.com/files/{file_id}"

    async def profile_image(self, user_id):
        self.calls.append(("profile_image", user_id))
        if user_id not in self.images:
            raise SendError("GET /users/x/image failed HTTP 404")
        return self.images[user_id]

    async def channel_id(self, name):
        if name not in self.channels:
            raise ChannelNotFoundError(f"could not find channel ID for channel {name}")
        return self.channels[name]

    async def join_channel(self, channel_id):
        self.calls.append(("join", channel_id))

    async def post(self, channel_id, text):
        self.calls.append(("post", channel_id, text))
        return "p-new"

    async def edit(self, post_id, text):
        self.calls.append(("edit", post_id, text))
        return post_id

    async def delete(self, post_id):
        self.calls.append(("delete", post_id))

    async def upload_file(self, data, channel_id, name):
        self.calls.append(("upload", channel_id, name))
        if self.fail_upload:
            raise SendError("POST /files failed HTTP 413")
        return f"f-{name}"

    async def post_with_files(self, channel_id, text, file_ids):
        self.calls.append(("post_with_files", channel_id, text, file_ids))
        return "p-files"

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]


class FakeHook:
    """Stands in for MattermostHook."""

    def __init__(self):
        self.sent: list[dict] = []
        self.started = False
        self.closed = False
        self.incoming: list[dict] = []

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    async def send(self, payload):
        self.sent.append(payload)

    async def receive(self):
        if self.incoming:
            return self.incoming.pop(0)
        await asyncio.Event().wait()


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def hook() -> FakeHook:
    return FakeHook()


@pytest.fixture
def general() -> GeneralConfig:
    return GeneralConfig(media_download_size=100)


@pytest.fixture
def mm_config() -> MattermostConfig:
    return MattermostConfig(token="secret-token", team="myteam", server="mm.example.com")


@pytest.fixture
def make_event():
    """Build an enriched session event the way MattermostClient yields it."""

    def _make(
        event:    str = "posted",
        team_id:  str = "team1",
        user_id:  str = "u1",
        username: str = "alice",
        channel:  str = "town-square",
        **post,
    ) -> dict:
        post.setdefault("id", "p1")
        post.setdefault("message", "hello")
        post.setdefault("channel_id", "ch1")
        post.setdefault("user_id", user_id)
        return {
            "event":      event,
            "team_id":    team_id,
            "channel_id": post["channel_id"],
            "channel":    channel,
            "user_id":    user_id,
            "username":   username,
            "post":       post,
        }

    return _make
