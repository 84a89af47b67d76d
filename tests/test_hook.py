import pytest
from aiohttp import test_utils, web

from drivers.mattermost.hook import MattermostHook, split_bind_address
from services.error import ConfigError, SendError


@pytest.mark.asyncio
async def test_receives_form_encoded_webhook():
    hook = MattermostHook(bind_address="127.0.0.1:0")
    async with test_utils.TestClient(test_utils.TestServer(hook.make_app())) as http:
        resp = await http.post("/", data={
            "token": "abc", "team_id": "team1", "channel_name": "town-square",
            "user_id": "u1", "user_name": "alice", "text": "hi",
        })
        assert resp.status == 200
        payload = await hook.receive()
    assert payload["user_name"] == "alice"
    assert payload["channel_name"] == "town-square"
    assert payload["text"] == "hi"


@pytest.mark.asyncio
async def test_receives_json_webhook_in_order():
    hook = MattermostHook(bind_address="127.0.0.1:0")
    async with test_utils.TestClient(test_utils.TestServer(hook.make_app())) as http:
        for text in ("one", "two"):
            await http.post("/", json={"user_name": "alice", "text": text})
        assert (await hook.receive())["text"] == "one"
        assert (await hook.receive())["text"] == "two"


@pytest.mark.asyncio
async def test_rejects_non_object_json():
    hook = MattermostHook(bind_address="127.0.0.1:0")
    async with test_utils.TestClient(test_utils.TestServer(hook.make_app())) as http:
        resp = await http.post("/", json=["not", "an", "object"])
        assert resp.status == 400


@pytest.mark.asyncio
async def test_failed_listen_releases_runner_and_session(monkeypatch):
    async def busy(self):
        raise OSError(98, "address already in use")

    monkeypatch.setattr(web.TCPSite, "start", busy)
    hook = MattermostHook(url="https://mm.example.com/hooks/x", bind_address="127.0.0.1:9999")
    with pytest.raises(OSError):
        await hook.start()
    assert hook._runner is None
    assert hook._session is None


@pytest.mark.asyncio
async def test_bad_bind_address_opens_nothing():
    hook = MattermostHook(url="https://mm.example.com/hooks/x", bind_address="nope")
    with pytest.raises(ConfigError):
        await hook.start()
    assert hook._session is None


@pytest.mark.asyncio
async def test_send_before_start_fails():
    with pytest.raises(SendError):
        await MattermostHook(url="https://mm.example.com/hooks/x").send({"text": "hi"})


@pytest.mark.parametrize("address, expected", [
    ("0.0.0.0:9999", ("0.0.0.0", 9999)),
    (":8080", ("0.0.0.0", 8080)),
    ("localhost:1", ("localhost", 1)),
])
def test_split_bind_address(address, expected):
    assert split_bind_address(address) == expected


@pytest.mark.parametrize("address", ["9999", "host:", "host:port"])
def test_split_bind_address_rejects(address):
    with pytest.raises(ConfigError):
        split_bind_address(address)
