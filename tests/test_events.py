import pytest

from drivers.mattermost.avatar import AvatarCache, MediaGuard
from drivers.mattermost.events import EventNormalizer
from services.config_schema import GeneralConfig, MattermostConfig
from services.message import (
    AttachmentMeta,
    EventKind,
    FileAttachment,
    FileTooLargeNotice,
)


def _normalizer(client, general=None, config=None, avatars=None):
    general = general or GeneralConfig(media_download_size=100)
    n = EventNormalizer(
        "mm",
        config or MattermostConfig(token="t", team="myteam", server="mm.example.com"),
        general,
        avatars or AvatarCache(),
        MediaGuard(general.media_download_size),
        client,
    )
    n.team_id = "team1"
    n.own_user_id = "bot"
    return n


@pytest.mark.asyncio
async def test_plain_post(client, make_event):
    out = await _normalizer(client).from_session(make_event(message="hi there"))
    assert len(out) == 1
    msg = out[0]
    assert msg.kind is EventKind.NORMAL
    assert (msg.text, msg.channel, msg.username, msg.user_id, msg.id, msg.account) == (
        "hi there", "town-square", "alice", "u1", "p1", "mm"
    )
    assert msg.extra == []


@pytest.mark.asyncio
async def test_action_post_is_unwrapped(client, make_event):
    out = await _normalizer(client).from_session(make_event(message="*hello*"))
    assert out[0].kind is EventKind.USER_ACTION
    assert out[0].text == "hello"


@pytest.mark.asyncio
async def test_half_framed_text_stays_normal(client, make_event):
    out = await _normalizer(client).from_session(make_event(message="*hi"))
    assert out[0].kind is EventKind.NORMAL
    assert out[0].text == "*hi"


@pytest.mark.asyncio
@pytest.mark.parametrize("text, channel", [("hello", "town-square"), ("", "x"), ("*a*", "off-topic")])
async def test_own_echo_never_reaches_gateway(client, make_event, text, channel):
    event = make_event(
        user_id="bot", username="bridgebot", message=text, channel=channel,
        props={"matterbridge": True},
    )
    assert await _normalizer(client).from_session(event) == []


@pytest.mark.asyncio
async def test_bridge_marker_from_other_author_is_dropped(client, make_event):
    event = make_event(props={"matterbridge": True})
    assert await _normalizer(client).from_session(event) == []


@pytest.mark.asyncio
async def test_own_posts_without_marker_are_dropped(client, make_event):
    assert await _normalizer(client).from_session(make_event(user_id="bot")) == []


@pytest.mark.asyncio
async def test_non_bool_marker_is_treated_as_absent(client, make_event):
    event = make_event(props={"matterbridge": "yes", "override_username": 42})
    out = await _normalizer(client).from_session(event)
    assert len(out) == 1
    assert out[0].username == "alice"


@pytest.mark.asyncio
@pytest.mark.parametrize("event", ["posted", "post_edited", "post_deleted"])
async def test_other_team_is_dropped(client, make_event, event):
    raw = make_event(event=event, team_id="team2", type="system_join_channel")
    assert await _normalizer(client).from_session(raw) == []


@pytest.mark.asyncio
async def test_reacted_post_is_dropped(client, make_event):
    n = _normalizer(client)
    assert await n.from_session(make_event(has_reactions=True)) == []
    assert await n.from_session(make_event(metadata={"reactions": [{"emoji_name": "+1"}]})) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("post_type", [
    "system_join_leave", "system_join_channel", "system_leave_channel",
])
async def test_join_leave(client, make_event, post_type):
    raw = make_event(type=post_type, message="alice joined the channel.")
    out = await _normalizer(client).from_session(raw)
    assert len(out) == 1
    msg = out[0]
    assert msg.kind is EventKind.JOIN_LEAVE
    assert msg.username == "system"
    assert msg.text == "alice joined the channel."
    assert msg.channel == "town-square"


@pytest.mark.asyncio
async def test_other_system_posts_are_ignored(client, make_event):
    raw = make_event(type="system_header_change", message="header changed")
    assert await _normalizer(client).from_session(raw) == []


@pytest.mark.asyncio
async def test_edit_appends_suffix_and_keeps_id(client, make_event):
    config = MattermostConfig(token="t", team="x", server="s", edit_suffix=" (edited)")
    out = await _normalizer(client, config=config).from_session(
        make_event(event="post_edited", id="p42", message="fixed")
    )
    assert out[0].text == "fixed (edited)"
    assert out[0].id == "p42"


@pytest.mark.asyncio
async def test_edit_disabled_drops_event(client, make_event):
    config = MattermostConfig(token="t", team="x", server="s", edit_disable=True)
    raw = make_event(event="post_edited")
    assert await _normalizer(client, config=config).from_session(raw) == []


@pytest.mark.asyncio
async def test_delete_carries_only_id(client, make_event):
    client.files["f1"] = ("a.txt", 3, b"abc")
    raw = make_event(event="post_deleted", id="p9", message="gone", file_ids=["f1"])
    out = await _normalizer(client).from_session(raw)
    assert len(out) == 1
    msg = out[0]
    assert msg.kind is EventKind.MESSAGE_DELETE
    assert msg.id == "p9"
    assert msg.text == ""
    assert msg.extra == []
    assert "file_info" not in client.names()


@pytest.mark.asyncio
async def test_file_at_ceiling_is_fetched(client, make_event):
    client.files["f1"] = ("cat.png", 100, b"x" * 100)
    out = await _normalizer(client).from_session(make_event(message="look", file_ids=["f1"]))
    assert len(out) == 1
    [att] = out[0].files()
    assert isinstance(att, FileAttachment)
    assert (att.name, att.size, att.data, att.comment) == ("cat.png", 100, b"x" * 100, "look")
    assert att.url == "https://mm.example.com/files/f1"


@pytest.mark.asyncio
async def test_file_over_ceiling_becomes_notice(client, make_event):
    client.files["f1"] = ("big.iso", 101, b"")
    out = await _normalizer(client).from_session(make_event(message="look", file_ids=["f1"]))

    assert [m.kind for m in out] == [EventKind.NORMAL, EventKind.FILE_TOO_LARGE]
    assert out[0].files() == []
    notice_msg = out[1]
    assert notice_msg.files() == []
    [notice] = notice_msg.extra
    assert isinstance(notice, FileTooLargeNotice)
    assert (notice.name, notice.size, notice.comment) == ("big.iso", 101, "look")
    assert "download" not in client.names()


@pytest.mark.asyncio
async def test_oversize_file_without_caption_emits_only_notice(client, make_event):
    client.files["f1"] = ("big.iso", 500, b"")
    out = await _normalizer(client).from_session(make_event(message="", file_ids=["f1"]))
    assert [m.kind for m in out] == [EventKind.FILE_TOO_LARGE]


@pytest.mark.asyncio
async def test_metadata_failure_skips_only_that_file(client, make_event):
    client.files["f1"] = ("a.txt", 1, b"a")
    client.files["f3"] = ("c.txt", 1, b"c")
    client.failing_info.add("f2")
    out = await _normalizer(client).from_session(
        make_event(message="files", file_ids=["f1", "f2", "f3"])
    )
    assert [f.name for f in out[0].files()] == ["a.txt", "c.txt"]


@pytest.mark.asyncio
async def test_metadata_without_size_is_skipped(client, make_event):
    client.files["f1"] = ("blob.bin", 0, b"x" * 10000)

    async def file_info(file_id):
        client.calls.append(("file_info", file_id))
        return {"id": file_id, "name": "blob.bin"}

    client.file_info = file_info
    out = await _normalizer(client).from_session(make_event(message="look", file_ids=["f1"]))
    assert [m.kind for m in out] == [EventKind.NORMAL]
    assert out[0].files() == []
    assert "download" not in client.names()


@pytest.mark.asyncio
async def test_understated_size_is_rejected_after_download(client, make_event):
    client.files["f1"] = ("blob.bin", 10, b"x" * 500)
    out = await _normalizer(client).from_session(make_event(message="look", file_ids=["f1"]))
    assert [m.kind for m in out] == [EventKind.NORMAL, EventKind.FILE_TOO_LARGE]
    assert out[0].files() == []
    [notice] = out[1].extra
    assert (notice.name, notice.size) == ("blob.bin", 500)


@pytest.mark.asyncio
async def test_metadata_fetched_before_bytes(client, make_event):
    client.files["f1"] = ("a.txt", 1, b"a")
    await _normalizer(client).from_session(make_event(file_ids=["f1"]))
    assert client.names().index("file_info") < client.names().index("download")


@pytest.mark.asyncio
async def test_props_override_username_and_attachments(client, make_event):
    raw = make_event(props={
        "override_username": "jira",
        "attachments": [{"title": "ISSUE-1"}, "junk"],
    })
    out = await _normalizer(client).from_session(raw)
    assert out[0].username == "jira"
    assert out[0].extra == [AttachmentMeta({"title": "ISSUE-1"})]


@pytest.mark.asyncio
async def test_malformed_and_unknown_events_are_skipped(client, make_event):
    n = _normalizer(client)
    assert await n.from_session({"event": "typing"}) == []
    assert await n.from_session({"event": "posted"}) == []
    assert await n.from_session({"event": "posted", "post": {"message": ["not", "text"]}}) == []
    raw = make_event()
    raw["post"]["file_ids"] = None
    raw["post"]["props"] = "garbage"
    assert len(await n.from_session(raw)) == 1


# ---------------------------------------------------------------------------
# Avatar side channel
# ---------------------------------------------------------------------------

MEDIA = GeneralConfig(
    media_server_upload="https://media.example.com/upload",
    media_server_download="https://media.example.com",
    media_download_size=100,
)


@pytest.mark.asyncio
async def test_avatar_event_precedes_message(client, make_event):
    client.images["u1"] = b"png"
    out = await _normalizer(client, general=MEDIA).from_session(make_event())
    assert [m.kind for m in out] == [EventKind.AVATAR_DOWNLOAD, EventKind.NORMAL]
    avatar = out[0]
    assert avatar.username == "system"
    assert avatar.user_id == "u1"
    [f] = avatar.files()
    assert (f.name, f.data, f.is_avatar) == ("u1.png", b"png", True)


@pytest.mark.asyncio
async def test_cached_avatar_is_not_refetched_and_sets_url(client, make_event):
    avatars = AvatarCache()
    avatars.confirm_upload("u1", "abcd1234")
    out = await _normalizer(client, general=MEDIA, avatars=avatars).from_session(make_event())
    assert [m.kind for m in out] == [EventKind.NORMAL]
    assert out[0].avatar == "https://media.example.com/abcd1234/u1.png"
    assert "profile_image" not in client.names()


@pytest.mark.asyncio
async def test_oversize_avatar_is_only_logged(client, make_event):
    client.images["u1"] = b"x" * 101
    out = await _normalizer(client, general=MEDIA).from_session(make_event())
    assert [m.kind for m in out] == [EventKind.NORMAL]


@pytest.mark.asyncio
async def test_avatar_failure_is_only_logged(client, make_event):
    out = await _normalizer(client, general=MEDIA).from_session(make_event())
    assert [m.kind for m in out] == [EventKind.NORMAL]


@pytest.mark.asyncio
async def test_no_avatar_fetch_without_media_server(client, make_event):
    client.images["u1"] = b"png"
    await _normalizer(client).from_session(make_event())
    assert "profile_image" not in client.names()


# ---------------------------------------------------------------------------
# Outgoing-webhook payloads
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_hook_payload(client):
    n = _normalizer(None)
    n.team_id = n.own_user_id = ""
    out = await n.from_hook({
        "user_id": "u1", "user_name": "alice", "channel_name": "town-square",
        "text": "*dances*", "team_id": "t9", "token": "x",
    })
    assert len(out) == 1
    assert (out[0].kind, out[0].text, out[0].username, out[0].channel) == (
        EventKind.USER_ACTION, "dances", "alice", "town-square"
    )


@pytest.mark.asyncio
async def test_hook_payload_team_filter_after_login(client):
    n = _normalizer(client)
    payload = {"user_id": "u1", "user_name": "alice", "channel_name": "c", "text": "hi"}
    assert await n.from_hook({**payload, "team_id": "other"}) == []
    assert len(await n.from_hook({**payload, "team_id": "team1"})) == 1


@pytest.mark.asyncio
async def test_hook_empty_text_is_dropped(client):
    n = _normalizer(None)
    n.team_id = ""
    assert await n.from_hook({"user_name": "alice", "text": "  "}) == []
