import threading

import pytest

from drivers.mattermost import action
from drivers.mattermost.avatar import AvatarCache, MediaGuard


@pytest.mark.parametrize("text, expected", [
    ("*hello*", ("hello", True)),
    ("*waves at *bob**", ("waves at bob", True)),
    ("*hi", ("*hi", False)),
    ("hi*", ("hi*", False)),
    ("plain", ("plain", False)),
    ("*", ("*", False)),
    ("", ("", False)),
])
def test_decode(text, expected):
    assert action.decode(text) == expected


def test_encode_wraps_once():
    assert action.encode("waves") == "*waves*"
    assert action.decode(action.encode("waves")) == ("waves", True)


def test_should_fetch_until_confirmed():
    cache = AvatarCache()
    assert cache.should_fetch("u1")
    cache.confirm_upload("u1", "abcd1234")
    assert not cache.should_fetch("u1")
    assert cache.should_fetch("u2")
    assert cache.lookup("u1") == "abcd1234"
    assert cache.lookup("u2") is None


def test_confirm_upload_is_idempotent():
    once, twice = AvatarCache(), AvatarCache()
    once.confirm_upload("u1", "abcd1234")
    twice.confirm_upload("u1", "abcd1234")
    twice.confirm_upload("u1", "abcd1234")
    assert len(once) == len(twice) == 1
    assert once.lookup("u1") == twice.lookup("u1")
    assert once.should_fetch("u1") == twice.should_fetch("u1")


def test_confirm_upload_overwrites():
    cache = AvatarCache()
    cache.confirm_upload("u1", "old")
    cache.confirm_upload("u1", "new")
    assert cache.lookup("u1") == "new"


def test_cache_survives_concurrent_writers():
    cache = AvatarCache()

    def writer(offset):
        for i in range(200):
            cache.confirm_upload(f"user{offset + i}", "h")
            cache.should_fetch(f"user{i}")

    threads = [threading.Thread(target=writer, args=(n * 200,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(cache) == 800


def test_media_guard_boundary_is_inclusive():
    guard = MediaGuard(100)
    assert guard.check_size(0)
    assert guard.check_size(100)
    assert not guard.check_size(101)
