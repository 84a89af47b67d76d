import threading

import services.logger as log

l = log.get_logger()


class MediaGuard:
    """Size ceiling applied to every file and avatar download."""

    def __init__(self, max_size: int):
        self.max_size = max_size

    def check_size(self, size: int) -> bool:
        return size <= self.max_size


class AvatarCache:
    """
    user_id → content hash of the avatar already on the media server.

    Write-back: an entry only appears once the gateway has uploaded the avatar
    and handed the hash back through ``send``.  The normalizer reads it from
    the inbound task, ``send`` writes it from the gateway task, so every access
    goes through the lock.  Entries are never evicted.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._hashes: dict[str, str] = {}

    def should_fetch(self, user_id: str) -> bool:
        with self._lock:
            return user_id not in self._hashes

    def confirm_upload(self, user_id: str, content_hash: str) -> None:
        with self._lock:
            self._hashes[user_id] = content_hash
        l.debug(f"avatar cache: {user_id} → {content_hash}")

    def lookup(self, user_id: str) -> str | None:
        with self._lock:
            return self._hashes.get(user_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._hashes)
