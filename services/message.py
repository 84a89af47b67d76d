from dataclasses import dataclass, field
from enum import Enum


class EventKind(str, Enum):
    """What a CanonicalMessage represents; decides which extras are valid."""
    NORMAL          = "normal"
    USER_ACTION     = "user_action"
    MESSAGE_DELETE  = "msg_delete"
    AVATAR_DOWNLOAD = "avatar_download"
    FILE_TOO_LARGE  = "file_failure_size"
    JOIN_LEAVE      = "join_leave"


@dataclass
class FileAttachment:
    """A file carried alongside a CanonicalMessage."""
    name: str
    data: bytes | None = None  # owned by the message until handed to the gateway
    size: int = -1             # bytes; -1 = unknown
    url: str = ""              # set once uploaded
    comment: str = ""
    content_hash: str = ""
    is_avatar: bool = False


@dataclass
class FileTooLargeNotice:
    """Metadata of a file that was not fetched because of its size."""
    name: str
    size: int
    comment: str = ""


@dataclass
class AttachmentMeta:
    """Vendor attachment metadata passed through untouched."""
    data: dict


Extra = FileAttachment | FileTooLargeNotice | AttachmentMeta


@dataclass
class CanonicalMessage:
    """Platform-agnostic message exchanged with the gateway."""
    text: str = ""
    channel: str = ""          # channel name, vendor-neutral
    username: str = ""
    user_id: str = ""
    id: str = ""               # vendor message id; empty if not yet posted
    kind: EventKind = EventKind.NORMAL
    extra: list[Extra] = field(default_factory=list)
    account: str = ""          # instance id of the producing adapter
    avatar: str = ""           # avatar URL (may be empty)

    def files(self) -> list[FileAttachment]:
        return [e for e in self.extra if isinstance(e, FileAttachment)]

    def notices(self) -> list[FileTooLargeNotice]:
        return [e for e in self.extra if isinstance(e, FileTooLargeNotice)]
