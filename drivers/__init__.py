from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Generic, TypeVar

from pydantic import BaseModel

from services.message import CanonicalMessage

if TYPE_CHECKING:
    from services.gateway import Gateway

T = TypeVar("T", bound=BaseModel)


class BaseDriver(ABC, Generic[T]):
    """Abstract base class for all protocol drivers."""

    def __init__(self, instance_id: str, config: T, bridge: "Gateway"):
        self.instance_id = instance_id
        self.config: T = config
        self.bridge = bridge

    @abstractmethod
    async def start(self):
        """Connect, then pump inbound events to ``bridge.remote``.
        Long-running drivers should loop indefinitely here."""

    @abstractmethod
    async def send(self, msg: CanonicalMessage) -> str:
        """Deliver *msg* to this platform; return the remote message id
        (empty when the platform does not report one).  Failures raise."""
