from abc import ABC, abstractmethod
from dataclasses import dataclass

from db.models import Channel


@dataclass
class DeliveryResult:
    success: bool
    message_id: str | None = None
    status: str | None = None
    error: str | None = None


class NotificationClient(ABC):
    channel: Channel

    def __init__(self, enabled: bool = False):
        self._enabled = enabled

    def is_enabled(self) -> bool:
        return self._enabled

    @abstractmethod
    def validate_recipient(self, recipient: str | None) -> bool:
        pass

    @abstractmethod
    async def send(self, recipient: str, subject: str | None, body: str) -> DeliveryResult:
        pass
