"""Platform-independent data types shared by the relay core."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol


class MessageKind(Enum):
    GENERIC = 0
    MENTION = 1
    REPLY = 2
    DM = 3


class DeliveryTarget(Enum):
    DM = "dm"
    CHANNEL = "channel"
    NONE = "none"


@dataclass(frozen=True)
class Attachment:
    name: str
    url: str
    content_type: str = ""
    size: int = 0

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")

    @property
    def is_audio(self) -> bool:
        return self.content_type.startswith("audio/")


@dataclass(frozen=True)
class InboundEvent:
    id: int
    author_id: int
    channel_id: int
    text_content: str = ""
    author_name: str = "unknown"
    channel_name: str = "unknown-channel"
    is_bot: bool = False
    is_self: bool = False
    is_direct_message: bool = False
    mentions_bot: bool = False
    is_reply_to_bot: bool = False
    has_reference: bool = False
    attachments: tuple[Attachment, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class HeartbeatResult:
    content: str = ""
    target: DeliveryTarget = DeliveryTarget.NONE


class Platform(Protocol):
    """
    The slice of the messaging platform the relay core talks to.

    Destinations are opaque handles returned by fetch_channel()/create_dm().
    """

    async def send(self, destination: Any, text: str) -> Any: ...

    async def reply(self, event: InboundEvent, text: str) -> Any: ...

    async def send_typing(self, destination: Any) -> None: ...

    async def fetch_channel(self, channel_id: int) -> Optional[Any]: ...

    async def create_dm(self, user_id: int) -> Any: ...

    def is_connected(self) -> bool: ...
