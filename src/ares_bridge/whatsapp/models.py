"""WhatsApp message models."""

from dataclasses import dataclass
from enum import Enum


class ContentKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"
    AUDIO = "audio"


@dataclass(frozen=True)
class InboundMessage:
    """One message observed on the session.

    ATTENTION PII: `chat_id`, `sender_id`, `sender_name` and `text` identify
    people. Keep them in memory only, NEVER log them raw.
    """

    message_id: str
    chat_id: str
    sender_id: str
    sender_name: str | None
    text: str
    kind: ContentKind
    timestamp: int  # epoch seconds
    from_self: bool = False


@dataclass(frozen=True)
class OutboundCommand:
    """Text the backend asked us to push into a chat."""

    chat_id: str
    text: str
