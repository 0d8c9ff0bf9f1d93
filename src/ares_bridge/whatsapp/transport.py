"""Session transport contract.

A transport owns one connection to the messaging network. It is created per
connect attempt by a TransportFactory, receives the last saved credential
snapshot, and reports everything that happens to it as TransportEvent values
pushed into the sink it was built with. The lifecycle manager never calls back
into a transport from inside the sink.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Protocol

from .models import InboundMessage


class TransportError(Exception):
    """Raised when a transport operation (connect, send, logout) fails."""


class NotConnectedError(TransportError):
    """Raised when an operation needs an open session and there is none."""


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"


class DisconnectReason(IntEnum):
    """Close codes reported by the multi-device protocol."""

    CONNECTION_LOST = 408
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


# Credentials on disk are no longer valid; retrying would loop forever
TERMINAL_CLOSE_CODES = frozenset({DisconnectReason.LOGGED_OUT})


def is_terminal_close(code: int | None) -> bool:
    """True for an explicit logout. Any other close, coded or not, is recoverable."""
    return code is not None and code in TERMINAL_CLOSE_CODES


@dataclass(frozen=True)
class CredentialsChanged:
    snapshot: dict[str, Any]


@dataclass(frozen=True)
class ConnectionUpdate:
    """A change in connection state. Fields not reported are None."""

    state: ConnectionState | None = None
    qr: str | None = None
    close_code: int | None = None
    user_id: str | None = None


@dataclass(frozen=True)
class MessagesReceived:
    messages: tuple[InboundMessage, ...]
    # False for history sync and appends; only live messages are processed
    notify: bool = True


TransportEvent = CredentialsChanged | ConnectionUpdate | MessagesReceived

EventSink = Callable[[TransportEvent], None]


class SessionTransport(Protocol):
    """One connection attempt's worth of session."""

    @property
    def user_id(self) -> str | None:
        """Own JID once the session is open."""
        ...

    async def connect(self) -> None:
        """Start connecting. Progress is reported through the sink."""
        ...

    async def send_text(self, chat_id: str, text: str) -> None:
        ...

    async def logout(self) -> None:
        """Revoke the session on the server side."""
        ...

    async def close(self) -> None:
        """Drop the connection without revoking the session."""
        ...


TransportFactory = Callable[[dict[str, Any] | None, EventSink], SessionTransport]
