"""Shared test doubles for the bridge tests.

Regular classes and functions, not fixtures: importable from conftest.py and
from individual test modules.
"""

from __future__ import annotations

from typing import Any

from ares_bridge.domain.tickets import ParsedTicket
from ares_bridge.whatsapp.models import ContentKind, InboundMessage
from ares_bridge.whatsapp.transport import EventSink, TransportEvent

GROUP_JID = "120363000000000001@g.us"
OTHER_GROUP_JID = "120363999999999999@g.us"
PARTICIPANT_JID = "5491155550000@s.whatsapp.net"
OWN_JID = "5491166660000@s.whatsapp.net"


class LogRecorder:
    """Simple recorder to capture log calls deterministically."""

    def __init__(self):
        self.calls: list[tuple[str, tuple, dict]] = []

    def _record(self, level: str, *args, **kwargs):
        self.calls.append((level, args, kwargs))

    def info(self, *args, **kwargs):
        self._record("info", *args, **kwargs)

    def warning(self, *args, **kwargs):
        self._record("warning", *args, **kwargs)

    def error(self, *args, **kwargs):
        self._record("error", *args, **kwargs)

    def exception(self, *args, **kwargs):
        self._record("exception", *args, **kwargs)

    def debug(self, *args, **kwargs):
        self._record("debug", *args, **kwargs)

    def get_all_logged_content(self) -> str:
        """Concatenate all args and kwargs from all calls into one string."""
        parts = []
        for _, args, kwargs in self.calls:
            parts.append(str(args))
            parts.append(str(kwargs))
        return " ".join(parts)

    def messages(self, level: str | None = None) -> list[str]:
        return [str(args[0]) for lvl, args, _ in self.calls if args and (level is None or lvl == level)]

    def has_extra_field(self, key: str) -> bool:
        for _, _, kwargs in self.calls:
            extra = kwargs.get("extra", {})
            if key in extra.get("extra_fields", {}):
                return True
        return False


class FakeTransport:
    """In-memory transport. Tests push events with emit()."""

    def __init__(self, credentials: dict[str, Any] | None, sink: EventSink) -> None:
        self.credentials = credentials
        self._sink = sink
        self.user_id: str | None = None
        self.connect_calls = 0
        self.connect_error: Exception | None = None
        self.connect_events: list[TransportEvent] = []
        self.send_error: Exception | None = None
        self.sent: list[tuple[str, str]] = []
        self.logged_out = False
        self.closed = False

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        for event in self.connect_events:
            self.emit(event)

    async def send_text(self, chat_id: str, text: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((chat_id, text))

    async def logout(self) -> None:
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True

    def emit(self, event: TransportEvent) -> None:
        self._sink(event)


class FakeTransportFactory:
    """TransportFactory that keeps every transport it built."""

    def __init__(
        self,
        connect_error: Exception | None = None,
        connect_events: list[TransportEvent] | None = None,
    ) -> None:
        self.created: list[FakeTransport] = []
        self.connect_error = connect_error
        self.connect_events = list(connect_events or [])

    def __call__(self, credentials: dict[str, Any] | None, sink: EventSink) -> FakeTransport:
        transport = FakeTransport(credentials, sink)
        transport.connect_error = self.connect_error
        transport.connect_events = list(self.connect_events)
        self.created.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.created[-1]


class MemoryCredentialStore:
    """CredentialStore keeping the snapshot in memory and journaling every call."""

    def __init__(self, snapshot: dict[str, Any] | None = None, load_error: Exception | None = None):
        self.snapshot = snapshot
        self.load_error = load_error
        self.journal: list[tuple[str, Any]] = []

    def load(self) -> dict[str, Any] | None:
        self.journal.append(("load", self.snapshot))
        if self.load_error is not None:
            raise self.load_error
        return self.snapshot

    def save(self, snapshot: dict[str, Any]) -> None:
        self.journal.append(("save", snapshot))
        self.snapshot = snapshot

    def clear(self) -> None:
        self.journal.append(("clear", None))
        self.snapshot = None


class FakeRelay:
    def __init__(self, error: Exception | None = None) -> None:
        self.tickets: list[ParsedTicket] = []
        self.error = error

    async def deliver(self, ticket: ParsedTicket) -> None:
        self.tickets.append(ticket)
        if self.error is not None:
            raise self.error


def make_message(
    text: str = "/Acme | RX-100 | unit won't power on",
    *,
    message_id: str = "MSG001",
    chat_id: str = GROUP_JID,
    sender_id: str = PARTICIPANT_JID,
    sender_name: str | None = "Tecnico Uno",
    kind: ContentKind = ContentKind.TEXT,
    timestamp: int = 1760000000,
    from_self: bool = False,
) -> InboundMessage:
    return InboundMessage(
        message_id=message_id,
        chat_id=chat_id,
        sender_id=sender_id,
        sender_name=sender_name,
        text=text,
        kind=kind,
        timestamp=timestamp,
        from_self=from_self,
    )


def make_raw_message(
    content: dict[str, Any],
    *,
    message_id: str = "MSG001",
    remote_jid: str = GROUP_JID,
    participant: str | None = PARTICIPANT_JID,
    from_me: bool = False,
    push_name: str | None = "Tecnico Uno",
    timestamp: Any = 1760000000,
) -> dict[str, Any]:
    """Raw WhatsApp web message as Evolution forwards it in `data`."""
    key: dict[str, Any] = {"id": message_id, "remoteJid": remote_jid, "fromMe": from_me}
    if participant:
        key["participant"] = participant
    data: dict[str, Any] = {"key": key, "message": content, "messageTimestamp": timestamp}
    if push_name is not None:
        data["pushName"] = push_name
    return data
