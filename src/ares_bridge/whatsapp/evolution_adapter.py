"""Evolution API adapter - validate and normalize webhook payloads.

Evolution forwards the session's events as
`{"event": "...", "instance": "...", "sender": "<own jid>", "data": {...}}`.
For messages, `data` is the raw WhatsApp web message (key, pushName, message,
messageTimestamp).
"""

import time
from typing import Any

from ares_bridge.domain.parsing import detect_content_kind, extract_text

from .models import InboundMessage
from .transport import ConnectionState, ConnectionUpdate, MessagesReceived, TransportEvent

EVENT_MESSAGES_UPSERT = "messages.upsert"
EVENT_CONNECTION_UPDATE = "connection.update"
EVENT_QRCODE_UPDATED = "qrcode.updated"


class InvalidPayloadError(Exception):
    """Raised when Evolution payload has invalid shape."""


def event_name(payload: dict[str, Any]) -> str:
    """Normalized event name: both `MESSAGES_UPSERT` and `messages.upsert` map to the latter."""
    raw = payload.get("event")
    if not isinstance(raw, str):
        return ""
    return raw.strip().lower().replace("_", ".")


def _timestamp(raw: Any) -> int:
    # Long values sometimes arrive as {"low": ..., "high": ...} or as strings
    if isinstance(raw, dict):
        raw = raw.get("low")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return int(time.time())
    return value if value > 0 else int(time.time())


def normalize_message(data: dict[str, Any]) -> InboundMessage:
    """Normalize one raw message into an InboundMessage.

    Raises:
        InvalidPayloadError: If the message id or chat id is missing.
    """
    key = data.get("key")
    if not isinstance(key, dict):
        raise InvalidPayloadError("missing key")

    message_id = key.get("id")
    if not message_id or not isinstance(message_id, str):
        raise InvalidPayloadError("missing or invalid message_id")

    remote_jid = key.get("remoteJid")
    if not remote_jid or not isinstance(remote_jid, str):
        raise InvalidPayloadError("missing remoteJid")

    content = data.get("message")
    if not isinstance(content, dict):
        content = {}

    # In groups the author is the participant; in direct chats, the chat itself
    sender_id = key.get("participant") or remote_jid
    push_name = data.get("pushName")

    return InboundMessage(
        message_id=message_id,
        chat_id=remote_jid,
        sender_id=str(sender_id),
        sender_name=push_name if isinstance(push_name, str) and push_name else None,
        text=extract_text(content),
        kind=detect_content_kind(content),
        timestamp=_timestamp(data.get("messageTimestamp")),
        from_self=bool(key.get("fromMe", False)),
    )


def _messages_event(data: Any) -> MessagesReceived:
    items = data if isinstance(data, list) else [data]
    messages = []
    for item in items:
        if not isinstance(item, dict):
            raise InvalidPayloadError("message entry is not an object")
        messages.append(normalize_message(item))
    return MessagesReceived(messages=tuple(messages), notify=True)


def _connection_event(data: dict[str, Any], sender: Any) -> ConnectionUpdate:
    try:
        state = ConnectionState(str(data.get("state", "")).lower())
    except ValueError as e:
        raise InvalidPayloadError("unknown connection state") from e

    close_code = data.get("statusReason")
    user_id = data.get("wuid") or sender
    return ConnectionUpdate(
        state=state,
        close_code=int(close_code) if isinstance(close_code, int) else None,
        user_id=user_id if isinstance(user_id, str) and user_id else None,
    )


def _qr_event(data: dict[str, Any]) -> ConnectionUpdate:
    qrcode = data.get("qrcode")
    code = qrcode.get("code") if isinstance(qrcode, dict) else None
    if not code or not isinstance(code, str):
        raise InvalidPayloadError("missing qrcode.code")
    return ConnectionUpdate(qr=code)


def to_transport_event(payload: dict[str, Any]) -> TransportEvent | None:
    """Translate an Evolution webhook payload into a transport event.

    Returns:
        The event, or None for event types the session does not care about.

    Raises:
        InvalidPayloadError: If a known event has an invalid shape.
    """
    name = event_name(payload)
    data = payload.get("data")

    if name == EVENT_MESSAGES_UPSERT:
        return _messages_event(data)

    if name not in (EVENT_CONNECTION_UPDATE, EVENT_QRCODE_UPDATED):
        return None

    if not isinstance(data, dict):
        raise InvalidPayloadError("data is not an object")
    if name == EVENT_CONNECTION_UPDATE:
        return _connection_event(data, payload.get("sender"))
    return _qr_event(data)
