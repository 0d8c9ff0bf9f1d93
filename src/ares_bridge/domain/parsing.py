"""Deterministic parsing of technician commands.

Format: `/CLIENT | EQUIPMENT | description`. Only the first two `|` are
structural; the description may contain more of them.

Pure functions, no I/O. Security: NEVER log raw text (PII).
"""

from collections.abc import Mapping
from typing import Any

from ares_bridge.domain.tickets import ParseRejection, RejectionReason, TicketFields
from ares_bridge.whatsapp.models import ContentKind

COMMAND_PREFIX = "/"
FIELD_DELIMITER = "|"
DESCRIPTION_JOINER = " | "

USAGE_NOTICE = (
    "⚠️ Formato incorrecto.\n\n"
    "📋 Usar: `/CLIENTE | EQUIPO | descripción`\n\n"
    "Ejemplo:\n"
    "`/LA MISION | RX DIGITAL | El equipo no enciende`"
)

# Checked in order, first present key wins
_KIND_KEYS: tuple[tuple[str, ContentKind], ...] = (
    ("imageMessage", ContentKind.IMAGE),
    ("videoMessage", ContentKind.VIDEO),
    ("documentMessage", ContentKind.DOCUMENT),
    ("audioMessage", ContentKind.AUDIO),
)


def parse_command(raw_text: str) -> TicketFields | ParseRejection:
    """Parse a command message into ticket fields.

    Args:
        raw_text: Message text exactly as received.

    Returns:
        TicketFields on success, otherwise a ParseRejection whose reason tells
        whether the text was not a command at all or a broken one.
    """
    if not raw_text.startswith(COMMAND_PREFIX):
        return ParseRejection(RejectionReason.NOT_COMMAND_PREFIXED)

    body = raw_text[len(COMMAND_PREFIX):].strip()
    parts = [part.strip() for part in body.split(FIELD_DELIMITER)]

    if len(parts) < 3:
        return ParseRejection(RejectionReason.MALFORMED_STRUCTURE)

    client, equipment = parts[0], parts[1]
    description = DESCRIPTION_JOINER.join(parts[2:]).strip()

    if not client or not equipment or not description:
        return ParseRejection(RejectionReason.EMPTY_FIELD)

    return TicketFields(
        client=client,
        equipment=equipment,
        description=description,
        original_text=raw_text,
    )


def _section(content: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = content.get(key)
    return value if isinstance(value, Mapping) else {}


def extract_text(content: Mapping[str, Any] | None) -> str:
    """Text of a raw message content: plain text, extended text, then media captions."""
    if not content:
        return ""
    candidates = (
        content.get("conversation"),
        _section(content, "extendedTextMessage").get("text"),
        _section(content, "imageMessage").get("caption"),
        _section(content, "videoMessage").get("caption"),
    )
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return ""


def detect_content_kind(content: Mapping[str, Any] | None) -> ContentKind:
    """Classify by attachment: image, video, document, audio, else text.

    A captioned image is an image, never text.
    """
    if content:
        for key, kind in _KIND_KEYS:
            if content.get(key) is not None:
                return kind
    return ContentKind.TEXT
