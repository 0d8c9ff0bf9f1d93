"""Ticket parsing result models."""

from dataclasses import dataclass
from enum import Enum

from ares_bridge.whatsapp.models import ContentKind, InboundMessage

UNKNOWN_SENDER_NAME = "Desconocido"


class RejectionReason(str, Enum):
    NOT_COMMAND_PREFIXED = "not-command-prefixed"
    MALFORMED_STRUCTURE = "malformed-structure"
    EMPTY_FIELD = "empty-field"


@dataclass(frozen=True)
class ParseRejection:
    reason: RejectionReason

    @property
    def wants_usage_notice(self) -> bool:
        """Only messages that look like commands get a correction back."""
        return self.reason is not RejectionReason.NOT_COMMAND_PREFIXED


@dataclass(frozen=True)
class TicketFields:
    """The three structural fields of a `/CLIENT | EQUIPMENT | description` command."""

    client: str
    equipment: str
    description: str
    original_text: str


@dataclass(frozen=True)
class ParsedTicket:
    """A ticket request ready for the ARES backend."""

    message_id: str
    chat_id: str
    sender_id: str
    sender_name: str
    client: str
    equipment: str
    description: str
    original_text: str
    kind: ContentKind
    timestamp: int

    @classmethod
    def from_message(cls, message: InboundMessage, fields: TicketFields) -> "ParsedTicket":
        return cls(
            message_id=message.message_id,
            chat_id=message.chat_id,
            sender_id=message.sender_id or message.chat_id,
            sender_name=message.sender_name or UNKNOWN_SENDER_NAME,
            client=fields.client,
            equipment=fields.equipment,
            description=fields.description,
            original_text=fields.original_text,
            kind=message.kind,
            timestamp=message.timestamp,
        )

    def to_webhook_payload(self) -> dict:
        """Body expected by ARES at POST /api/whatsapp/webhook."""
        return {
            "id": self.message_id,
            "chatId": self.chat_id,
            "remitente": {
                "numero": self.sender_id,
                "nombre": self.sender_name,
            },
            "cliente": self.client,
            "equipo": self.equipment,
            "descripcion": self.description,
            "textoOriginal": self.original_text,
            "tipo": self.kind.value,
            "timestamp": self.timestamp,
        }
