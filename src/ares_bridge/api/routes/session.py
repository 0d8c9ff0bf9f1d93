"""Command surface for the ARES backend: health, pending QR, outbound send.

Security: NEVER log chatId or message text. Only hashes and lengths.
"""

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from ares_bridge.observability.correlation import get_correlation_id
from ares_bridge.observability.logging import get_logger
from ares_bridge.observability.redaction import hash_identifier, safe_log_context
from ares_bridge.session.manager import SessionLifecycleManager
from ares_bridge.whatsapp.models import OutboundCommand
from ares_bridge.whatsapp.transport import NotConnectedError, TransportError

router = APIRouter(tags=["session"])

logger = get_logger(__name__)

QR_HINT = (
    "Usa este string para generar el QR code en https://www.qr-code-generator.com/ o similar"
)


class SendMessageRequest(BaseModel):
    """POST /send-message body. Fields are checked by hand to answer 400, not 422."""

    chatId: str | None = None
    message: str | None = None


def get_session_manager(request: Request) -> SessionLifecycleManager:
    return request.app.state.session_manager


def _error(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, **extra})


@router.get("/health")
def health(request: Request) -> dict:
    """Liveness plus session state. `numero` is the session's own JID when open."""
    snapshot = get_session_manager(request).snapshot()
    return {
        "status": "ok",
        "connected": snapshot.connected,
        "numero": snapshot.user_id,
        "session": snapshot.status.value,
    }


@router.get("/qr")
def qr(request: Request) -> JSONResponse:
    """Pending QR challenge, 404 when connected or none generated yet."""
    pending = get_session_manager(request).snapshot().qr
    if not pending:
        return _error(
            404,
            "No hay QR disponible",
            message="El servicio ya está conectado o aún no ha generado el QR",
        )
    return JSONResponse(content={"qr": pending, "message": QR_HINT})


@router.post("/send-message")
async def send_message(request: Request) -> JSONResponse:
    """Push a text into a chat through the open session.

    Returns:
        200 {"success": true} when sent.
        400 if chatId or message is missing or empty.
        503 if there is no open session.
        500 if the transport failed to send.
    """
    correlation_id = get_correlation_id()

    try:
        body = SendMessageRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        body = SendMessageRequest()

    if not body.chatId or not body.message:
        return _error(400, "chatId and message are required")

    command = OutboundCommand(chat_id=body.chatId, text=body.message)
    log_ctx = safe_log_context(
        correlationId=correlation_id,
        to_hash=hash_identifier(command.chat_id),
        text_len=len(command.text),
    )

    try:
        await get_session_manager(request).send(command)
    except NotConnectedError:
        logger.warning("send-message rejected, not connected", extra={"extra_fields": log_ctx})
        return _error(503, "WhatsApp not connected")
    except TransportError as e:
        logger.exception("send-message failed", extra={"extra_fields": log_ctx})
        return _error(500, str(e))

    return JSONResponse(content={"success": True})
