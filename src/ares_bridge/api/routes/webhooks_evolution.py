"""Evolution API webhook: session events pushed by the Evolution instance.

Security:
- X-Webhook-Secret checked with a constant-time compare when a secret is configured
- Logs contain NO chat ids and NO message text
"""

import hmac
from typing import Any

from fastapi import APIRouter, Header, Request, Response

from ares_bridge.observability.correlation import get_correlation_id
from ares_bridge.observability.logging import get_logger
from ares_bridge.observability.redaction import safe_log_context
from ares_bridge.whatsapp.evolution_adapter import InvalidPayloadError, event_name
from ares_bridge.whatsapp.evolution_transport import EvolutionGateway

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = get_logger(__name__)


def _get_gateway(request: Request) -> EvolutionGateway:
    return request.app.state.evolution_gateway


@router.post("/evolution")
async def evolution_webhook(
    request: Request,
    x_webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
) -> Response:
    """Receive one Evolution event and hand it to the current transport.

    Returns:
        200 "ok" if it became a session event, 200 "ignored" otherwise.
        400 if the body is not JSON or a known event has an invalid shape.
        401 if the webhook secret does not match.
    """
    correlation_id = get_correlation_id()
    gateway = _get_gateway(request)

    expected_secret = gateway.webhook_secret
    if expected_secret and (
        not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected_secret)
    ):
        logger.warning(
            "evolution webhook secret mismatch",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=401, content="unauthorized")

    try:
        payload: dict[str, Any] = await request.json()
    except ValueError:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid json")

    if not isinstance(payload, dict):
        return Response(status_code=400, content="invalid payload shape")

    try:
        handled = gateway.dispatch(payload)
    except InvalidPayloadError as e:
        logger.warning(
            "invalid evolution payload shape",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    event=event_name(payload),
                    error=str(e),
                )
            },
        )
        return Response(status_code=400, content="invalid payload shape")

    logger.debug(
        "evolution webhook received",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                event=event_name(payload),
                handled=handled,
            )
        },
    )
    return Response(status_code=200, content="ok" if handled else "ignored")
