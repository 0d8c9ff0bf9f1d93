"""Ticket delivery to the ARES backend.

One POST per ticket, no retry. Failures are classified, logged and returned as
a RelayOutcome; nothing is raised to the caller, so a broken backend can never
stop message ingestion.

Security: NEVER log chat ids, sender ids or ticket text. Only hashes and lengths.
"""

import asyncio
from enum import Enum

import requests

from ares_bridge.domain.tickets import ParsedTicket
from ares_bridge.observability.correlation import CORRELATION_ID_HEADER, get_correlation_id
from ares_bridge.observability.logging import get_logger
from ares_bridge.observability.redaction import hash_identifier, safe_log_context

logger = get_logger(__name__)

WEBHOOK_PATH = "/api/whatsapp/webhook"
SECRET_HEADER = "x-webhook-secret"

# Timeout for the backend request (seconds)
DEFAULT_TIMEOUT = 10.0


class RelayOutcome(str, Enum):
    DELIVERED = "delivered"
    UNREACHABLE = "unreachable"
    UNAUTHORIZED = "unauthorized"
    HTTP_ERROR = "http_error"
    TIMEOUT = "timeout"


class TicketRelay:
    """Posts parsed tickets to `<backend_url>/api/whatsapp/webhook`."""

    def __init__(
        self,
        backend_url: str,
        webhook_secret: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self._url = f"{backend_url.rstrip('/')}{WEBHOOK_PATH}"
        self._secret = webhook_secret
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def url(self) -> str:
        return self._url

    async def deliver(self, ticket: ParsedTicket) -> RelayOutcome:
        """Send without blocking the event loop. Correlation ID follows into the thread."""
        return await asyncio.to_thread(self.deliver_sync, ticket)

    def deliver_sync(self, ticket: ParsedTicket) -> RelayOutcome:
        headers = {
            "Content-Type": "application/json",
            SECRET_HEADER: self._secret,
            CORRELATION_ID_HEADER: get_correlation_id(),
        }
        log_ctx = safe_log_context(
            message_id=ticket.message_id,
            sender_hash=hash_identifier(ticket.sender_id),
            description_len=len(ticket.description),
            kind=ticket.kind,
        )

        try:
            response = self._session.post(
                self._url,
                json=ticket.to_webhook_payload(),
                headers=headers,
                timeout=self._timeout,
            )
            response.raise_for_status()
        except requests.Timeout:
            # Checked before ConnectionError: ConnectTimeout is both
            logger.error(
                "ticket relay timed out",
                extra={"extra_fields": {**log_ctx, **safe_log_context(timeout=self._timeout)}},
            )
            return RelayOutcome.TIMEOUT
        except requests.ConnectionError:
            logger.error(
                "ARES backend unreachable",
                extra={"extra_fields": {**log_ctx, **safe_log_context(url=self._url)}},
            )
            return RelayOutcome.UNREACHABLE
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 401:
                logger.error(
                    "ARES rejected webhook secret, check ARES_WEBHOOK_SECRET",
                    extra={"extra_fields": log_ctx},
                )
                return RelayOutcome.UNAUTHORIZED
            logger.error(
                "ticket relay failed",
                extra={"extra_fields": {**log_ctx, **safe_log_context(status=status)}},
            )
            return RelayOutcome.HTTP_ERROR
        except requests.RequestException as e:
            logger.error(
                "ticket relay failed",
                extra={
                    "extra_fields": {**log_ctx, **safe_log_context(error_type=type(e).__name__)}
                },
            )
            return RelayOutcome.HTTP_ERROR

        ack = _parse_ack(response)
        logger.info(
            "ticket delivered to ARES",
            extra={
                "extra_fields": {
                    **log_ctx,
                    **safe_log_context(
                        status=response.status_code,
                        ticket_created=bool(ack.get("ticketCreado", False)),
                        report_number=ack.get("numeroReporte") or "N/A",
                    ),
                }
            },
        )
        return RelayOutcome.DELIVERED

    def close(self) -> None:
        self._session.close()


def _parse_ack(response: requests.Response) -> dict:
    """Backend acknowledgment body, or {} when it is not a JSON object."""
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
