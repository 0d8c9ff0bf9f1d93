"""Session transport backed by an Evolution API instance.

Evolution runs the multi-device protocol and keeps the session keys on its own
side, so the credential snapshot handed to this transport is not used and no
CredentialsChanged events are produced. Connection progress arrives two ways:
the answer to `GET /instance/connect/{instance}`, and webhook events that the
HTTP surface passes to EvolutionGateway.dispatch().

Security: NEVER log recipient ids or message text. Only hashes and lengths.
"""

from __future__ import annotations

import asyncio
from typing import Any

import requests

from ares_bridge.config import EvolutionSettings
from ares_bridge.observability.logging import get_logger
from ares_bridge.observability.redaction import hash_identifier, safe_log_context

from .evolution_adapter import to_transport_event
from .transport import ConnectionState, ConnectionUpdate, EventSink, TransportError

logger = get_logger(__name__)


class EvolutionClient:
    """Thin blocking client for the Evolution instance endpoints."""

    def __init__(self, settings: EvolutionSettings, session: requests.Session | None = None) -> None:
        self._settings = settings
        self._session = session or requests.Session()
        self._session.headers.update({"apikey": settings.api_key})

    @property
    def instance(self) -> str:
        return self._settings.instance

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        url = f"{self._settings.base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                json=payload,
                timeout=self._settings.timeout_seconds,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            status = getattr(e.response, "status_code", None)
            raise TransportError(f"Evolution {method} {path} failed (status={status})") from e
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    def connect(self) -> dict[str, Any]:
        """Start or resume the instance. Returns a QR payload or the instance state."""
        body = self._request("GET", f"/instance/connect/{self.instance}")
        return body if isinstance(body, dict) else {}

    def send_text(self, number: str, text: str) -> None:
        self._request("POST", f"/message/sendText/{self.instance}", {"number": number, "text": text})

    def logout(self) -> None:
        self._request("DELETE", f"/instance/logout/{self.instance}")

    def close(self) -> None:
        self._session.close()


def _connect_response_event(body: dict[str, Any]) -> ConnectionUpdate | None:
    code = body.get("code")
    if isinstance(code, str) and code:
        return ConnectionUpdate(qr=code)

    instance = body.get("instance")
    state = instance.get("state") if isinstance(instance, dict) else None
    if state == ConnectionState.OPEN.value:
        return ConnectionUpdate(state=ConnectionState.OPEN)
    return None


class EvolutionTransport:
    """One connect attempt against the Evolution instance."""

    def __init__(self, gateway: EvolutionGateway, sink: EventSink) -> None:
        self._gateway = gateway
        self._sink = sink
        self._user_id: str | None = None
        self._closed = False

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def closed(self) -> bool:
        return self._closed

    async def connect(self) -> None:
        body = await asyncio.to_thread(self._gateway.client.connect)
        self._sink(ConnectionUpdate(state=ConnectionState.CONNECTING))
        event = _connect_response_event(body)
        if event is not None:
            self._sink(event)

    async def send_text(self, chat_id: str, text: str) -> None:
        await asyncio.to_thread(self._gateway.client.send_text, chat_id, text)
        logger.debug(
            "evolution message sent",
            extra={
                "extra_fields": safe_log_context(
                    to_hash=hash_identifier(chat_id),
                    text_len=len(text),
                )
            },
        )

    async def logout(self) -> None:
        await asyncio.to_thread(self._gateway.client.logout)

    async def close(self) -> None:
        self._closed = True
        self._gateway.unbind(self)

    def receive(self, payload: dict[str, Any]) -> bool:
        """Translate one webhook payload and push it to the sink."""
        if self._closed:
            return False
        sender = payload.get("sender")
        if isinstance(sender, str) and sender:
            self._user_id = sender
        event = to_transport_event(payload)
        if event is None:
            return False
        self._sink(event)
        return True


class EvolutionGateway:
    """Long-lived side of the Evolution integration.

    Builds transports for the lifecycle manager (see `transport_factory`) and
    routes webhook payloads to whichever transport is current.
    """

    def __init__(self, settings: EvolutionSettings, client: EvolutionClient | None = None) -> None:
        self._settings = settings
        self.client = client or EvolutionClient(settings)
        self._current: EvolutionTransport | None = None

    @property
    def webhook_secret(self) -> str:
        return self._settings.webhook_secret

    def transport_factory(
        self, credentials: dict[str, Any] | None, sink: EventSink
    ) -> EvolutionTransport:
        # Session keys live inside Evolution; `credentials` is ignored
        transport = EvolutionTransport(self, sink)
        self._current = transport
        return transport

    def unbind(self, transport: EvolutionTransport) -> None:
        if self._current is transport:
            self._current = None

    def dispatch(self, payload: dict[str, Any]) -> bool:
        """Deliver one webhook payload to the current transport.

        Returns:
            True if it produced a session event, False if it was ignored.

        Raises:
            InvalidPayloadError: If a known event has an invalid shape.
        """
        instance = payload.get("instance")
        if instance and instance != self._settings.instance:
            logger.warning(
                "webhook for another evolution instance ignored",
                extra={"extra_fields": safe_log_context(instance=instance)},
            )
            return False

        transport = self._current
        if transport is None:
            logger.debug("webhook received with no active transport")
            return False
        return transport.receive(payload)

    def close(self) -> None:
        self.client.close()
