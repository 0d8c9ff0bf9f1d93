"""Session lifecycle manager.

Owns the single WhatsApp session for the process. Two tasks run while started:

- the lifecycle task consumes transport events and connect requests from one
  queue and is the only code that changes the status or swaps the transport;
- the ingestion task consumes inbound messages in arrival order and turns them
  into tickets, usage notices or nothing.

State machine:

    disconnected --start--> connecting --qr--> awaiting_scan
    connecting | awaiting_scan --open--> open
    any live state --close(recoverable)--> connecting (+ one reconnect after a fixed delay)
    any live state --close(logged out)--> closed (terminal)

Security: NEVER log chat ids, sender ids or message text. Only hashes and lengths.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from ares_bridge.domain.parsing import USAGE_NOTICE, parse_command
from ares_bridge.domain.tickets import ParsedTicket, ParseRejection
from ares_bridge.observability.correlation import correlation_scope
from ares_bridge.observability.logging import get_logger
from ares_bridge.observability.redaction import hash_identifier, safe_log_context
from ares_bridge.session.credentials import CredentialStore, CredentialStoreError
from ares_bridge.whatsapp.models import InboundMessage, OutboundCommand
from ares_bridge.whatsapp.transport import (
    ConnectionState,
    ConnectionUpdate,
    CredentialsChanged,
    EventSink,
    MessagesReceived,
    NotConnectedError,
    SessionTransport,
    TransportError,
    TransportEvent,
    TransportFactory,
    is_terminal_close,
)

logger = get_logger(__name__)

DEFAULT_RECONNECT_DELAY = 5.0


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_SCAN = "awaiting_scan"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of the session for the HTTP surface."""

    status: SessionStatus
    qr: str | None = None
    user_id: str | None = None

    @property
    def connected(self) -> bool:
        return self.status is SessionStatus.OPEN


class TicketDelivery(Protocol):
    async def deliver(self, ticket: ParsedTicket) -> Any:
        ...


class _ConnectRequest:
    """Queue item asking the lifecycle task to open a new transport."""


_CONNECT = _ConnectRequest()

_QueueItem = tuple[int, "TransportEvent | _ConnectRequest"]


class SessionLifecycleManager:
    """Single owner of the session, its status and its transport handle."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        credential_store: CredentialStore,
        relay: TicketDelivery,
        authorized_chat_id: str,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
    ) -> None:
        self._factory = transport_factory
        self._store = credential_store
        self._relay = relay
        self._authorized_chat_id = authorized_chat_id
        self._reconnect_delay = reconnect_delay

        self._status = SessionStatus.DISCONNECTED
        self._qr: str | None = None
        self._user_id: str | None = None
        self._transport: SessionTransport | None = None
        # Bumped per transport; events tagged with an older value are stale
        self._generation = 0

        self._events: asyncio.Queue[_QueueItem] = asyncio.Queue()
        self._inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self._closed = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lifecycle_task: asyncio.Task | None = None
        self._ingest_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Read side (HTTP surface)
    # ------------------------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def pending_qr(self) -> str | None:
        """The challenge waiting to be scanned, only while awaiting a scan."""
        if self._status is SessionStatus.AWAITING_SCAN:
            return self._qr
        return None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            status=self._status,
            qr=self.pending_qr,
            user_id=self._user_id if self._status is SessionStatus.OPEN else None,
        )

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the worker tasks and request the first connect."""
        if self._lifecycle_task is not None:
            raise RuntimeError("session manager already started")

        self._loop = asyncio.get_running_loop()
        self._lifecycle_task = asyncio.create_task(
            self._run_lifecycle(), name="session-lifecycle"
        )
        self._ingest_task = asyncio.create_task(self._run_ingestion(), name="session-ingestion")
        self._events.put_nowait((self._generation, _CONNECT))

    async def stop(self, logout: bool = False) -> None:
        """Cancel pending work and drop the transport.

        Args:
            logout: Revoke the session first (only when open). The saved
                snapshot is then useless and is cleared, so the next start
                pairs with a fresh QR instead of failing as logged out.
        """
        self._cancel_reconnect()

        tasks = [t for t in (self._lifecycle_task, self._ingest_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._lifecycle_task = None
        self._ingest_task = None

        transport, self._transport = self._transport, None
        if transport is not None:
            if logout and self._status is SessionStatus.OPEN:
                try:
                    await transport.logout()
                    await asyncio.to_thread(self._store.clear)
                    logger.info("session logged out")
                except (TransportError, CredentialStoreError):
                    logger.exception("logout failed")
            await self._close_transport(transport)

        if self._status is not SessionStatus.CLOSED:
            self._set_status(SessionStatus.DISCONNECTED)
        self._qr = None
        self._user_id = None

    async def wait_closed(self) -> None:
        """Block until the session reaches the terminal `closed` state."""
        await self._closed.wait()

    async def wait_idle(self) -> None:
        """Block until every queued event and inbound message has been handled."""
        await self._events.join()
        await self._inbound.join()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_text(self, chat_id: str, text: str) -> None:
        """Send through the open session.

        Raises:
            NotConnectedError: No open session.
            TransportError: The transport failed to send.
        """
        transport = self._transport
        if self._status is not SessionStatus.OPEN or transport is None:
            raise NotConnectedError("WhatsApp not connected")
        await transport.send_text(chat_id, text)

    async def send(self, command: OutboundCommand) -> None:
        await self.send_text(command.chat_id, command.text)
        logger.info(
            "outbound message sent",
            extra={
                "extra_fields": safe_log_context(
                    to_hash=hash_identifier(command.chat_id),
                    text_len=len(command.text),
                )
            },
        )

    # ------------------------------------------------------------------
    # Lifecycle task
    # ------------------------------------------------------------------

    def _make_sink(self, generation: int) -> EventSink:
        loop = self._loop
        assert loop is not None

        def sink(event: TransportEvent) -> None:
            item = (generation, event)
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                self._events.put_nowait(item)
            else:
                loop.call_soon_threadsafe(self._events.put_nowait, item)

        return sink

    async def _run_lifecycle(self) -> None:
        while True:
            generation, item = await self._events.get()
            try:
                await self._handle(generation, item)
            except Exception:
                logger.exception(
                    "session event handling failed",
                    extra={"extra_fields": safe_log_context(event=type(item).__name__)},
                )
            finally:
                self._events.task_done()

    async def _handle(self, generation: int, item: TransportEvent | _ConnectRequest) -> None:
        if self._status is SessionStatus.CLOSED:
            return

        if isinstance(item, _ConnectRequest):
            await self._connect()
            return

        if generation != self._generation:
            logger.debug(
                "stale transport event ignored",
                extra={"extra_fields": safe_log_context(event=type(item).__name__)},
            )
            return

        if isinstance(item, CredentialsChanged):
            await self._save_credentials(item.snapshot)
        elif isinstance(item, ConnectionUpdate):
            await self._on_connection_update(item)
        elif isinstance(item, MessagesReceived):
            self._on_messages(item)

    async def _connect(self) -> None:
        try:
            snapshot = await asyncio.to_thread(self._store.load)
        except CredentialStoreError:
            logger.exception("credential snapshot unreadable")
            await self._enter_closed("credential snapshot unreadable")
            return

        previous, self._transport = self._transport, None
        if previous is not None:
            await self._close_transport(previous)

        self._generation += 1
        self._transport = self._factory(snapshot, self._make_sink(self._generation))
        self._qr = None
        self._set_status(SessionStatus.CONNECTING)

        logger.info(
            "connecting to WhatsApp",
            extra={"extra_fields": safe_log_context(has_credentials=snapshot is not None)},
        )
        try:
            await self._transport.connect()
        except Exception as e:
            logger.warning(
                "connect attempt failed",
                extra={"extra_fields": safe_log_context(error_type=type(e).__name__)},
            )
            await self._on_closed(None)

    async def _save_credentials(self, snapshot: dict[str, Any]) -> None:
        # Awaited inside the lifecycle task, so no connect can run before it lands
        try:
            await asyncio.to_thread(self._store.save, snapshot)
        except CredentialStoreError:
            logger.exception("credential snapshot could not be saved")
            await self._enter_closed("credential snapshot could not be saved")
            return
        logger.debug("credentials saved")

    async def _on_connection_update(self, update: ConnectionUpdate) -> None:
        if update.qr:
            self._qr = update.qr
            self._set_status(SessionStatus.AWAITING_SCAN)
            logger.info(
                "QR challenge pending, fetch it from GET /qr",
                extra={"extra_fields": safe_log_context(qr_len=len(update.qr))},
            )

        if update.state is ConnectionState.OPEN:
            self._qr = None
            transport_user = self._transport.user_id if self._transport else None
            self._user_id = update.user_id or transport_user
            self._set_status(SessionStatus.OPEN)
            logger.info(
                "WhatsApp connected",
                extra={
                    "extra_fields": safe_log_context(
                        authorized_chat_hash=hash_identifier(self._authorized_chat_id),
                    )
                },
            )
        elif update.state is ConnectionState.CONNECTING:
            logger.info("WhatsApp connecting")
        elif update.state is ConnectionState.CLOSE:
            await self._on_closed(update.close_code)

    async def _drop_transport(self) -> None:
        # Anything the dropped transport emits afterwards is stale
        self._generation += 1
        transport, self._transport = self._transport, None
        if transport is not None:
            await self._close_transport(transport)

    async def _on_closed(self, close_code: int | None) -> None:
        self._qr = None
        self._user_id = None
        await self._drop_transport()

        if is_terminal_close(close_code):
            await self._enter_closed("logged out")
            return

        logger.warning(
            "connection closed, reconnecting",
            extra={
                "extra_fields": safe_log_context(
                    close_code=close_code,
                    delay_seconds=self._reconnect_delay,
                )
            },
        )
        self._set_status(SessionStatus.CONNECTING)
        self._schedule_reconnect()

    async def _enter_closed(self, reason: str) -> None:
        self._cancel_reconnect()
        await self._drop_transport()
        self._qr = None
        self._user_id = None
        self._set_status(SessionStatus.CLOSED)
        logger.error(
            "session closed; delete the credential directory and scan a new QR",
            extra={"extra_fields": safe_log_context(reason=reason)},
        )
        self._closed.set()

    def _schedule_reconnect(self) -> None:
        if self.reconnect_pending:
            return
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after_delay(), name="session-reconnect"
        )

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self._reconnect_delay)
        self._events.put_nowait((self._generation, _CONNECT))

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None

    async def _close_transport(self, transport: SessionTransport) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.warning(
                "transport close failed",
                extra={"extra_fields": safe_log_context(error_type=type(e).__name__)},
            )

    def _set_status(self, status: SessionStatus) -> None:
        if status is self._status:
            return
        previous, self._status = self._status, status
        logger.info(
            "session status changed",
            extra={"extra_fields": safe_log_context(previous=previous, status=status)},
        )

    def _on_messages(self, batch: MessagesReceived) -> None:
        if not batch.notify:
            return
        if self._status is not SessionStatus.OPEN:
            logger.debug(
                "messages dropped, session not open",
                extra={"extra_fields": safe_log_context(count=len(batch.messages))},
            )
            return
        for message in batch.messages:
            self._inbound.put_nowait(message)

    # ------------------------------------------------------------------
    # Ingestion task
    # ------------------------------------------------------------------

    async def _run_ingestion(self) -> None:
        while True:
            message = await self._inbound.get()
            try:
                with correlation_scope(message.message_id):
                    await self.process_message(message)
            except Exception:
                logger.exception(
                    "message processing failed",
                    extra={"extra_fields": safe_log_context(message_id=message.message_id)},
                )
            finally:
                self._inbound.task_done()

    async def process_message(self, message: InboundMessage) -> None:
        """Filter, parse and dispatch one inbound message."""
        if message.from_self:
            return

        if self._status is SessionStatus.CLOSED:
            return

        if message.chat_id != self._authorized_chat_id:
            logger.debug(
                "message from unauthorized chat ignored",
                extra={"extra_fields": safe_log_context(chat_hash=hash_identifier(message.chat_id))},
            )
            return

        result = parse_command(message.text)

        if isinstance(result, ParseRejection):
            if not result.wants_usage_notice:
                return
            logger.warning(
                "invalid ticket command, sending usage notice",
                extra={"extra_fields": safe_log_context(reason=result.reason)},
            )
            try:
                await self.send_text(message.chat_id, USAGE_NOTICE)
            except TransportError as e:
                logger.warning(
                    "usage notice not sent",
                    extra={"extra_fields": safe_log_context(error_type=type(e).__name__)},
                )
            return

        ticket = ParsedTicket.from_message(message, result)
        logger.info(
            "ticket received",
            extra={
                "extra_fields": safe_log_context(
                    sender_hash=hash_identifier(ticket.sender_id),
                    client=ticket.client,
                    equipment=ticket.equipment,
                    description_len=len(ticket.description),
                    kind=ticket.kind,
                )
            },
        )
        await self._relay.deliver(ticket)
