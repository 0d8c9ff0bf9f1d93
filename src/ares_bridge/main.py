"""Process entry point: configuration, wiring, HTTP server, fatal exit."""

import asyncio
import signal
import sys
from dataclasses import dataclass
from types import FrameType

import uvicorn
from fastapi import FastAPI

from ares_bridge.api.factory import create_app
from ares_bridge.config import ConfigError, Settings, load_settings
from ares_bridge.observability.logging import get_logger, uvicorn_log_config
from ares_bridge.observability.redaction import hash_identifier, safe_log_context
from ares_bridge.relay.ticket_relay import TicketRelay
from ares_bridge.session.credentials import FileCredentialStore
from ares_bridge.session.manager import SessionLifecycleManager, SessionStatus
from ares_bridge.whatsapp.evolution_transport import EvolutionGateway

logger = get_logger(__name__)

LISTEN_HOST = "0.0.0.0"

EXIT_OK = 0
EXIT_SESSION_CLOSED = 1
EXIT_CONFIG = 2


@dataclass
class ShutdownPolicy:
    """Decides at shutdown whether the session is revoked.

    Only an interactive stop (SIGINT) logs out. SIGTERM from a supervisor or a
    redeploy keeps the session, so the next start needs no QR scan.
    """

    logout_on_interrupt: bool
    signum: int | None = None

    def record(self, signum: int) -> None:
        if self.signum is None:
            self.signum = signum

    def should_logout(self) -> bool:
        return self.logout_on_interrupt and self.signum == signal.SIGINT


class BridgeServer(uvicorn.Server):
    """uvicorn server that reports the signal which stopped it."""

    def __init__(self, config: uvicorn.Config, policy: ShutdownPolicy) -> None:
        super().__init__(config)
        self.policy = policy

    def handle_exit(self, sig: int, frame: FrameType | None) -> None:
        self.policy.record(sig)
        super().handle_exit(sig, frame)


@dataclass
class Bridge:
    app: FastAPI
    manager: SessionLifecycleManager
    relay: TicketRelay
    gateway: EvolutionGateway
    policy: ShutdownPolicy

    def close(self) -> None:
        self.relay.close()
        self.gateway.close()


def build(settings: Settings) -> Bridge:
    """Wire store, relay, transport gateway, manager and app."""
    gateway = EvolutionGateway(settings.evolution)
    relay = TicketRelay(
        settings.backend_url,
        settings.webhook_secret,
        timeout=settings.relay_timeout_seconds,
    )
    manager = SessionLifecycleManager(
        transport_factory=gateway.transport_factory,
        credential_store=FileCredentialStore(settings.auth_state_dir),
        relay=relay,
        authorized_chat_id=settings.authorized_chat_id,
        reconnect_delay=settings.reconnect_delay_seconds,
    )
    policy = ShutdownPolicy(logout_on_interrupt=settings.logout_on_shutdown)
    app = create_app(manager, gateway=gateway, logout_on_shutdown=policy.should_logout)
    return Bridge(app=app, manager=manager, relay=relay, gateway=gateway, policy=policy)


def log_startup(settings: Settings) -> None:
    for level, message in settings.startup_warnings():
        getattr(logger, level)(message)
    logger.info(
        "starting ARES WhatsApp bridge",
        extra={
            "extra_fields": safe_log_context(
                port=settings.port,
                backend_url=settings.backend_url,
                authorized_chat_hash=hash_identifier(settings.authorized_chat_id),
            )
        },
    )


async def serve(settings: Settings) -> int:
    """Run until SIGINT/SIGTERM or until the session is logged out.

    Returns:
        Process exit code: 1 when the session ended logged out, else 0.
    """
    bridge = build(settings)
    manager = bridge.manager
    server = BridgeServer(
        uvicorn.Config(
            bridge.app,
            host=LISTEN_HOST,
            port=settings.port,
            log_config=uvicorn_log_config(settings.log_level),
        ),
        bridge.policy,
    )

    async def stop_when_closed() -> None:
        await manager.wait_closed()
        server.should_exit = True

    watcher = asyncio.create_task(stop_when_closed(), name="fatal-session-watcher")
    try:
        await server.serve()
    finally:
        watcher.cancel()
        bridge.close()

    if manager.status is SessionStatus.CLOSED:
        return EXIT_SESSION_CLOSED
    return EXIT_OK


def run() -> None:
    try:
        settings = load_settings()
    except ConfigError as e:
        logger.error("invalid configuration", extra={"extra_fields": safe_log_context(error=str(e))})
        sys.exit(EXIT_CONFIG)

    log_startup(settings)
    try:
        code = asyncio.run(serve(settings))
    except KeyboardInterrupt:
        # uvicorn re-raises the SIGINT it handled once serve() has returned
        code = EXIT_OK
    sys.exit(code)


if __name__ == "__main__":
    run()
