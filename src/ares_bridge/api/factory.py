"""FastAPI application factory."""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response

from ares_bridge.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from ares_bridge.session.manager import SessionLifecycleManager
from ares_bridge.whatsapp.evolution_transport import EvolutionGateway

from .routes import session, webhooks_evolution


def create_app(
    manager: SessionLifecycleManager,
    gateway: EvolutionGateway | None = None,
    logout_on_shutdown: bool | Callable[[], bool] = False,
) -> FastAPI:
    """Create the HTTP surface around a session manager.

    Args:
        manager: Session the routes read from and send through. Started on
                 application startup, stopped on shutdown.
        gateway: Evolution gateway. When given, its webhook receiver is mounted.
        logout_on_shutdown: Revoke the session when the server stops. A callable
                 is asked at shutdown time, once the stop reason is known.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await manager.start()
        try:
            yield
        finally:
            if callable(logout_on_shutdown):
                logout = logout_on_shutdown()
            else:
                logout = logout_on_shutdown
            await manager.stop(logout=logout)

    app = FastAPI(
        title="ARES WhatsApp Bridge",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.session_manager = manager
    app.state.evolution_gateway = gateway

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    app.include_router(session.router)

    if gateway is not None:
        app.include_router(webhooks_evolution.router)

    return app
