"""
AgentOS - FastAPI Application Factory
Main entry point for the AgentOS API.

This creates and configures the FastAPI application with:
- The AgentOSApp service container (wired in the lifespan)
- Routes for identity, trust, agents, sessions, teams, ledger and marketplace
- Middleware (CORS, logging context)
- Error handlers
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any

import sentry_sdk
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.exceptions import HTTPException as StarletteHTTPException

from agentos import __version__
from agentos.config import Settings, get_settings
from agentos.kernel.event_system import EventBus
from agentos.kernel.sandbox import ToolSandbox
from agentos.models.base import ErrorResponse, utc_now
from agentos.models.events import EventType
from agentos.models.marketplace import Currency
from agentos.monitoring import LoggingContextMiddleware, configure_logging
from agentos.services.agents import AgentRegistry
from agentos.services.identity import IdentityService, create_identity_chain
from agentos.services.ledger import LedgerService
from agentos.services.llm import LLMConfig, LLMService
from agentos.services.marketplace import MarketplaceService
from agentos.services.runtime import RuntimeService
from agentos.services.teams import TeamService
from agentos.services.tools import MemoryStore, build_default_tools
from agentos.services.trust import TrustService

if TYPE_CHECKING:
    from sentry_sdk._types import Event as SentryEvent

    from agentos.services.identity import IdentityChainClient
    from agentos.services.llm import LLMProviderBase

logger = structlog.get_logger(__name__)

DECAY_INTERVAL_SECONDS = 3600.0


def _sentry_before_send(
    event: SentryEvent,
    hint: dict[str, Any],
) -> SentryEvent | None:
    """Filter out health check endpoint errors from Sentry."""
    request_data = event.get("request")
    url = ""
    if isinstance(request_data, dict):
        url_value = request_data.get("url", "")
        if isinstance(url_value, str):
            url = url_value
    if "/health" in url or "/ready" in url:
        return None
    return event


def _init_sentry(settings: Settings) -> bool:
    if not settings.sentry_dsn:
        return False
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        environment=settings.app_env,
        release=f"agentos@{__version__}",
        send_default_pii=False,
        before_send=_sentry_before_send,
    )
    return True


class AgentOSApp:
    """
    AgentOS application container.

    Holds references to all services for dependency injection.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        llm_provider: LLMProviderBase | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._llm_provider = llm_provider

        # Initialized in initialize()
        self.event_bus: EventBus | None = None
        self.chain: IdentityChainClient | None = None
        self.ledger: LedgerService | None = None
        self.identity: IdentityService | None = None
        self.trust: TrustService | None = None
        self.memory: MemoryStore | None = None
        self.sandbox: ToolSandbox | None = None
        self.registry: AgentRegistry | None = None
        self.marketplace: MarketplaceService | None = None
        self.llm: LLMService | None = None
        self.runtime: RuntimeService | None = None
        self.teams: TeamService | None = None

        self._decay_task: asyncio.Task | None = None
        self.decay_interval_seconds = DECAY_INTERVAL_SECONDS

        # State
        self.started_at: datetime | None = None
        self.is_ready: bool = False

    async def initialize(self) -> None:
        """Build and wire all services."""
        settings = self.settings
        logger.info("agentos_initializing", environment=settings.app_env)

        self.event_bus = EventBus()
        await self.event_bus.start()

        self.chain = create_identity_chain(settings)
        self.ledger = LedgerService(
            chain=self.chain,
            block_size=settings.ledger_block_size,
            anchor_every_blocks=settings.ledger_anchor_blocks,
            event_bus=self.event_bus,
        )
        self.identity = IdentityService(
            self.chain,
            network=settings.dsid_network,
            challenge_ttl_seconds=settings.challenge_ttl_seconds,
            event_bus=self.event_bus,
            ledger=self.ledger,
        )
        self.trust = TrustService(self.identity, ledger=self.ledger, event_bus=self.event_bus)

        self.memory = MemoryStore()
        self.sandbox = ToolSandbox(
            build_default_tools(
                self.ledger,
                self.memory,
                http_max_bytes=settings.http_tool_max_bytes,
                http_timeout=settings.runtime_tool_timeout_seconds,
            )
        )
        self.registry = AgentRegistry(self.identity, self.sandbox, event_bus=self.event_bus)
        self.marketplace = MarketplaceService(
            self.registry,
            self.trust,
            ledger=self.ledger,
            event_bus=self.event_bus,
            refund_window_days=settings.marketplace_refund_window_days,
            currency=Currency(settings.marketplace_currency),
        )

        self.llm = LLMService(LLMConfig.from_settings(settings), provider=self._llm_provider)
        self.runtime = RuntimeService(
            self.registry,
            self.identity,
            self.trust,
            self.sandbox,
            self.llm,
            ledger=self.ledger,
            event_bus=self.event_bus,
            marketplace=self.marketplace,
            tool_timeout_seconds=settings.runtime_tool_timeout_seconds,
            max_tool_calls=settings.runtime_max_tool_calls,
            max_tool_output_chars=settings.runtime_max_tool_output_chars,
            pending_ttl_seconds=settings.runtime_pending_ttl_seconds,
        )
        self.teams = TeamService(
            self.registry,
            self.runtime,
            self.trust,
            ledger=self.ledger,
            event_bus=self.event_bus,
            marketplace=self.marketplace,
            max_parallel_limit=settings.team_max_parallel,
            max_rounds_limit=settings.team_max_rounds,
        )

        self._decay_task = asyncio.create_task(self._decay_loop())
        self.started_at = utc_now()
        self.is_ready = True

        await self.event_bus.publish(
            EventType.SYSTEM_STARTUP,
            {"version": __version__, "environment": settings.app_env},
            source="system",
        )
        logger.info("agentos_initialized", tools=len(self.sandbox.list_specs()))

    async def _decay_loop(self) -> None:
        while True:
            await asyncio.sleep(self.decay_interval_seconds)
            try:
                await self.trust.apply_decay()
            except Exception:
                logger.exception("trust_decay_failed")

    async def shutdown(self) -> None:
        """Gracefully shutdown all components."""
        logger.info("agentos_shutting_down")
        self.is_ready = False

        if self._decay_task is not None:
            self._decay_task.cancel()
            try:
                await self._decay_task
            except asyncio.CancelledError:
                pass
            self._decay_task = None

        if self.llm is not None:
            await self.llm.close()
        if self.chain is not None:
            await self.chain.close()

        if self.event_bus is not None:
            await self.event_bus.publish(EventType.SYSTEM_SHUTDOWN, {}, source="system")
            try:
                await self.event_bus.stop()
            except (RuntimeError, asyncio.CancelledError) as e:
                logger.warning("event_bus_shutdown_failed", error=str(e))

        logger.info("agentos_shutdown_complete")

    def get_status(self) -> dict[str, Any]:
        """Get current application status."""
        status: dict[str, Any] = {
            "status": "ready" if self.is_ready else "starting",
            "version": __version__,
            "environment": self.settings.app_env,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "uptime_seconds": (
                (utc_now() - self.started_at).total_seconds() if self.started_at else 0
            ),
        }
        if self.is_ready:
            status.update(
                identity=self.identity.get_stats(),
                trust=self.trust.get_stats(),
                ledger=self.ledger.stats(),
                agents=self.registry.count(),
                runtime=self.runtime.get_stats(),
                events=self.event_bus.get_metrics(),
            )
        return status


def create_app(
    container: AgentOSApp | None = None,
    title: str = "AgentOS",
    description: str = "Decentralized AI agent operating system",
    version: str = __version__,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        container: Pre-built service container (tests pass one with a mock LLM)
        title: API title for documentation
        description: API description
        version: API version string

    Returns:
        Configured FastAPI application
    """
    settings = container.settings if container else get_settings()

    configure_logging(
        level=settings.log_level,
        json_output=settings.app_env == "production",
    )
    if _init_sentry(settings):
        logger.info("sentry_initialized", environment=settings.app_env)

    agentos_app = container or AgentOSApp(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await agentos_app.initialize()
        try:
            yield
        finally:
            await agentos_app.shutdown()

    docs_url = None if settings.app_env == "production" else "/docs"
    app = FastAPI(
        title=title,
        description=description,
        version=version,
        docs_url=docs_url,
        redoc_url=None,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.agentos = agentos_app

    cors_origins = settings.cors_origins_list
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "X-Correlation-ID"],
        )
    app.add_middleware(LoggingContextMiddleware)

    # Exception handlers
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        body = ErrorResponse(error=str(exc.detail), status_code=exc.status_code, path=request.url.path)
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(exclude_none=True),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        # Submitted values and ctx are not echoed back
        sanitized_errors = [
            {
                "loc": list(error.get("loc", [])),
                "type": error.get("type", "unknown"),
                "msg": error.get("msg", "Validation failed"),
            }
            for error in exc.errors()
        ]
        body = ErrorResponse(
            error="Validation error",
            status_code=422,
            path=request.url.path,
            details=sanitized_errors,
        )
        return JSONResponse(status_code=422, content=body.model_dump(exclude_none=True))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "unhandled_exception",
            path=str(request.url.path),
            error=str(exc),
        )
        body = ErrorResponse(error="Internal server error", status_code=500, path=request.url.path)
        return JSONResponse(status_code=500, content=body.model_dump(exclude_none=True))

    # Include routers
    from agentos.api.routes import (
        agents,
        auth,
        identity,
        ledger,
        marketplace,
        sessions,
        system,
        teams,
        trust,
    )

    app.include_router(auth.router, prefix="/api/v1/auth", tags=["auth"])
    app.include_router(identity.router, prefix="/api/v1/identity", tags=["identity"])
    app.include_router(trust.router, prefix="/api/v1/trust", tags=["trust"])
    app.include_router(agents.router, prefix="/api/v1/agents", tags=["agents"])
    app.include_router(sessions.router, prefix="/api/v1/sessions", tags=["sessions"])
    app.include_router(teams.router, prefix="/api/v1/teams", tags=["teams"])
    app.include_router(ledger.router, prefix="/api/v1/ledger", tags=["ledger"])
    app.include_router(marketplace.router, prefix="/api/v1/marketplace", tags=["marketplace"])
    app.include_router(system.router, prefix="/api/v1/system", tags=["system"])

    @app.get("/", include_in_schema=False)
    async def root() -> dict[str, Any]:
        return {"name": title, "version": version, "status": agentos_app.get_status()["status"]}

    # Health check (lightweight)
    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "healthy" if agentos_app.is_ready else "starting"}

    # Readiness check including ledger integrity
    @app.get("/ready", include_in_schema=False)
    async def ready() -> Response:
        if not agentos_app.is_ready:
            return JSONResponse(status_code=503, content={"status": "not_ready"})
        intact, _ = await agentos_app.ledger.verify_chain()
        if not intact:
            return JSONResponse(
                status_code=503,
                content={"status": "degraded", "reason": "ledger_integrity"},
            )
        return JSONResponse(content={"status": "ready"})

    logger.info("fastapi_app_created", title=title, version=version, docs_url=docs_url)
    return app


def run_server(
    host: str = "0.0.0.0",  # nosec B104 - bind-all for container deployment
    port: int = 8000,
    reload: bool = False,
) -> None:
    """
    Run the AgentOS server.

    For production use:
        uvicorn agentos.api.app:create_app --factory --host 0.0.0.0 --port 8000
    """
    import uvicorn

    uvicorn.run(
        "agentos.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )
