"""FastAPI application entrypoint.

All routes prefixed /v1. Auto-generated OpenAPI docs at /docs.

Every collaborator (database engine, token service, fanout hub, mailer,
LLM provider, assistant and the services built on them) is created once
during the lifespan and stored on app.state for injection via Depends().
``create_app`` accepts prebuilt pieces so tests can run the same wiring
against SQLite and fakes.
"""

from contextlib import asynccontextmanager
import logging
from datetime import timedelta
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from concierge import __version__
from concierge.api.v1.bookings import router as bookings_router
from concierge.api.v1.chat import router as chat_router
from concierge.api.v1.conversations import router as conversations_router
from concierge.api.v1.health import router as health_router
from concierge.api.v1.realtime import router as realtime_router
from concierge.core.clock import Clock, utcnow
from concierge.core.config import Settings, settings
from concierge.core.exceptions import ConciergeError
from concierge.db.postgres import build_engine, build_session_factory, close_database
from concierge.db.redis import RedisClient
from concierge.services.assistant import Assistant, LLMAssistant
from concierge.services.booking import BookingCoordinator
from concierge.services.conversation_state import ConversationStateMachine
from concierge.services.fanout import FanoutHub, RedisFanoutRelay
from concierge.services.llm.cerebras import CerebrasProvider
from concierge.services.llm.fallback import FallbackLLMProvider
from concierge.services.llm.gemini import GeminiProvider
from concierge.services.mailer import HttpMailer, LoggingMailer, Mailer, Notifier
from concierge.services.messages import ConversationSequencer, MessageStore
from concierge.services.orchestrator import ConversationOrchestrator
from concierge.services.reservations import ReservationService
from concierge.services.session_tokens import SessionTokenService


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


_configure_logging(settings.log_level)

logger = structlog.get_logger(__name__)


def _build_assistant(config: Settings) -> Assistant:
    cerebras = CerebrasProvider(
        api_key=config.cerebras_api_key,
        model=config.cerebras_model,
    )
    gemini = GeminiProvider(
        api_key=config.gemini_api_key,
        model=config.gemini_model,
    )
    return LLMAssistant(FallbackLLMProvider(primary=cerebras, secondary=gemini))


def _build_mailer(config: Settings) -> Mailer:
    if config.mail_api_url:
        return HttpMailer(config.mail_api_url, config.mail_api_key, config.mail_from)
    logger.warning("mail_api_not_configured_logging_only")
    return LoggingMailer()


def create_app(
    config: Settings = settings,
    engine: AsyncEngine | None = None,
    assistant: Assistant | None = None,
    mailer: Mailer | None = None,
    clock: Clock = utcnow,
) -> FastAPI:
    """Build the application. Anything not supplied is built from ``config``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # --- Startup ---
        logger.info("app_startup", env=config.app_env)

        db_engine = engine or build_engine(config.database_url)
        session_factory = build_session_factory(db_engine)
        notifier = Notifier(mailer or _build_mailer(config))

        hub = FanoutHub(max_queue=config.fanout_queue_size)
        redis: RedisClient | None = None
        relay: RedisFanoutRelay | None = None
        if config.fanout_backend == "redis":
            redis = RedisClient.from_url(config.redis_url)
            relay = RedisFanoutRelay(hub, redis)
            hub.attach_relay(relay)
            await relay.start()

        token_service = SessionTokenService(
            secret=config.session_token_secret,
            algorithm=config.jwt_algorithm,
            ttl=timedelta(days=config.session_token_ttl_days),
            refresh_window=timedelta(days=config.session_token_refresh_days),
            clock=clock,
        )
        state_machine = ConversationStateMachine(
            session_factory,
            notifier,
            idle_timeout=timedelta(minutes=config.conversation_idle_timeout_minutes),
            clock=clock,
        )
        message_store = MessageStore(session_factory, ConversationSequencer(), clock=clock)
        booking_coordinator = BookingCoordinator(
            session_factory, notifier, timeout_seconds=config.booking_timeout_seconds
        )
        reservation_service = ReservationService(
            session_factory, hold_days=config.reservation_hold_days, clock=clock
        )
        orchestrator = ConversationOrchestrator(
            session_factory=session_factory,
            tokens=token_service,
            state_machine=state_machine,
            messages=message_store,
            hub=hub,
            assistant=assistant or _build_assistant(config),
            bookings=booking_coordinator,
            reservations=reservation_service,
            history_window=config.history_window,
            response_target=timedelta(seconds=config.response_target_seconds),
            clock=clock,
        )

        app.state.engine = db_engine
        app.state.session_factory = session_factory
        app.state.notifier = notifier
        app.state.fanout_hub = hub
        app.state.token_service = token_service
        app.state.state_machine = state_machine
        app.state.message_store = message_store
        app.state.booking_coordinator = booking_coordinator
        app.state.reservation_service = reservation_service
        app.state.orchestrator = orchestrator

        logger.info("app_services_ready", fanout_backend=config.fanout_backend)
        yield

        # --- Shutdown ---
        logger.info("app_shutdown")
        await notifier.drain()
        if relay is not None:
            await relay.stop()
        if redis is not None:
            await redis.close()
        if engine is None:
            await close_database(db_engine)

    app = FastAPI(
        title="Concierge: Conversation & Booking API",
        description="Multi-tenant customer chat with live operator handoff and bookings.",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS: the widget is embedded on tenant sites
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if not config.is_production else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ConciergeError)
    async def concierge_error_handler(request: Request, exc: ConciergeError) -> JSONResponse:
        """Structured error response for all Concierge exceptions."""
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
        )

    # Mount all v1 routers
    app.include_router(health_router, prefix="/v1")
    app.include_router(chat_router, prefix="/v1")
    app.include_router(bookings_router, prefix="/v1")
    app.include_router(conversations_router, prefix="/v1")
    app.include_router(realtime_router, prefix="/v1")
    return app


app = create_app()
