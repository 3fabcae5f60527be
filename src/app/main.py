"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database and module initialization, the v1 API router,
and the media mount that serves uploaded logos.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response
from fastapi.staticfiles import StaticFiles

from src.app.api.errors import register_error_handlers
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1 import health
from src.app.api.v1.router import router as v1_router
from src.app.config import get_settings
from src.app.core.database import close_db, get_session, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry

_MODULE_STATE = (
    "access_repository",
    "deal_repository",
    "analysis_repository",
    "analysis_generator",
    "chat_relay",
    "research_repository",
    "research_sync",
    "research_scheduler",
    "summary_service",
    "logo_storage",
    "stock_repository",
    "stock_quotes",
    "notes_repository",
    "notion_service",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and modules on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # Every module is wrapped in its own try/except so one failure leaves
    # its routes answering 503 instead of preventing startup.
    for name in _MODULE_STATE:
        setattr(app.state, name, None)

    from src.app.services.functions import FunctionsClient

    functions = FunctionsClient(
        base_url=settings.FUNCTIONS_BASE_URL,
        api_key=settings.FUNCTIONS_API_KEY,
        timeout=settings.FUNCTIONS_TIMEOUT,
    )
    if not functions.configured:
        log.warning("functions.not_configured", hint="set FUNCTIONS_BASE_URL")

    # ── Access & Pipeline ────────────────────────────────────────────────
    try:
        from src.app.access.repository import AccessRepository
        from src.app.deals.repository import DealRepository

        app.state.access_repository = AccessRepository(session_factory=get_session)
        app.state.deal_repository = DealRepository(session_factory=get_session)
        log.info("access.initialized")
    except Exception:
        log.warning("access.init_failed", exc_info=True)

    # ── Copilot ──────────────────────────────────────────────────────────
    try:
        from src.app.copilot.generator import AnalysisGenerator
        from src.app.copilot.repository import AnalysisRepository

        analysis_repository = AnalysisRepository(session_factory=get_session)
        app.state.analysis_repository = analysis_repository
        app.state.analysis_generator = AnalysisGenerator(functions, analysis_repository)
        log.info("copilot.initialized")
    except Exception:
        log.warning("copilot.init_failed", exc_info=True)

    # ── Chat ─────────────────────────────────────────────────────────────
    try:
        from src.app.chat.relay import ChatRelay

        app.state.chat_relay = ChatRelay(functions)
        log.info("chat.initialized")
    except Exception:
        log.warning("chat.init_failed", exc_info=True)

    # ── Research ─────────────────────────────────────────────────────────
    try:
        from src.app.research.crawler import FirecrawlClient
        from src.app.research.feeds import FeedFetcher
        from src.app.research.repository import ResearchRepository
        from src.app.research.scheduler import ResearchSyncScheduler
        from src.app.research.summary import SummaryService
        from src.app.research.sync import ResearchSyncService
        from src.app.services.storage import LogoStorage

        research_repository = ResearchRepository(session_factory=get_session)
        research_sync = ResearchSyncService(
            repository=research_repository,
            fetcher=FeedFetcher(timeout=settings.RESEARCH_FETCH_TIMEOUT),
            crawler=FirecrawlClient(api_key=settings.FIRECRAWL_API_KEY),
            concurrency=settings.RESEARCH_SYNC_CONCURRENCY,
        )
        app.state.research_repository = research_repository
        app.state.research_sync = research_sync
        app.state.summary_service = SummaryService(functions, research_repository)
        app.state.logo_storage = LogoStorage(settings.MEDIA_ROOT, settings.MEDIA_BASE_URL)

        scheduler = ResearchSyncScheduler(
            research_sync,
            research_repository,
            interval_minutes=settings.RESEARCH_AUTO_SYNC_MINUTES,
        )
        scheduler.start()
        app.state.research_scheduler = scheduler
        log.info("research.initialized", auto_sync=scheduler.running)
    except Exception:
        log.warning("research.init_failed", exc_info=True)

    # ── Stocks & Notes ───────────────────────────────────────────────────
    try:
        from src.app.notes.repository import NotesRepository
        from src.app.stocks.quotes import StockQuoteService
        from src.app.stocks.repository import StockRepository

        stock_repository = StockRepository(session_factory=get_session)
        app.state.stock_repository = stock_repository
        app.state.stock_quotes = StockQuoteService(functions, stock_repository)
        app.state.notes_repository = NotesRepository(session_factory=get_session)
        log.info("stocks.initialized")
    except Exception:
        log.warning("stocks.init_failed", exc_info=True)

    # ── Notion ───────────────────────────────────────────────────────────
    if settings.NOTION_TOKEN:
        try:
            from src.app.services.notion import NotionService

            app.state.notion_service = NotionService(
                token=settings.NOTION_TOKEN,
                market_db_id=settings.NOTION_MARKET_NOTES_DB_ID,
                stock_db_id=settings.NOTION_STOCK_NOTES_DB_ID,
                weekly_db_id=settings.NOTION_WEEKLY_NOTES_DB_ID,
            )
            log.info("notion.initialized")
        except Exception:
            log.warning("notion.init_failed", exc_info=True)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    scheduler = getattr(app.state, "research_scheduler", None)
    if scheduler is not None:
        scheduler.shutdown()

    notion = getattr(app.state, "notion_service", None)
    if notion is not None:
        try:
            await notion.aclose()
        except Exception:
            log.warning("notion.close_failed", exc_info=True)

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Venture Workspace API",
        version="0.1.0",
        description="Contacts, deal pipeline, deal analysis, research feeds, stocks and notes",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    register_error_handlers(app)

    app.include_router(health.router)
    app.include_router(v1_router, prefix="/api/v1")

    if settings.MEDIA_BASE_URL.startswith("/"):
        app.mount(
            settings.MEDIA_BASE_URL.rstrip("/"),
            StaticFiles(directory=settings.MEDIA_ROOT, check_dir=False),
            name="media",
        )

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
