import structlog
import logging
import contextlib

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import HTTPException

from sitewatch.config import settings
from sitewatch.database import init_db, close_db, get_session_factory
from sitewatch.exceptions import AppError, app_error_handler, http_error_handler
from sitewatch.middleware import LoggingMiddleware, SecurityHeadersMiddleware
from sitewatch.routers.admin import router as admin_router
from sitewatch.routers.cron import router as cron_router
from sitewatch.routers.monitor import router as monitor_router
from sitewatch.routers.worker import router as worker_router
from sitewatch.services.monitor import MonitorRuntime
from sitewatch.services.scheduler import start_scheduler, stop_scheduler
from sitewatch.taskqueue import TaskQueue, init_redis_pool, close_redis_pool

# ── Structured logging setup ──────────────────────────────────────────────────
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)
logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO)

log = structlog.get_logger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("app.starting", env=settings.ENVIRONMENT, version=settings.APP_VERSION)
    await init_db()
    await init_redis_pool()
    limits = httpx.Limits(max_connections=50, max_keepalive_connections=10)
    async with httpx.AsyncClient(limits=limits) as client:
        runtime = MonitorRuntime(client, get_session_factory(), TaskQueue())
        app.state.runtime = runtime
        start_scheduler(runtime)
        log.info("app.ready", channels=[c.name for c in runtime.notifier.channels])
        yield
        log.info("app.shutting_down")
        stop_scheduler()
    await close_redis_pool()
    await close_db()
    log.info("app.stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    lifespan=lifespan,
)

# ── Middleware (order matters, outermost first) ────────────────────────────────
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(LoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["X-API-Key", "Content-Type", "Authorization"],
)

# ── Exception handlers ────────────────────────────────────────────────────────
app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(cron_router)
app.include_router(worker_router)
app.include_router(monitor_router)
app.include_router(admin_router)
