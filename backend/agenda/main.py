import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from agenda import __version__
from agenda.admin.routes import router as admin_router
from agenda.config import settings
from agenda.database import async_session
from agenda.log_config import configure_error_tracking, configure_logging
from agenda.services.context import SchedulerContext
from agenda.services.dispatcher import Dispatcher
from agenda.services.job_store import SqlJobStore
from agenda.services.notifications import ResendEmailGateway, close_http_client
from agenda.utils.rate_limit import limiter

configure_logging()
configure_error_tracking("agenda-api")

logger = structlog.get_logger()


def build_context() -> SchedulerContext:
    return SchedulerContext(
        session_factory=async_session,
        store=SqlJobStore(async_session),
        gateway=ResendEmailGateway(),
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("agenda_api_startup", env=settings.APP_ENV)
    ctx = build_context()
    app.state.scheduler_context = ctx

    dispatcher = None
    if settings.RUN_DISPATCHER_IN_API:
        dispatcher = Dispatcher(ctx)
        dispatcher.start()

    yield

    if dispatcher is not None:
        await dispatcher.shutdown()
    await close_http_client()
    logger.info("agenda_api_shutdown")


app = FastAPI(
    title="Agenda scheduler operator API",
    version=__version__,
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None,
    openapi_url=None if settings.is_production else "/openapi.json",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_exception", path=request.url.path, method=request.method)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    # Operators may pass their own id to correlate API calls with worker logs.
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(request_id=request_id)
    started = time.monotonic()
    try:
        response = await call_next(request)
        elapsed_ms = (time.monotonic() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        if request.url.path.startswith("/admin"):
            logger.info(
                "admin_request",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                elapsed_ms=round(elapsed_ms, 1),
            )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/health", "/metrics"],
).instrument(app).expose(app, include_in_schema=False)

app.include_router(admin_router)


@app.get("/health")
async def health_check():
    """Database connectivity check."""
    try:
        async with async_session() as db:
            await db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("health_check_failed")
        return JSONResponse(status_code=503, content={"status": "unhealthy", "database": "disconnected"})
    return {"status": "ok", "database": "connected"}
