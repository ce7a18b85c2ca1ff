"""
Memorial Feed API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Create tables if not present
  3. Connect to Redis (feed lanes degrade to uncached reads without it)
  4. Expose Prometheus /metrics endpoint
"""
import logging

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from memorial_feed.config import settings
from memorial_feed.database import init_db
from memorial_feed.errors import (
    DependencyUnavailable,
    NotFoundError,
    TemplateValidationError,
    ValidationError,
)
from memorial_feed.telemetry import setup_tracing, instrument_app
from memorial_feed.clients.redis_client import close_redis, init_redis
from memorial_feed.routers import activity, feed, memorials, posts

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
setup_tracing()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown of all external connections."""
    logger.info("Starting Memorial Feed API (env=%s)", settings.environment)

    await init_db()
    try:
        await init_redis()
    except Exception as exc:
        logger.warning("Redis unavailable at startup (%s) — serving lanes uncached", exc)

    logger.info("All services connected. API ready.")
    yield

    logger.info("Shutting down...")
    await close_redis()


app = FastAPI(
    title="Memorial Feed API",
    description=(
        "Ranked, cache-backed feeds of memorial posts and structured "
        "activity statements."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── Error mapping ──────────────────────────────────────────────────────────
@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    body = {"detail": str(exc)}
    if isinstance(exc, TemplateValidationError):
        body["missing_paths"] = exc.missing_paths
    return JSONResponse(status_code=422, content=body)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(DependencyUnavailable)
async def dependency_unavailable_handler(request: Request, exc: DependencyUnavailable):
    logger.warning("Dependency failure on %s: %s", request.url.path, exc)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=503, content={"detail": str(exc)}, headers=headers)


# ── Routers ────────────────────────────────────────────────────────────────
app.include_router(feed.router, prefix="/feed", tags=["Feed"])
app.include_router(activity.router, prefix="/activity", tags=["Activity"])
app.include_router(posts.router, prefix="/posts", tags=["Posts"])
app.include_router(memorials.router, prefix="/memorials", tags=["Memorials"])

# ── Prometheus metrics endpoint ────────────────────────────────────────────
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── OTel FastAPI instrumentation ──────────────────────────────────────────
instrument_app(app)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "service": settings.service_name}
