"""Creator Insights - FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from config import get_settings
from database import dispose_engine, get_engine
from middleware.rate_limit import limiter, rate_limit_exceeded_handler
from models import Base
from routers import sync_router, trend_router
from services.errors import truncate_message
from services.freshness import RedisTrendCache, build_trend_cache

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - build the trend cache, clean up on shutdown."""
    if settings.auto_create_tables:
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")

    app.state.trend_cache = build_trend_cache(settings)
    if isinstance(app.state.trend_cache, RedisTrendCache):
        if await app.state.trend_cache.health_check():
            logger.info("Redis trend cache connected")
        else:
            logger.warning("Redis not available - trend reads will not be cached")

    if not settings.cron_secret and not settings.trust_cron_marker_header:
        logger.warning("CRON_SECRET is not set - sync endpoints will reject every caller")

    yield

    await app.state.trend_cache.close()
    await dispose_engine()


app = FastAPI(
    title="Creator Insights API",
    description="Instagram metrics ingestion and reconciled trends",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["ETag"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={
            "ok": False,
            "error": "server_error",
            "message": truncate_message(str(exc) or exc.__class__.__name__),
        },
    )


# Include routers
app.include_router(sync_router)
app.include_router(trend_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "creator-insights"}
