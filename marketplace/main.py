"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis import asyncio as aioredis

from marketplace.api.admin import router as admin_router
from marketplace.api.bulk_upload import router as bulk_upload_router
from marketplace.api.deps import client_ip
from marketplace.api.webhooks import router as webhooks_router
from marketplace.config import Settings, get_settings
from marketplace.database import Base, engine
from marketplace import models  # noqa: F401 - Import to register models
from marketplace.exceptions import MarketplaceError
from marketplace.services.ip_blocker import BlockPolicy, IPBlocker
from marketplace.services.rate_limiter import RateLimiter

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

# Set specific log levels for noisy libraries
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

settings = get_settings()


def init_abuse_protection(app: FastAPI, redis_client, settings: Settings) -> None:
    """Attach the blocker and rate limiter, sharing one Redis client."""
    app.state.redis = redis_client
    app.state.ip_blocker = IPBlocker(
        redis_client,
        BlockPolicy.from_settings(settings),
        whitelist=settings.rate_limit_whitelist,
    )
    app.state.rate_limiter = RateLimiter(redis_client, app.state.ip_blocker)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables on startup; close Redis on shutdown."""
    Base.metadata.create_all(bind=engine)
    logger.info("🚀 Marketplace API started")
    yield
    await app.state.redis.aclose()


app = FastAPI(
    title="Marketplace Core",
    description="Bulk product uploads and request abuse protection for the marketplace",
    version="0.1.0",
    lifespan=lifespan,
)

init_abuse_protection(
    app, aioredis.from_url(settings.redis_url, decode_responses=True), settings
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def ip_block_middleware(request: Request, call_next):
    """Short-circuit blocked clients before any handler runs."""
    if request.url.path == "/health":
        return await call_next(request)

    identifier = client_ip(request)
    record = await request.app.state.ip_blocker.is_blocked(identifier)
    if record is not None:
        retry_after = record.remaining_seconds(request.app.state.ip_blocker.clock())
        return JSONResponse(
            status_code=403,
            content={"detail": "Access temporarily blocked due to repeated rate limit violations"},
            headers={
                "Retry-After": str(retry_after),
                "X-Block-Reason": record.reason.encode("ascii", "ignore").decode(),
                "X-Block-Expires": str(int(record.expires_at)),
            },
        )
    return await call_next(request)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Include routers
app.include_router(bulk_upload_router)
app.include_router(admin_router)
app.include_router(webhooks_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
