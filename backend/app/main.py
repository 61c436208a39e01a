"""Checkpay Backend API - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from checkpay import __version__

from .config import get_settings
from .dependencies import Services
from .errors import register_error_handlers
from .logging_config import configure_logging, get_logger
from .rate_limit import limiter
from .routes import dev_router, escrow_router, jobs_router

logger = get_logger("checkpay.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    logger.info(f"Starting Checkpay API (debug={settings.debug})")
    yield
    logger.info("Shutting down Checkpay API")


settings = get_settings()
configure_logging(settings.log_level)

app = FastAPI(
    title="Checkpay API",
    description="Checkpoint escrow for two-party freelance engagements",
    version=__version__,
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Core errors -> HTTP statuses
register_error_handlers(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(jobs_router)
app.include_router(escrow_router)
if settings.debug:
    app.include_router(dev_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "checkpay-backend",
        "version": __version__,
        "status": "ok",
    }


@app.get("/health")
def health(services: Services):
    """Health check including the configured chain and assets."""
    return {
        "status": "healthy",
        "chain": services.config.chain,
        "assets": services.config.asset_registry.symbols(),
    }
