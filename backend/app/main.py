"""AgroTrust Escrow API - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from agrotrust.escrow import EscrowError

from .config import get_settings
from .dependencies import close_reconciler
from .errors import escrow_error_handler, request_validation_handler
from .logging_config import configure_logging, get_logger
from .rate_limit import limiter
from .routes import escrow_router, webhooks_router

logger = get_logger("agrotrust.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    configure_logging("DEBUG" if settings.debug else settings.log_level)
    logger.info(
        f"Starting AgroTrust Escrow API (debug={settings.debug}, flow={settings.payment_flow})"
    )
    yield
    close_reconciler()
    logger.info("Shutting down AgroTrust Escrow API")


app = FastAPI(
    title="AgroTrust Escrow API",
    description="Escrow holds, reconciliation and release for the AgroTrust marketplace",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Domain errors and request validation
app.add_exception_handler(EscrowError, escrow_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)

# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

# Include routers
app.include_router(escrow_router)
app.include_router(webhooks_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "agrotrust-escrow",
        "version": "0.1.0",
        "status": "ok",
    }


@app.get("/health")
async def health():
    """Detailed health check with actual database verification."""
    import asyncio

    from .database import get_supabase_client

    db_status = "disconnected"
    try:
        db = get_supabase_client()
        await asyncio.to_thread(lambda: db.table("escrows").select("id").limit(1).execute())
        db_status = "connected"
    except Exception as e:
        logger.warning(f"Health check database probe failed: {e}")
        db_status = f"error: {str(e)[:50]}"

    overall_status = "healthy" if db_status == "connected" else "degraded"

    return {
        "status": overall_status,
        "database": db_status,
    }
