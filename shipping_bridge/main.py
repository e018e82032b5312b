"""
Stallion Shipping Bridge
FastAPI application entry point

- Carrier config provider and Stallion client built once in the lifespan
- Rate limiting with SlowAPI
- Error sanitization middleware
- Health endpoint with DB ping
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from shipping_bridge.api.routes import shipping
from shipping_bridge.core.config import settings
from shipping_bridge.core.database import AsyncSessionLocal, dispose_engine
from shipping_bridge.core.error_handler import ErrorSanitizationMiddleware, shipping_error_handler
from shipping_bridge.core.exceptions import ShippingBridgeError
from shipping_bridge.core.rate_limit import limiter, rate_limit_exceeded_handler
from shipping_bridge.services.carrier_config import CarrierConfigProvider
from shipping_bridge.services.stallion_client import StallionClient

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared carrier config provider and client; close the client on shutdown."""
    provider = CarrierConfigProvider(settings)
    client = StallionClient(provider, timeout=settings.STALLION_TIMEOUT_SECONDS)
    app.state.carrier_config = provider
    app.state.stallion_client = client

    logger.info(
        f"Shipping bridge starting: environment={settings.ENVIRONMENT} "
        f"carrier={'sandbox' if settings.is_sandbox else 'production'}"
    )

    yield

    await client.close()
    await dispose_engine()
    logger.info("Stallion HTTP client and database pool closed")


app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="Stallion Express rates, shipments, tracking and webhooks for storefront orders.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Domain errors -> {success: false, message, code, details}
app.add_exception_handler(ShippingBridgeError, shipping_error_handler)

# Error sanitization (catches unhandled exceptions)
app.add_middleware(ErrorSanitizationMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(shipping.router)


@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """
    DB ping plus the resolved carrier mode. 503 only when the database is down;
    an unconfigured carrier is reported but does not fail the check.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "carrier": None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    provider = getattr(request.app.state, "carrier_config", None)
    if provider is not None:
        config = await provider.get_config()
        health_status["carrier"] = {
            "mode": "sandbox" if config.sandbox else "production",
            "configured": config.is_configured,
            "source": config.source,
        }

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["database"] = f"error: {type(e).__name__}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status
