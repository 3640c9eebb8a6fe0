"""
EVIDENS Billing - Main FastAPI Application.

Serves plan pricing, subscription checkout and the Pagar.me webhook on top
of the billing core (payment routing, subscription lifecycle, access time).

Run with:
    uvicorn evidens.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from evidens.api.v1.billing import router as billing_router
from evidens.config import get_settings
from evidens.constants import API_TITLE, API_VERSION
from evidens.logging_config import setup_logging
from evidens.middleware import RequestContextMiddleware
from evidens.services.billing_service import (
    BillingService,
    InMemoryBillingRepository,
    SupabaseBillingRepository,
)
from evidens.services.pagarme_service import PagarmeService

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    # Initialize Supabase async client
    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_service_role_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_service_role_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Using in-memory billing repository")

    _app.state.supabase = supabase_client

    if supabase_client is not None:
        repository = SupabaseBillingRepository(supabase_client, settings.billing)
    else:
        repository = InMemoryBillingRepository()
    _app.state.billing_service = BillingService(repository, settings.billing)

    pagarme_service: PagarmeService | None = None
    if settings.pagarme.secret_key:
        pagarme_service = PagarmeService(settings.pagarme, settings.billing)
        logger.info("pagarme_configured")
    else:
        logger.warning("pagarme_not_configured", detail="Checkout and webhook endpoints will return 503")
    _app.state.pagarme_service = pagarme_service

    logger.info("services_initialized")

    yield

    if pagarme_service is not None:
        await pagarme_service.close()
    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "API de pagamentos da EVIDENS: preços de planos, assinaturas "
        "Pagar.me e processamento de webhooks."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(billing_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "API de pagamentos e assinaturas da EVIDENS",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
