"""
FastAPI application factory and entry point.

This module creates and configures the FastAPI application:
  1. Lifespan manager: startup/shutdown (DB tables, provider clients)
  2. CORS middleware
  3. Exception handlers: map domain errors to HTTP responses
  4. Router registration

Running locally:
    uvicorn app.main:app --reload

The API only records work; jobs are executed by worker processes:
    python -m app.workers.main
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import engine, Base
from app.exceptions import register_exception_handlers
from app.logging_config import configure_logging
from app.providers import close_providers
from app.routers import admin, auth, payments, webhooks

configure_logging(settings)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      Creates all database tables if they don't exist. In production the
      schema would be managed with migrations instead.

    Shutdown:
      Closes provider HTTP clients and disposes of the database engine.
    """
    # --- Startup ---
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("%s %s started (%s)", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT)
    yield
    # --- Shutdown ---
    await close_providers()
    await engine.dispose()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Payment intents, provider webhooks, refunds and a durable job queue",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

register_exception_handlers(app)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(auth.router, prefix="/auth", tags=["Auth"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health_check():
    """Liveness probe for load balancers and orchestrators."""
    return {"status": "ok", "version": settings.APP_VERSION}
