"""
STK Push Gateway: M-Pesa Daraja push payments with callback reconciliation.

Prompts a customer's phone to authorize a payment, records the attempt as
PENDING, and reconciles Daraja's asynchronous callback into a monotonic
PAID / FAILED status.

Start the server:
    uvicorn app.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from app.api.callback import router as callback_router
from app.api.health import router as health_router
from app.api.payments import router as payments_router
from app.config import settings
from app.database import dispose_db, init_db
from app.gateway.push_client import PushClient
from app.gateway.token_manager import TokenManager

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger("stk_gateway")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and one shared Daraja client per process."""
    await init_db()
    logger.info(
        "M-Pesa env=%s base=%s shortcode=%s mode=%s callback=%s",
        settings.mpesa_environment,
        settings.mpesa_base_url,
        settings.mpesa_short_code or "-",
        settings.mpesa_mode,
        settings.mpesa_callback_url or "-",
    )
    async with httpx.AsyncClient(timeout=settings.mpesa_timeout_seconds) as client:
        app.state.token_manager = TokenManager(settings, client=client)
        app.state.push_client = PushClient(settings, client=client)
        yield
        app.state.token_manager.close()
    await dispose_db()


app = FastAPI(
    title="STK Push Gateway",
    description=(
        "M-Pesa Daraja STK push initiation with shared OAuth token caching, "
        "caller-controlled retries, and idempotent, monotonic callback reconciliation."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(payments_router, prefix="/api")
app.include_router(callback_router, prefix="/api")
