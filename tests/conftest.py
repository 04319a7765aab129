"""Shared test fixtures."""

import asyncio
import json
from typing import Any, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import Settings
from app.models.payment import Base

BASE_URL = "https://daraja.test"


@pytest.fixture
def settings() -> Settings:
    """Fully configured Daraja settings with zero backoff so retries are instant."""
    return Settings(
        _env_file=None,
        mpesa_environment="sandbox",
        mpesa_base_url=BASE_URL,
        mpesa_short_code="174379",
        mpesa_passkey="test-passkey",
        mpesa_consumer_key="consumer-key",
        mpesa_consumer_secret="consumer-secret",
        mpesa_callback_url="https://shop.example.com/api/mpesa/callback",
        mpesa_mode="paybill",
        mpesa_timeout_seconds=2.0,
        mpesa_backoff_base_seconds=0.0,
        mpesa_backoff_cap_seconds=0.0,
    )


class FakeDaraja:
    """
    In-process stand-in for the Daraja API, served through httpx.MockTransport.

    Queue outcomes with ``token_outcomes`` / ``push_outcomes``; each entry is a
    dict (JSON 200), an httpx.Response, or an exception to raise. When a queue
    is empty the happy-path response is returned.
    """

    def __init__(self, token_delay: float = 0.0):
        self.token_delay = token_delay
        self.token_calls = 0
        self.push_calls = 0
        self.token_outcomes: list[Any] = []
        self.push_outcomes: list[Any] = []
        self.push_bodies: list[dict] = []
        self.push_auth: list[Optional[str]] = []
        self.token_auth: list[Optional[str]] = []
        self._counter = 0

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))

    @staticmethod
    def _resolve(outcome: Any, request: httpx.Request) -> httpx.Response:
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, httpx.Response):
            return outcome
        return httpx.Response(200, json=outcome)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/v1/generate":
            self.token_calls += 1
            self.token_auth.append(request.headers.get("Authorization"))
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            if self.token_outcomes:
                return self._resolve(self.token_outcomes.pop(0), request)
            return httpx.Response(200, json={"access_token": f"token-{self.token_calls}", "expires_in": "3599"})

        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            self.push_calls += 1
            self.push_auth.append(request.headers.get("Authorization"))
            self.push_bodies.append(json.loads(request.content))
            if self.push_outcomes:
                return self._resolve(self.push_outcomes.pop(0), request)
            self._counter += 1
            return httpx.Response(200, json={
                "MerchantRequestID": f"29115-{self._counter}",
                "CheckoutRequestID": f"ws_CO_{self._counter:04d}",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            })

        return httpx.Response(404, json={"errorMessage": "not found"})


def stk_callback(
    checkout_request_id: str,
    merchant_request_id: str = "29115-1",
    result_code: int = 0,
    receipt: str = "ABC123",
    phone: int = 254700000001,
    amount: int = 10,
    transaction_date: int = 20250101123030,
) -> dict:
    """A Daraja callback body. Metadata only accompanies successful results."""
    callback: dict[str, Any] = {
        "MerchantRequestID": merchant_request_id,
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0
        else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": transaction_date},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def daraja() -> FakeDaraja:
    return FakeDaraja()


@pytest_asyncio.fixture
async def http_client(daraja: FakeDaraja):
    async with daraja.client() as client:
        yield client


@pytest_asyncio.fixture
async def db_session():
    """Create a fresh in-memory database for each test."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest.fixture
def make_callback():
    return stk_callback
