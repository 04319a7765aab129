"""
Daraja OAuth token lifecycle.

    GET /oauth/v1/generate?grant_type=client_credentials   (HTTP Basic auth)
    -> {"access_token": "...", "expires_in": "3599"}

One TokenManager per process (or per test) owns the cached lease. Concurrent
callers that find the cache empty or expired share a single refresh; only that
refresh talks to the network. Transport failures and timeouts are retried
with capped exponential backoff; a gateway answer is final. The STK push
itself is not retried at all unless the caller opts in.
"""

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from app.config import Settings, settings as default_settings
from app.engine.retry import RetryPolicy, token_policy, with_retry
from app.gateway.errors import ConfigError, GatewayError, NetworkError
from app.gateway.singleflight import SingleFlight

logger = logging.getLogger("stk_gateway.token")

TOKEN_PATH = "/oauth/v1/generate"
DEFAULT_EXPIRES_IN = 3599
SKEW_MARGIN = 30.0


@dataclass(frozen=True)
class TokenLease:
    """A bearer token and the monotonic instant it expires at."""

    token: str
    expires_at: float

    def is_valid(self, now: float, skew: float = SKEW_MARGIN) -> bool:
        return now + skew < self.expires_at


def basic_auth_header(key: str, secret: str) -> str:
    return "Basic " + base64.b64encode(f"{key}:{secret}".encode("utf-8")).decode("ascii")


def parse_json_safe(response: httpx.Response) -> Any:
    """JSON body if there is one, {"raw": text} otherwise, None when empty."""
    try:
        return response.json()
    except ValueError:
        raw = response.text
        return {"raw": raw} if raw else None


class TokenManager:
    """Acquires, caches and single-flights Daraja bearer tokens."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        skew_margin: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings or default_settings
        self._client = client
        self._policy = retry_policy or token_policy(
            self._settings.mpesa_token_retries,
            self._settings.mpesa_backoff_base_seconds,
            self._settings.mpesa_backoff_cap_seconds,
        )
        self._timeout = timeout if timeout is not None else self._settings.mpesa_timeout_seconds
        self._skew = skew_margin if skew_margin is not None else self._settings.mpesa_token_skew_seconds
        self._clock = clock
        self._lease: Optional[TokenLease] = None
        self._flight: SingleFlight[TokenLease] = SingleFlight()

    @property
    def lease(self) -> Optional[TokenLease]:
        return self._lease

    def invalidate(self) -> None:
        """Forget the cached lease (e.g. after the gateway rejected it with 401)."""
        self._lease = None

    def close(self) -> None:
        """Cancel an outstanding refresh. Its waiters see CancelledError."""
        self._flight.cancel()

    async def get_access_token(self, force_refresh: bool = False) -> str:
        """
        Return a usable bearer token.

        A valid cached lease is returned without any network call unless
        ``force_refresh`` is set. Otherwise the caller joins the in-flight
        refresh, or starts one.

        Raises:
            ConfigError: consumer key/secret or base URL missing.
            NetworkError: every attempt timed out or failed at the transport.
            GatewayError: non-2xx response or no access_token in the body.
        """
        lease = self._lease
        if not force_refresh and lease is not None and lease.is_valid(self._clock(), self._skew):
            return lease.token

        if force_refresh and not self._flight.in_flight:
            logger.info("Forced token refresh")

        lease = await self._flight.do(self._refresh)
        return lease.token

    async def _refresh(self) -> TokenLease:
        cfg = self._settings
        if not cfg.mpesa_consumer_key or not cfg.mpesa_consumer_secret:
            raise ConfigError("Missing mpesa_consumer_key / mpesa_consumer_secret")
        if not cfg.mpesa_base_url:
            raise ConfigError("Missing mpesa_base_url")

        lease = await with_retry(self._policy, self._fetch_once)
        self._lease = lease
        logger.info("Acquired access token (expires in %.0fs)", lease.expires_at - self._clock())
        return lease

    async def _fetch_once(self) -> TokenLease:
        cfg = self._settings
        url = f"{cfg.mpesa_base_url}{TOKEN_PATH}"
        headers = {"Authorization": basic_auth_header(cfg.mpesa_consumer_key, cfg.mpesa_consumer_secret)}
        params = {"grant_type": "client_credentials"}

        try:
            if self._client is not None:
                response = await asyncio.wait_for(
                    self._client.get(url, params=params, headers=headers, timeout=self._timeout),
                    timeout=self._timeout,
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await asyncio.wait_for(
                        client.get(url, params=params, headers=headers),
                        timeout=self._timeout,
                    )
        except asyncio.TimeoutError:
            raise NetworkError(f"M-Pesa token request timed out after {self._timeout:.0f}s") from None
        except httpx.TransportError as e:
            raise NetworkError(f"M-Pesa token request failed: {e}", data=repr(e)) from e

        body = parse_json_safe(response)
        if not response.is_success:
            if body is not None:
                raise GatewayError(
                    f"M-Pesa token error {response.status_code}",
                    status=response.status_code,
                    data=body,
                )
            raise GatewayError(f"M-Pesa token error {response.status_code}", status=response.status_code)

        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            if body is not None:
                raise GatewayError("No access_token in Daraja response", status=response.status_code, data=body)
            raise GatewayError("No access_token in Daraja response", status=response.status_code)

        try:
            expires_in = float(body.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN

        return TokenLease(token=str(token), expires_at=self._clock() + expires_in)
