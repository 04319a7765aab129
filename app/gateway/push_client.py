"""
STK push (Lipa na M-Pesa Online) client.

    POST /mpesa/stkpush/v1/processrequest   (Bearer auth)
    -> {"MerchantRequestID", "CheckoutRequestID", "ResponseCode": "0",
        "ResponseDescription", "CustomerMessage"}

The push is not idempotent: if Daraja accepted it but the response was lost,
sending it again prompts the customer twice. Retries are therefore off unless
the caller asks for them, and even then only network-class failures qualify.
A non-success ResponseCode is Daraja's final answer and is never retried.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from app.config import Settings, settings as default_settings
from app.engine.retry import push_policy, with_retry
from app.gateway.errors import GatewayError, NetworkError
from app.gateway.request_builder import PushPayload, mask_msisdn
from app.gateway.token_manager import parse_json_safe

logger = logging.getLogger("stk_gateway.push")

PUSH_PATH = "/mpesa/stkpush/v1/processrequest"


@dataclass(frozen=True)
class PushResult:
    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    description: str
    customer_message: str


def _is_accepted(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    code = data.get("ResponseCode")
    return code == "0" or (isinstance(code, int) and not isinstance(code, bool) and code == 0)


def _failure_message(data: Any) -> str:
    if isinstance(data, dict):
        for key in ("errorMessage", "ResponseDescription", "CustomerMessage", "raw"):
            if data.get(key):
                return str(data[key])
    return "Unknown error"


def _failure_code(data: Any, status_code: int) -> Any:
    if isinstance(data, dict):
        for key in ("errorCode", "ResponseCode"):
            value = data.get(key)
            if isinstance(value, (str, int)) and not isinstance(value, bool):
                return value
    return status_code


class PushClient:
    """Sends validated STK push payloads to Daraja."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self._settings = settings or default_settings
        self._client = client
        self._timeout = timeout if timeout is not None else self._settings.mpesa_timeout_seconds

    @property
    def settings(self) -> Settings:
        return self._settings

    async def push(
        self,
        payload: PushPayload,
        access_token: str,
        timeout: Optional[float] = None,
        request_retries: int = 0,
    ) -> PushResult:
        """
        Submit the push. One HTTP POST per attempt.

        Args:
            payload: Output of build_push_payload.
            access_token: Bearer token from TokenManager.
            timeout: Per-attempt timeout in seconds (default from settings).
            request_retries: Extra attempts on network errors only. Default 0.

        Raises:
            NetworkError: transport failure or timeout on the last attempt.
            GatewayError: Daraja rejected the push (carries code/status/body).
        """
        per_attempt = timeout if timeout is not None else self._timeout
        policy = push_policy(
            request_retries,
            self._settings.mpesa_backoff_base_seconds,
            self._settings.mpesa_backoff_cap_seconds,
        )

        logger.info(
            "STK push -> type=%s shortcode=%s amount=%d msisdn=%s retries=%d",
            payload.transaction_type,
            payload.short_code,
            payload.amount,
            mask_msisdn(payload.phone),
            policy.max_retries,
        )
        return await with_retry(policy, self._post_once, payload, access_token, per_attempt)

    async def _post_once(self, payload: PushPayload, access_token: str, timeout: float) -> PushResult:
        url = f"{self._settings.mpesa_base_url}{PUSH_PATH}"
        headers = {"Authorization": f"Bearer {access_token}"}
        body = payload.to_json()

        try:
            if self._client is not None:
                response = await asyncio.wait_for(
                    self._client.post(url, json=body, headers=headers, timeout=timeout),
                    timeout=timeout,
                )
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await asyncio.wait_for(
                        client.post(url, json=body, headers=headers),
                        timeout=timeout,
                    )
        except asyncio.TimeoutError:
            raise NetworkError(f"STK push timed out after {timeout:.0f}s") from None
        except httpx.TransportError as e:
            raise NetworkError(f"Network error: {e}", data=repr(e)) from e

        data = parse_json_safe(response) or {}

        if not _is_accepted(data):
            raise GatewayError(
                f"STK push failed: {_failure_message(data)}",
                code=_failure_code(data, response.status_code),
                status=response.status_code,
                data=data,
            )

        merchant_id = data.get("MerchantRequestID")
        checkout_id = data.get("CheckoutRequestID")
        if not merchant_id or not checkout_id:
            raise GatewayError(
                "STK push failed: response is missing correlation ids",
                status=response.status_code,
                data=data,
            )

        return PushResult(
            merchant_request_id=str(merchant_id),
            checkout_request_id=str(checkout_id),
            response_code=str(data.get("ResponseCode")),
            description=str(data.get("ResponseDescription") or ""),
            customer_message=str(data.get("CustomerMessage") or ""),
        )
