"""
STK push payload construction.

Everything here is pure: no network, no database. Input problems surface as
ValidationError and missing configuration as ConfigError, both before the
token endpoint is ever contacted.
"""

import base64
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from app.config import Settings, settings as default_settings
from app.gateway.errors import ConfigError, ValidationError
from app.models.enums import TransactionMode

COUNTRY_CODE = "254"
MSISDN_PATTERN = re.compile(r"^254(7|1)\d{8}$")
LOCAL_TRUNK_PATTERN = re.compile(r"^0[71]\d{8}$")
SUBSCRIBER_PATTERN = re.compile(r"^[71]\d{8}$")

MAX_REFERENCE_LENGTH = 12
MAX_DESCRIPTION_LENGTH = 32

# Daraja expects timestamps in Kenyan local time (EAT, no DST).
GATEWAY_TZ = timezone(timedelta(hours=3), "EAT")

TRANSACTION_TYPES = {
    TransactionMode.PAYBILL: "CustomerPayBillOnline",
    TransactionMode.TILL: "CustomerBuyGoodsOnline",
}


@dataclass(frozen=True)
class PushPayload:
    """A validated STK push request, ready to be posted."""

    short_code: str
    password: str
    timestamp: str
    transaction_type: str
    amount: int
    phone: str
    callback_url: str
    account_reference: str
    description: str
    mode: TransactionMode

    def to_json(self) -> dict[str, Any]:
        return {
            "BusinessShortCode": int(self.short_code),
            "Password": self.password,
            "Timestamp": self.timestamp,
            "TransactionType": self.transaction_type,
            "Amount": self.amount,
            "PartyA": int(self.phone),
            "PartyB": int(self.short_code),
            "PhoneNumber": int(self.phone),
            "CallBackURL": self.callback_url,
            "AccountReference": self.account_reference,
            "TransactionDesc": self.description,
        }


def normalize_msisdn(raw: Optional[str]) -> str:
    """
    Normalize a Kenyan phone number towards 2547XXXXXXXX / 2541XXXXXXXX.

    The result is not guaranteed to be valid; check it with ``is_valid_msisdn``.
    """
    digits = re.sub(r"\D+", "", (raw or "").strip())
    if digits.startswith(COUNTRY_CODE):
        return digits[:12]
    if LOCAL_TRUNK_PATTERN.match(digits):
        return COUNTRY_CODE + digits[1:]
    if SUBSCRIBER_PATTERN.match(digits):
        return COUNTRY_CODE + digits
    return digits[:12]


def is_valid_msisdn(msisdn: str) -> bool:
    return bool(MSISDN_PATTERN.match(msisdn))


def mask_msisdn(msisdn: Optional[str]) -> str:
    """Hide everything but the country code and the last three digits."""
    if not msisdn:
        return ""
    if len(msisdn) <= 6:
        return "*" * len(msisdn)
    return msisdn[:3] + "*" * (len(msisdn) - 6) + msisdn[-3:]


def gateway_timestamp(now: Optional[datetime] = None) -> str:
    """YYYYMMDDHHMMSS in gateway local time."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(GATEWAY_TZ)
    return now.strftime("%Y%m%d%H%M%S")


def stk_password(short_code: str, passkey: str, timestamp: str) -> str:
    """base64(short_code + passkey + timestamp); protocol conformance, not secrecy."""
    return base64.b64encode(f"{short_code}{passkey}{timestamp}".encode("utf-8")).decode("ascii")


def validate_amount(amount: Any) -> int:
    if isinstance(amount, bool):
        raise ValidationError("invalid amount", data={"amount": amount})
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise ValidationError("invalid amount", data={"amount": amount}) from None
    if not math.isfinite(value) or value < 1:
        raise ValidationError("invalid amount", data={"amount": amount})
    return int(round(value))


def resolve_mode(mode: Optional[str], default: str) -> TransactionMode:
    chosen = (mode or default or TransactionMode.PAYBILL.value).strip().lower()
    try:
        return TransactionMode(chosen)
    except ValueError:
        raise ValidationError("invalid mode", data={"mode": mode}) from None


def _clip(value: Optional[str], limit: int, placeholder: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        text = placeholder
    return text[:limit]


def build_push_payload(
    amount: Any,
    phone: Optional[str],
    reference: Optional[str] = None,
    description: Optional[str] = None,
    mode: Optional[str] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> PushPayload:
    """
    Validate caller input and derive every protocol field for an STK push.

    Args:
        amount: Whole KES, at least 1. Fractions are rounded.
        phone: Any common Kenyan format (07.., 01.., 7.., 254.., +254..).
        reference: Account reference, clipped to 12 characters.
        description: Transaction description, clipped to 32 characters.
        mode: "paybill" or "till"; falls back to the configured default.

    Raises:
        ValidationError: invalid amount, phone or mode.
        ConfigError: short code, passkey or callback URL not configured.
    """
    cfg = settings or default_settings

    value = validate_amount(amount)

    msisdn = normalize_msisdn(phone)
    if not is_valid_msisdn(msisdn):
        raise ValidationError("invalid phone", data={"phone": mask_msisdn(msisdn)})

    txn_mode = resolve_mode(mode, cfg.mpesa_mode)

    missing = [
        name
        for name, current in (
            ("mpesa_short_code", cfg.mpesa_short_code),
            ("mpesa_passkey", cfg.mpesa_passkey),
            ("mpesa_callback_url", cfg.mpesa_callback_url),
        )
        if not current
    ]
    if missing:
        raise ConfigError(f"M-Pesa config missing ({', '.join(missing)})")

    short_code = str(cfg.mpesa_short_code)
    timestamp = gateway_timestamp(now)

    return PushPayload(
        short_code=short_code,
        password=stk_password(short_code, cfg.mpesa_passkey, timestamp),
        timestamp=timestamp,
        transaction_type=TRANSACTION_TYPES[txn_mode],
        amount=value,
        phone=msisdn,
        callback_url=cfg.mpesa_callback_url,
        account_reference=_clip(reference, MAX_REFERENCE_LENGTH, cfg.mpesa_account_reference),
        description=_clip(description, MAX_DESCRIPTION_LENGTH, cfg.mpesa_description),
        mode=txn_mode,
    )
