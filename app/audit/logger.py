"""
Append-only audit trail for STK push payments.

Every push attempt, push outcome and callback gets an entry with:
  - Payment ID (when a PaymentIntent row exists)
  - Checkout request ID (the gateway correlation id, even without a row)
  - Action (what happened)
  - Details (JSON context: result codes, error bodies, masked phone)
  - Timestamp (UTC)

Entries are never modified or deleted.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.payment import AuditLog

logger = logging.getLogger("stk_gateway.audit")


async def log_event(
    session: AsyncSession,
    action: str,
    payment_id: Optional[str] = None,
    checkout_request_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> AuditLog:
    """
    Add an audit entry to the session (committed with the caller's unit of work).

    Args:
        session: Database session.
        action: What happened (e.g. "push_accepted", "callback_applied").
        payment_id: The PaymentIntent this relates to, if any.
        checkout_request_id: Gateway correlation id, if known.
        details: Arbitrary context (serialized to JSON).
    """
    entry = AuditLog(
        payment_id=payment_id,
        checkout_request_id=checkout_request_id,
        action=action,
        details=json.dumps(details, default=str) if details else None,
        timestamp=datetime.now(timezone.utc),
    )
    session.add(entry)
    logger.info(
        "AUDIT | payment=%s checkout=%s action=%s | %s",
        payment_id or "-",
        checkout_request_id or "-",
        action,
        json.dumps(details, default=str)[:200] if details else "",
    )
    return entry


def append_note(existing_notes: Optional[str], message: str) -> str:
    """Append a timestamped line to a payment's running notes."""
    prefix = f"[{datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}] "
    new_note = prefix + message
    if not existing_notes:
        return new_note
    return f"{existing_notes}\n{new_note}"
