"""
STK callback reconciliation.

Daraja delivers the push outcome asynchronously:

    {"Body": {"stkCallback": {
        "MerchantRequestID": "...", "CheckoutRequestID": "...",
        "ResultCode": 0, "ResultDesc": "...",
        "CallbackMetadata": {"Item": [{"Name": "Amount", "Value": 10}, ...]}}}}

Deliveries may be duplicated, reordered, or arrive before our own PENDING
row is committed. The merge is keyed by CheckoutRequestID and is monotonic:

    PENDING -> PAID | FAILED,  FAILED -> PAID,  PAID -> (nothing)

so replaying any mix of deliveries converges to the same row. reconcile()
always reports the callback as accepted; failures are logged, never raised,
because a non-200 makes the gateway redeliver.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit.logger import append_note, log_event
from app.gateway.request_builder import GATEWAY_TZ, mask_msisdn
from app.models.enums import PaymentStatus
from app.models.payment import PaymentIntent

logger = logging.getLogger("stk_gateway.reconciler")

ACK = {"accepted": True}
TIMESTAMP_PATTERN = re.compile(r"^\d{14}$")


class MalformedCallback(ValueError):
    """The body is not an stkCallback we can interpret."""


@dataclass(frozen=True)
class CallbackEvent:
    merchant_request_id: Optional[str]
    checkout_request_id: Optional[str]
    result_code: int
    result_desc: Optional[str] = None
    amount: Optional[int] = None
    receipt: Optional[str] = None
    phone: Optional[str] = None
    transaction_date: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    @property
    def status(self) -> PaymentStatus:
        return PaymentStatus.PAID if self.succeeded else PaymentStatus.FAILED


def _metadata_items(callback: dict[str, Any]) -> dict[str, Any]:
    """Index the Name/Value list by name. Items without a Value are left out."""
    meta = callback.get("CallbackMetadata")
    items = meta.get("Item") if isinstance(meta, dict) else None
    out: dict[str, Any] = {}
    if not isinstance(items, list):
        return out
    for item in items:
        if isinstance(item, dict) and item.get("Name") and "Value" in item:
            out[str(item["Name"])] = item["Value"]
    return out


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_gateway_timestamp(value: Any) -> Optional[datetime]:
    """Parse a YYYYMMDDHHMMSS TransactionDate (EAT). Anything else is None."""
    text = str(value) if value is not None else ""
    if not TIMESTAMP_PATTERN.match(text):
        return None
    try:
        return datetime.strptime(text, "%Y%m%d%H%M%S").replace(tzinfo=GATEWAY_TZ)
    except ValueError:
        return None


def parse_callback(raw: Any) -> CallbackEvent:
    """
    Turn a raw callback body into a CallbackEvent.

    Metadata is looked up by name; the order of the Item list is irrelevant.
    Metadata is only read for successful results.

    Raises:
        MalformedCallback: no Body.stkCallback, or no usable ResultCode.
    """
    body = raw.get("Body") if isinstance(raw, dict) else None
    callback = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(callback, dict):
        raise MalformedCallback("missing Body.stkCallback")

    result_code = _as_int(callback.get("ResultCode"))
    if result_code is None:
        raise MalformedCallback(f"unusable ResultCode: {callback.get('ResultCode')!r}")

    event = CallbackEvent(
        merchant_request_id=_as_text(callback.get("MerchantRequestID")),
        checkout_request_id=_as_text(callback.get("CheckoutRequestID")),
        result_code=result_code,
        result_desc=_as_text(callback.get("ResultDesc")),
    )
    if not event.succeeded:
        return event

    meta = _metadata_items(callback)
    return CallbackEvent(
        merchant_request_id=event.merchant_request_id,
        checkout_request_id=event.checkout_request_id,
        result_code=event.result_code,
        result_desc=event.result_desc,
        amount=_as_int(meta.get("Amount")),
        receipt=_as_text(meta.get("MpesaReceiptNumber")),
        phone=_as_text(meta.get("PhoneNumber")),
        transaction_date=parse_gateway_timestamp(meta.get("TransactionDate")),
    )


def next_status(current: Optional[str], incoming: PaymentStatus) -> Optional[PaymentStatus]:
    """
    The status to move to, or None when the update is a no-op.

    PAID is never left. Re-delivering the current result changes nothing.
    """
    if current == PaymentStatus.PAID.value:
        return None
    if current == incoming.value:
        return None
    return incoming


async def _find_payment(session: AsyncSession, event: CallbackEvent) -> Optional[PaymentIntent]:
    lookups = (
        (PaymentIntent.checkout_request_id, event.checkout_request_id),
        (PaymentIntent.merchant_request_id, event.merchant_request_id),
        (PaymentIntent.receipt, event.receipt),
    )
    for column, value in lookups:
        if not value:
            continue
        result = await session.execute(select(PaymentIntent).where(column == value))
        payment = result.scalars().first()
        if payment is not None:
            return payment
    return None


def _event_details(event: CallbackEvent) -> dict[str, Any]:
    return {
        "result_code": event.result_code,
        "result_desc": event.result_desc,
        "merchant_request_id": event.merchant_request_id,
        "receipt": event.receipt,
        "amount": event.amount,
        "phone": mask_msisdn(event.phone),
    }


async def _apply(session: AsyncSession, event: CallbackEvent, raw_json: str) -> None:
    payment = await _find_payment(session, event)

    if payment is None:
        if not (event.checkout_request_id or event.merchant_request_id or event.receipt):
            await log_event(session, "callback_unmatched", details=_event_details(event))
            return

        # Callback beat the checkout flow's own insert; create the row here.
        payment = PaymentIntent(
            checkout_request_id=event.checkout_request_id,
            merchant_request_id=event.merchant_request_id,
            amount=event.amount or 0,
            phone=event.phone or "",
            status=event.status.value,
            receipt=event.receipt if event.succeeded else None,
            result_code=event.result_code,
            result_desc=event.result_desc,
            payer_phone=event.phone,
            paid_at=event.transaction_date if event.succeeded else None,
            raw_callback=raw_json,
            notes=append_note(None, f"Created from callback: {event.status.value}"),
        )
        session.add(payment)
        await session.flush()
        await log_event(
            session,
            "callback_created",
            payment_id=payment.id,
            checkout_request_id=event.checkout_request_id,
            details=_event_details(event),
        )
        return

    # Compare-and-set on the status we read. A concurrent delivery that moved
    # the row first makes the UPDATE match nothing; re-read and decide again.
    # Statuses only move forward, so this settles within a few rounds.
    while True:
        target = next_status(payment.status, event.status)
        if target is None:
            await _log_ignored(session, payment, event)
            return

        previous = payment.status
        result = await session.execute(
            update(PaymentIntent)
            .where(PaymentIntent.id == payment.id, PaymentIntent.status == previous)
            .values(**_transition_values(payment, event, target, raw_json))
            .execution_options(synchronize_session=False)
        )
        await session.refresh(payment)
        if result.rowcount == 1:
            break
        logger.info(
            "Payment %s moved from %s to %s concurrently, re-evaluating",
            payment.id,
            previous,
            payment.status,
        )

    await log_event(
        session,
        "callback_applied",
        payment_id=payment.id,
        checkout_request_id=payment.checkout_request_id,
        details={"from": previous, "to": target.value, **_event_details(event)},
    )


async def _log_ignored(session: AsyncSession, payment: PaymentIntent, event: CallbackEvent) -> None:
    action = "callback_ignored_paid" if payment.status == PaymentStatus.PAID.value else "callback_duplicate"
    await log_event(
        session,
        action,
        payment_id=payment.id,
        checkout_request_id=event.checkout_request_id,
        details={"current_status": payment.status, **_event_details(event)},
    )


def _transition_values(
    payment: PaymentIntent,
    event: CallbackEvent,
    target: PaymentStatus,
    raw_json: str,
) -> dict[str, Any]:
    values: dict[str, Any] = {
        "status": target.value,
        "result_code": event.result_code,
        "result_desc": event.result_desc,
        "raw_callback": raw_json,
        "notes": append_note(payment.notes, f"Callback: {payment.status} -> {target.value}"),
    }
    if not payment.merchant_request_id and event.merchant_request_id:
        values["merchant_request_id"] = event.merchant_request_id
    if not payment.checkout_request_id and event.checkout_request_id:
        values["checkout_request_id"] = event.checkout_request_id

    if event.succeeded:
        values["receipt"] = event.receipt
        values["payer_phone"] = event.phone
        values["paid_at"] = event.transaction_date
        if event.amount is not None:
            if not payment.amount:
                values["amount"] = event.amount
            elif payment.amount != event.amount:
                logger.warning(
                    "Amount mismatch for %s: requested %s, paid %s",
                    payment.checkout_request_id,
                    payment.amount,
                    event.amount,
                )
    return values


async def reconcile(session: AsyncSession, raw: Any) -> dict[str, bool]:
    """
    Apply one callback delivery. Always returns {"accepted": True}.

    A unique-constraint race with a concurrent insert is resolved by rolling
    back and merging once more against the row that won.
    """
    try:
        event = parse_callback(raw)
    except MalformedCallback as e:
        logger.warning("Ignoring malformed STK callback: %s", e)
        try:
            await log_event(session, "callback_malformed", details={"error": str(e)})
            await session.commit()
        except Exception:
            logger.exception("Could not record malformed callback")
            await session.rollback()
        return dict(ACK)

    raw_json = json.dumps(raw, default=str)
    logger.info(
        "STK callback checkout=%s result=%d",
        event.checkout_request_id or "-",
        event.result_code,
    )

    for attempt in (1, 2):
        try:
            await _apply(session, event, raw_json)
            await session.commit()
            break
        except IntegrityError:
            await session.rollback()
            if attempt == 2:
                logger.exception("Callback for %s still conflicts, giving up", event.checkout_request_id)
            else:
                logger.info("Concurrent write for %s, re-merging", event.checkout_request_id)
        except Exception:
            await session.rollback()
            logger.exception("Failed to persist callback for %s", event.checkout_request_id)
            break

    return dict(ACK)
