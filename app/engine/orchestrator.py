"""
Checkout orchestrator: the caller side of an STK push.

  1. Validate and build the payload (no network on bad input or config)
  2. Obtain a bearer token (cached, single-flight, retried)
  3. Push (not retried unless the caller opts in)
  4. Persist a PENDING PaymentIntent keyed by CheckoutRequestID
  5. Audit every step

The callback can land between steps 3 and 4. In that case the reconciler has
already created the row, and step 4 only fills in what the callback could not
know (mode, account reference, merchant id). It never touches the status.
"""

import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit.logger import append_note, log_event
from app.gateway.errors import GatewayError, MpesaError
from app.gateway.push_client import PushClient, PushResult
from app.gateway.request_builder import PushPayload, build_push_payload, mask_msisdn
from app.gateway.token_manager import TokenManager
from app.models.enums import PaymentStatus
from app.models.payment import PaymentIntent

logger = logging.getLogger("stk_gateway.orchestrator")


async def initiate_payment(
    session: AsyncSession,
    token_manager: TokenManager,
    push_client: PushClient,
    amount: Any,
    phone: Optional[str],
    reference: Optional[str] = None,
    description: Optional[str] = None,
    mode: Optional[str] = None,
    request_retries: int = 0,
    timeout: Optional[float] = None,
) -> tuple[PaymentIntent, PushResult]:
    """
    Prompt the customer's phone and record the pending payment.

    Returns:
        The persisted PaymentIntent and the gateway's push response.

    Raises:
        ValidationError, ConfigError: before any network call.
        NetworkError, GatewayError: the push was not accepted. Nothing is
            persisted except an audit entry.
    """
    payload = build_push_payload(
        amount,
        phone,
        reference=reference,
        description=description,
        mode=mode,
        settings=push_client.settings,
    )

    try:
        token = await token_manager.get_access_token()
        result = await push_client.push(payload, token, timeout=timeout, request_retries=request_retries)
    except MpesaError as e:
        if isinstance(e, GatewayError) and e.status == 401:
            # Daraja revoked the token early; the next caller fetches a new one.
            token_manager.invalidate()
        await log_event(session, "push_failed", details={
            "amount": payload.amount,
            "phone": mask_msisdn(payload.phone),
            "mode": payload.mode.value,
            "error": e.to_dict(),
        })
        await session.commit()
        raise

    payment = await _record_pending(session, payload, result)
    logger.info(
        "STK push accepted: payment=%s checkout=%s msisdn=%s",
        payment.id,
        result.checkout_request_id,
        mask_msisdn(payload.phone),
    )
    return payment, result


async def _find_by_checkout(session: AsyncSession, checkout_request_id: str) -> Optional[PaymentIntent]:
    result = await session.execute(
        select(PaymentIntent).where(PaymentIntent.checkout_request_id == checkout_request_id)
    )
    return result.scalars().first()


async def _record_pending(session: AsyncSession, payload: PushPayload, result: PushResult) -> PaymentIntent:
    attempt = 0
    while True:
        attempt += 1
        payment = await _find_by_checkout(session, result.checkout_request_id)
        created = payment is None

        if created:
            payment = PaymentIntent(
                checkout_request_id=result.checkout_request_id,
                merchant_request_id=result.merchant_request_id,
                amount=payload.amount,
                phone=payload.phone,
                mode=payload.mode.value,
                account_reference=payload.account_reference,
                status=PaymentStatus.PENDING.value,
                notes=append_note(None, f"STK push accepted: {result.checkout_request_id}"),
            )
            session.add(payment)
        else:
            # Callback got here first; keep its status and receipt.
            if not payment.merchant_request_id:
                payment.merchant_request_id = result.merchant_request_id
            if not payment.amount:
                payment.amount = payload.amount
            if not payment.phone:
                payment.phone = payload.phone
            payment.mode = payment.mode or payload.mode.value
            payment.account_reference = payment.account_reference or payload.account_reference
            payment.notes = append_note(payment.notes, "STK push response arrived after callback")

        try:
            await session.flush()
            await log_event(
                session,
                "push_accepted" if created else "push_accepted_after_callback",
                payment_id=payment.id,
                checkout_request_id=result.checkout_request_id,
                details={
                    "merchant_request_id": result.merchant_request_id,
                    "amount": payload.amount,
                    "phone": mask_msisdn(payload.phone),
                    "mode": payload.mode.value,
                    "status": payment.status,
                    "customer_message": result.customer_message,
                },
            )
            await session.commit()
            return payment
        except IntegrityError:
            # A callback inserted the same checkout id concurrently.
            await session.rollback()
            if attempt >= 2:
                raise
            logger.info("Checkout %s inserted concurrently, merging", result.checkout_request_id)
