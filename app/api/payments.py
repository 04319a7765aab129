"""
STK push payment endpoints.

POST /payments/stk                          Prompt a customer's phone to pay.
GET  /payments/{id}                         Poll a payment's status.
GET  /payments/by-checkout/{checkout_id}    Same, addressed by CheckoutRequestID.
GET  /payments/{id}/trace                   Full audit trail for a payment.
"""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_push_client, get_token_manager
from app.database import get_session
from app.engine.orchestrator import initiate_payment
from app.gateway.errors import ConfigError, GatewayError, MpesaError, NetworkError, ValidationError
from app.gateway.push_client import PushClient
from app.gateway.token_manager import TokenManager
from app.models.payment import AuditLog, PaymentIntent

logger = logging.getLogger("stk_gateway.api")

router = APIRouter(prefix="/payments", tags=["payments"])

NO_STORE = {"Cache-Control": "no-store, no-cache, must-revalidate", "Pragma": "no-cache", "Expires": "0"}

ERROR_STATUS = {
    ValidationError: 400,
    ConfigError: 500,
    NetworkError: 504,
    GatewayError: 502,
}


class StkRequest(BaseModel):
    amount: Any
    msisdn: str
    mode: Optional[str] = None
    account_ref: Optional[str] = Field(None, alias="accountRef")
    description: Optional[str] = None
    request_retries: int = Field(0, ge=0, le=3, alias="requestRetries")

    model_config = {"populate_by_name": True}


class MpesaAck(BaseModel):
    MerchantRequestID: Optional[str]
    CheckoutRequestID: Optional[str]
    ResponseCode: Optional[str]
    ResponseDescription: Optional[str]
    CustomerMessage: Optional[str]


class StkResponse(BaseModel):
    ok: bool
    message: str
    payment_id: str
    mpesa: MpesaAck


class PaymentDetail(BaseModel):
    id: str
    status: str
    amount: int
    currency: str
    mode: Optional[str]
    phone: str
    account_reference: Optional[str]
    merchant_request_id: Optional[str]
    checkout_request_id: Optional[str]
    receipt: Optional[str]
    result_code: Optional[int]
    result_desc: Optional[str]
    paid_at: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]

    model_config = {"from_attributes": True}


class AuditEntry(BaseModel):
    id: int
    action: str
    details: Optional[dict] = None
    timestamp: Optional[str]


class PaymentTrace(BaseModel):
    payment: PaymentDetail
    audit_trail: list[AuditEntry]


def _payment_to_detail(p: PaymentIntent) -> PaymentDetail:
    return PaymentDetail(
        id=p.id,
        status=p.status,
        amount=p.amount,
        currency=p.currency,
        mode=p.mode,
        phone=p.phone,
        account_reference=p.account_reference,
        merchant_request_id=p.merchant_request_id,
        checkout_request_id=p.checkout_request_id,
        receipt=p.receipt,
        result_code=p.result_code,
        result_desc=p.result_desc,
        paid_at=p.paid_at.isoformat() if p.paid_at else None,
        created_at=p.created_at.isoformat() if p.created_at else None,
        updated_at=p.updated_at.isoformat() if p.updated_at else None,
    )


def _error_response(e: MpesaError) -> JSONResponse:
    status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(e, cls)), 500)
    content = {"ok": False, "error": e.message}
    if e.has_code:
        content["code"] = e.code
    return JSONResponse(status_code=status_code, content=content, headers=NO_STORE)


@router.post("/stk", response_model=StkResponse)
async def create_stk_push(
    body: StkRequest,
    response: Response,
    session: AsyncSession = Depends(get_session),
    token_manager: TokenManager = Depends(get_token_manager),
    push_client: PushClient = Depends(get_push_client),
):
    """
    Send an STK push and record the payment as PENDING.

    Not idempotent: each call prompts the customer again. Clients should poll
    GET /payments/{id} rather than re-submitting on a slow response.
    """
    try:
        payment, result = await initiate_payment(
            session,
            token_manager,
            push_client,
            amount=body.amount,
            phone=body.msisdn,
            reference=body.account_ref,
            description=body.description,
            mode=body.mode,
            request_retries=body.request_retries,
        )
    except MpesaError as e:
        logger.warning("STK push rejected: %s", e)
        return _error_response(e)

    response.headers.update(NO_STORE)
    return StkResponse(
        ok=True,
        message=result.customer_message or "STK push sent. Confirm on your phone.",
        payment_id=payment.id,
        mpesa=MpesaAck(
            MerchantRequestID=result.merchant_request_id,
            CheckoutRequestID=result.checkout_request_id,
            ResponseCode=result.response_code,
            ResponseDescription=result.description,
            CustomerMessage=result.customer_message,
        ),
    )


@router.get("/by-checkout/{checkout_request_id}", response_model=PaymentDetail)
async def get_payment_by_checkout(
    checkout_request_id: str,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    """Status lookup by the gateway's CheckoutRequestID."""
    result = await session.execute(
        select(PaymentIntent).where(PaymentIntent.checkout_request_id == checkout_request_id)
    )
    payment = result.scalars().first()
    if not payment:
        raise HTTPException(status_code=404, detail=f"Payment not found: {checkout_request_id}")
    response.headers.update(NO_STORE)
    return _payment_to_detail(payment)


@router.get("/{payment_id}", response_model=PaymentDetail)
async def get_payment(payment_id: str, response: Response, session: AsyncSession = Depends(get_session)):
    """Status polling endpoint used by the checkout UI."""
    payment = await session.get(PaymentIntent, payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail=f"Payment not found: {payment_id}")
    response.headers.update(NO_STORE)
    return _payment_to_detail(payment)


@router.get("/{payment_id}/trace", response_model=PaymentTrace)
async def get_payment_trace(payment_id: str, session: AsyncSession = Depends(get_session)):
    """
    Full audit trail for a payment.

    Includes entries recorded against the checkout id before the payment row
    existed (e.g. a callback that beat the push response).
    """
    payment = await session.get(PaymentIntent, payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail=f"Payment not found: {payment_id}")

    condition = AuditLog.payment_id == payment_id
    if payment.checkout_request_id:
        condition = condition | (AuditLog.checkout_request_id == payment.checkout_request_id)

    result = await session.execute(
        select(AuditLog).where(condition).order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
    )
    logs = result.scalars().all()

    audit_trail = []
    for log in logs:
        details = None
        if log.details:
            try:
                details = json.loads(log.details)
            except (json.JSONDecodeError, TypeError):
                details = {"raw": log.details}

        audit_trail.append(AuditEntry(
            id=log.id,
            action=log.action,
            details=details,
            timestamp=log.timestamp.isoformat() if log.timestamp else None,
        ))

    return PaymentTrace(
        payment=_payment_to_detail(payment),
        audit_trail=audit_trail,
    )
