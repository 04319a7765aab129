"""SQLAlchemy models for STK push payments."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, relationship

from app.models.enums import PaymentMethod, PaymentStatus


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class PaymentIntent(Base):
    """
    One STK push attempt and its eventual outcome.

    Identified by the gateway's correlation pair (merchant_request_id,
    checkout_request_id). checkout_request_id is the stable key used to match
    callbacks; both are unique so a redelivered callback can never produce a
    second row.

    Status only moves forward: PENDING -> PAID | FAILED, FAILED -> PAID.
    A PAID row is never downgraded and its receipt is never overwritten.
    """

    __tablename__ = "payments"

    id = Column(String(12), primary_key=True, default=_new_id)
    merchant_request_id = Column(String(100), nullable=True, unique=True)
    checkout_request_id = Column(String(100), nullable=True, unique=True)

    amount = Column(Integer, nullable=False)  # whole KES
    currency = Column(String(3), nullable=False, default="KES")
    method = Column(String(20), nullable=False, default=PaymentMethod.MPESA.value)
    mode = Column(String(10), nullable=True)  # paybill | till
    phone = Column(String(20), nullable=False, default="")  # normalized MSISDN
    account_reference = Column(String(12), nullable=True)

    status = Column(String(10), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    receipt = Column(String(50), nullable=True, unique=True)  # only when PAID
    result_code = Column(Integer, nullable=True)
    result_desc = Column(String(255), nullable=True)
    payer_phone = Column(String(20), nullable=True)  # as reported by the callback
    paid_at = Column(DateTime(timezone=True), nullable=True)
    raw_callback = Column(Text, nullable=True)  # last callback body, JSON
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    audit_logs = relationship("AuditLog", back_populates="payment", lazy="raise")


class AuditLog(Base):
    """
    Immutable audit trail entry.

    Push attempts, push failures, callbacks applied and callbacks ignored all
    get an entry. Callbacks that match no payment are still recorded, keyed by
    whatever correlation id they carried.
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String(12), ForeignKey("payments.id"), nullable=True, index=True)
    checkout_request_id = Column(String(100), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow)

    payment = relationship("PaymentIntent", back_populates="audit_logs")
