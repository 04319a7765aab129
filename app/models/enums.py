"""Enumerations for the STK push domain model."""

from enum import Enum


class PaymentStatus(str, Enum):
    """Lifecycle states for a payment intent."""

    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class TransactionMode(str, Enum):
    """Daraja transaction variants (TransactionType on the wire)."""

    PAYBILL = "paybill"
    TILL = "till"


class PaymentMethod(str, Enum):
    MPESA = "MPESA"
