from app.models.enums import PaymentMethod, PaymentStatus, TransactionMode
from app.models.payment import AuditLog, Base, PaymentIntent

__all__ = [
    "Base",
    "PaymentIntent",
    "AuditLog",
    "PaymentStatus",
    "PaymentMethod",
    "TransactionMode",
]
