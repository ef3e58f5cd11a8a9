"""Payment attempts against the gateway."""

from sqlalchemy import Column, DateTime, ForeignKey, JSON, Numeric, String, Text, func
from .base import Base


class PaymentStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

    TRANSITIONS = {
        PENDING: {COMPLETED, FAILED},
        COMPLETED: {REFUNDED},
        FAILED: set(),
        REFUNDED: set(),
    }

    @classmethod
    def can_transition(cls, current: str, target: str) -> bool:
        return target in cls.TRANSITIONS.get(current, set())


class Payment(Base):
    __tablename__ = "payment"

    id = Column(String(36), primary_key=True)
    order_id = Column(String(36), ForeignKey("order.id"), nullable=False, index=True)
    payment_method = Column(String(32), nullable=False)
    gateway = Column(String(32), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(String(32), nullable=False, default=PaymentStatus.PENDING)
    # gateway order id, e.g. order_Nx2...
    transaction_id = Column(String(128), nullable=True, index=True)
    gateway_payment_id = Column(String(128), nullable=True)
    gateway_response = Column(JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
