"""Outbox row for courier shipment creation.

Written in the same transaction that confirms the order, then processed
after commit (inline and by the retrying worker). One row per order.
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, func
from .base import Base


class ShipmentTaskStatus:
    PENDING = "PENDING"
    DISPATCHED = "DISPATCHED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ShipmentTask(Base):
    __tablename__ = "shipment_task"

    id = Column(String(36), primary_key=True)
    order_id = Column(String(36), ForeignKey("order.id"), nullable=False, unique=True)
    status = Column(String(32), nullable=False, default=ShipmentTaskStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    error_kind = Column(String(32), nullable=True)
    waybill = Column(String(64), nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)
    dispatched_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
