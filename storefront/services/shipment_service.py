"""Shipment outbox processing, tracking and reconciliation.

A ShipmentTask row is written in the transaction that confirms an order.
``dispatch`` claims the row with a short lease, calls the courier outside
any DB transaction and records the outcome, so a task is never in flight
twice and a confirmed order is never left without a durable record of its
shipment state.
"""
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import or_

from ..models.order import Order, OrderStatus
from ..models.product import Product
from ..models.shipment_task import ShipmentTask, ShipmentTaskStatus
from ..utils.dto import Address, to_shipment_task_dto
from .delhivery_courier import DelhiveryCourier, ShipmentRequest, ShipmentResult
from .errors import StorefrontError
from .logging import log_event


DEFAULT_ITEM_WEIGHT_GRAMS = 500
PRODUCTS_DESC_MAX_LENGTH = 200


class ShipmentService:
    def __init__(
        self,
        session_factory,
        courier: DelhiveryCourier,
        *,
        max_attempts: int = 5,
        retry_backoff_seconds: float = 60.0,
        lease_seconds: float = 120.0,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._courier = courier
        self.max_attempts = max(1, int(max_attempts))
        self.retry_backoff_seconds = retry_backoff_seconds
        self.lease_seconds = lease_seconds
        self._clock = clock

    def _build_request(self, session, order: Order) -> ShipmentRequest:
        address = Address(**order.shipping_address)
        product_ids = [it.product_id for it in order.items]
        weights = dict(
            session.query(Product.id, Product.weight_grams).filter(Product.id.in_(product_ids)).all()
        )
        weight = sum((weights.get(it.product_id) or DEFAULT_ITEM_WEIGHT_GRAMS) * it.quantity for it in order.items)
        desc = ", ".join(f"{it.product_name} x {it.quantity}" for it in order.items)
        return ShipmentRequest(
            name=address.name,
            add=address.street,
            city=address.city,
            state=address.state,
            country=address.country,
            pin=address.pin,
            phone=address.phone,
            email=address.email or order.customer_email,
            order=order.order_number,
            products_desc=desc[:PRODUCTS_DESC_MAX_LENGTH],
            weight=str(weight),
            payment_mode="Pre-paid",
        )

    def _claim(self, order_id: str):
        """Take the lease on a due PENDING task; returns (task_id, request) or a failure dict."""
        now = self._clock()
        with self._session_factory() as session:
            task = session.query(ShipmentTask).filter(ShipmentTask.order_id == order_id).first()
            if not task:
                return None, {"success": False, "error": "No shipment task for order", "error_kind": "not_found"}
            if task.status == ShipmentTaskStatus.DISPATCHED:
                return None, {"success": True, "waybill": task.waybill, "already_dispatched": True}
            if task.status != ShipmentTaskStatus.PENDING:
                return None, {"success": False, "error": f"Shipment task is {task.status}", "error_kind": task.error_kind}
            order = session.query(Order).filter(Order.id == order_id).first()
            if order is None or order.status != OrderStatus.CONFIRMED:
                return None, {"success": False, "error": "Order is not confirmed", "error_kind": "rejected"}
            claimed = (
                session.query(ShipmentTask)
                .filter(
                    ShipmentTask.id == task.id,
                    ShipmentTask.status == ShipmentTaskStatus.PENDING,
                    or_(ShipmentTask.next_attempt_at.is_(None), ShipmentTask.next_attempt_at <= now),
                )
                .update(
                    {
                        ShipmentTask.attempts: ShipmentTask.attempts + 1,
                        ShipmentTask.next_attempt_at: now + timedelta(seconds=self.lease_seconds),
                    },
                    synchronize_session=False,
                )
            )
            if not claimed:
                return None, {"success": False, "error": "Shipment dispatch not due yet", "error_kind": "busy"}
            return task.id, self._build_request(session, order)

    def _record(self, task_id: str, result: ShipmentResult) -> Dict:
        now = self._clock()
        with self._session_factory() as session:
            task = session.query(ShipmentTask).filter(ShipmentTask.id == task_id).one()
            if result.success:
                task.status = ShipmentTaskStatus.DISPATCHED
                task.waybill = result.waybill
                task.dispatched_at = now
                task.next_attempt_at = None
                task.last_error = None
                task.error_kind = None
                log_event("info", "shipment.dispatched", order_id=task.order_id, waybill=result.waybill, attempts=task.attempts)
                return {"success": True, "waybill": result.waybill}

            task.last_error = result.error
            task.error_kind = result.error_kind
            retryable = result.error_kind == "transient" and task.attempts < self.max_attempts
            if retryable:
                delay = self.retry_backoff_seconds * (2 ** (task.attempts - 1))
                task.next_attempt_at = now + timedelta(seconds=delay)
                log_event(
                    "warning", "shipment.dispatch_retry_scheduled",
                    order_id=task.order_id, attempts=task.attempts, error=result.error, retry_in_seconds=delay,
                )
            else:
                task.status = ShipmentTaskStatus.FAILED
                task.next_attempt_at = None
                log_event(
                    "error", "shipment.dispatch_failed",
                    order_id=task.order_id, attempts=task.attempts, error=result.error, error_kind=result.error_kind,
                )
            return {
                "success": False,
                "error": result.error,
                "error_kind": result.error_kind,
                "will_retry": retryable,
            }

    def dispatch(self, order_id: str) -> Dict:
        """Create the courier shipment for a confirmed order at most once."""
        task_id, claim = self._claim(order_id)
        if task_id is None:
            return claim
        try:
            result = self._courier.create_shipment(claim)
        except StorefrontError as exc:
            result = ShipmentResult(success=False, error=exc.message, error_kind=exc.kind)
        return self._record(task_id, result)

    def process_pending(self, limit: int = 50) -> Dict:
        """Retrying worker pass over due PENDING tasks."""
        now = self._clock()
        with self._session_factory() as session:
            order_ids = [
                row[0]
                for row in session.query(ShipmentTask.order_id)
                .filter(
                    ShipmentTask.status == ShipmentTaskStatus.PENDING,
                    or_(ShipmentTask.next_attempt_at.is_(None), ShipmentTask.next_attempt_at <= now),
                )
                .order_by(ShipmentTask.created_at)
                .limit(limit)
                .all()
            ]
        summary = {"processed": 0, "dispatched": 0, "retrying": 0, "failed": 0}
        for order_id in order_ids:
            outcome = self.dispatch(order_id)
            summary["processed"] += 1
            if outcome.get("success"):
                summary["dispatched"] += 1
            elif outcome.get("will_retry"):
                summary["retrying"] += 1
            elif outcome.get("error_kind") != "busy":
                summary["failed"] += 1
        log_event("info", "shipment.worker_pass", **summary)
        return summary

    def requeue(self, order_id: str) -> Dict:
        """Put a FAILED task back in the queue, e.g. after fixing courier configuration."""
        with self._session_factory() as session:
            task = session.query(ShipmentTask).filter(ShipmentTask.order_id == order_id).first()
            if not task:
                return {"success": False, "error": "No shipment task for order"}
            if task.status != ShipmentTaskStatus.FAILED:
                return {"success": False, "error": f"Shipment task is {task.status}"}
            task.status = ShipmentTaskStatus.PENDING
            task.attempts = 0
            task.next_attempt_at = None
            log_event("info", "shipment.requeued", order_id=order_id)
            return {"success": True, "shipment": to_shipment_task_dto(task)}

    def track(self, order_id: str) -> Dict:
        with self._session_factory() as session:
            task = session.query(ShipmentTask).filter(ShipmentTask.order_id == order_id).first()
            if not task or not task.waybill:
                return {
                    "success": False,
                    "error": "Shipment not created yet",
                    "shipment_status": task.status if task else None,
                }
            waybill = task.waybill
        try:
            record = self._courier.track_shipment(waybill)
        except StorefrontError as exc:
            log_event("warning", "shipment.tracking_failed", order_id=order_id, waybill=waybill, error=exc.message)
            return {"success": False, "error": exc.message, "error_kind": exc.kind}
        if record is None:
            return {"success": False, "error": "No tracking data found", "error_kind": "not_found"}
        return {"success": True, "tracking": record.to_dict()}

    def cancel(self, order_id: str, reason: str = "Order cancelled by customer") -> Dict:
        with self._session_factory() as session:
            task = session.query(ShipmentTask).filter(ShipmentTask.order_id == order_id).first()
            if not task:
                return {"success": False, "error": "No shipment task for order"}
            if task.status in (ShipmentTaskStatus.PENDING, ShipmentTaskStatus.FAILED):
                task.status = ShipmentTaskStatus.CANCELLED
                task.next_attempt_at = None
                log_event("info", "shipment.cancelled", order_id=order_id, waybill=None)
                return {"success": True, "message": "Shipment cancelled before dispatch"}
            if task.status != ShipmentTaskStatus.DISPATCHED:
                return {"success": False, "error": f"Shipment task is {task.status}"}
            waybill = task.waybill

        result = self._courier.cancel_shipment(waybill, reason=reason)
        if not result.success:
            log_event("error", "shipment.cancel_failed", order_id=order_id, waybill=waybill, error=result.error)
            return {"success": False, "error": result.error, "error_kind": result.error_kind}
        with self._session_factory() as session:
            task = session.query(ShipmentTask).filter(ShipmentTask.order_id == order_id).one()
            task.status = ShipmentTaskStatus.CANCELLED
        log_event("info", "shipment.cancelled", order_id=order_id, waybill=waybill)
        return {"success": True, "message": result.message}

    def reconciliation_report(self) -> List[Dict]:
        """Orders confirmed without a dispatched shipment."""
        with self._session_factory() as session:
            rows = (
                session.query(Order, ShipmentTask)
                .outerjoin(ShipmentTask, ShipmentTask.order_id == Order.id)
                .filter(Order.status == OrderStatus.CONFIRMED)
                .filter(or_(ShipmentTask.id.is_(None), ShipmentTask.status != ShipmentTaskStatus.DISPATCHED))
                .order_by(Order.updated_at)
                .all()
            )
            report = []
            for order, task in rows:
                report.append(
                    {
                        "order_id": order.id,
                        "order_number": order.order_number,
                        "confirmed_at": order.updated_at.isoformat() if order.updated_at else None,
                        "shipment": to_shipment_task_dto(task) if task else None,
                    }
                )
            return report

    def get_task(self, order_id: str) -> Optional[Dict]:
        with self._session_factory() as session:
            task = session.query(ShipmentTask).filter(ShipmentTask.order_id == order_id).first()
            return to_shipment_task_dto(task) if task else None
