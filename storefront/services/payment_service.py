"""
Payment orchestration: gateway order creation, checkout verification,
webhook confirmation and refunds.

Confirming a payment is one transaction:

    Payment PENDING -> COMPLETED  (conditional, so a replay cannot claim twice)
    Order   PENDING -> CONFIRMED
    stock decrement for every item (conditional, all or nothing)
    ShipmentTask outbox row

The courier is only called after that transaction commits.
"""
import json
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from ..models.order import Order, OrderStatus
from ..models.payment import Payment, PaymentStatus
from ..models.product import Product
from ..models.shipment_task import ShipmentTask, ShipmentTaskStatus
from ..utils.dto import to_order_dto, to_payment_dto
from ..utils.status_display import OUT_OF_STOCK_MESSAGE, PAYMENT_RETRY_MESSAGE, PAYMENT_SUCCESS_MESSAGE
from .errors import ConflictError, InsufficientStockError, StorefrontError
from .logging import log_event
from .razorpay_gateway import RazorpayGateway, convert_to_paise, generate_receipt_id
from .shipment_service import ShipmentService


GATEWAY = "razorpay"
RESPONSE_VERSION = 1
CAPTURE_EVENTS = {"payment.captured", "order.paid"}


@dataclass
class ProcessPaymentRequest:
    order_id: str
    payment_method: str
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessPaymentRequest":
        order_id = str(data.get("order_id") or "").strip()
        if not order_id:
            raise ValueError("order_id required")
        return cls(
            order_id=order_id,
            payment_method=str(data.get("payment_method") or GATEWAY).strip().lower(),
            razorpay_order_id=data.get("razorpay_order_id") or None,
            razorpay_payment_id=data.get("razorpay_payment_id") or None,
            razorpay_signature=data.get("razorpay_signature") or None,
        )


def _failure(error: str, kind: str, **extra) -> Dict:
    result = {"success": False, "error": error, "error_kind": kind}
    result.update(extra)
    return result


class PaymentService:
    """Order fulfillment orchestrator.

    ``gateway`` and ``shipments`` are built once at startup and injected.
    """

    def __init__(
        self,
        session_factory,
        gateway: RazorpayGateway,
        shipments: Optional[ShipmentService] = None,
        *,
        dispatch_inline: bool = True,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._gateway = gateway
        self._shipments = shipments
        self._dispatch_inline = dispatch_inline
        self._clock = clock

    # -- gateway order -------------------------------------------------

    def create_payment_order(
        self,
        order_id: str,
        *,
        currency: Optional[str] = None,
        customer_email: Optional[str] = None,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
    ) -> Dict:
        """Open a new payment attempt for a PENDING order."""
        with self._session_factory() as session:
            order = session.query(Order).filter(Order.id == order_id).first()
            if not order:
                return _failure("Order not found", "not_found")
            if order.status != OrderStatus.PENDING:
                return _failure(f"Order is {order.status}", "rejected")
            order_number = order.order_number
            amount = Decimal(str(order.total))
            if currency and currency.strip().upper() != order.currency:
                return _failure(f"Order is payable in {order.currency} only", "rejected")
            currency = order.currency
            notes = {
                "order_id": order.id,
                "order_number": order_number,
                "customer_email": customer_email or order.customer_email or "",
                "customer_name": customer_name or order.customer_name or "",
            }
            if customer_phone or order.customer_phone:
                notes["customer_phone"] = customer_phone or order.customer_phone

        receipt = generate_receipt_id(order_number)
        try:
            gateway_order = self._gateway.create_order(
                amount=convert_to_paise(amount),
                currency=currency,
                receipt=receipt,
                notes=notes,
            )
        except StorefrontError as exc:
            log_event("error", "payment.gateway_order_failed", order_id=order_id, error=exc.message, error_kind=exc.kind)
            return _failure(exc.message, exc.kind)

        with self._session_factory() as session:
            payment = Payment(
                id=str(uuid4()),
                order_id=order_id,
                payment_method=GATEWAY,
                gateway=GATEWAY,
                amount=amount,
                currency=currency,
                status=PaymentStatus.PENDING,
                transaction_id=gateway_order.id,
                gateway_response={"gateway": GATEWAY, "version": RESPONSE_VERSION, "order": gateway_order.to_dict()},
            )
            session.add(payment)
            session.flush()
            log_event("info", "payment.gateway_order_created", order_id=order_id, transaction_id=gateway_order.id, receipt=receipt)
            return {
                "success": True,
                "key_id": self._gateway.key_id,
                "razorpay_order": {
                    "id": gateway_order.id,
                    "amount": gateway_order.amount,
                    "currency": gateway_order.currency,
                    "receipt": gateway_order.receipt,
                    "status": gateway_order.status,
                },
                "payment": to_payment_dto(payment),
                "order": {"id": order_id, "order_number": order_number, "total": float(amount)},
            }

    # -- verification --------------------------------------------------

    @staticmethod
    def _find_payment(session, order_id: Optional[str], transaction_id: str) -> Optional[Payment]:
        q = session.query(Payment).filter(Payment.transaction_id == transaction_id)
        if order_id is not None:
            q = q.filter(Payment.order_id == order_id)
        return q.order_by(Payment.created_at.asc(), Payment.id.asc()).first()

    def process_payment(self, request: ProcessPaymentRequest) -> Dict:
        """Verify a checkout callback and confirm or fail the attempt."""
        if not request.razorpay_order_id:
            return _failure("Payment record not found", "not_found")
        with self._session_factory() as session:
            payment = self._find_payment(session, request.order_id, request.razorpay_order_id)
            if not payment:
                log_event(
                    "warning", "payment.record_not_found",
                    order_id=request.order_id, transaction_id=request.razorpay_order_id,
                )
                return _failure("Payment record not found", "not_found")
            if payment.status != PaymentStatus.PENDING:
                return self._replay(session, payment, request.razorpay_payment_id)
            payment_id = payment.id

        verified = False
        if request.payment_method == GATEWAY and request.razorpay_payment_id and request.razorpay_signature:
            verified = self._gateway.verify_signature(
                request.razorpay_order_id,
                request.razorpay_payment_id,
                request.razorpay_signature,
            )
        if not verified:
            # unsupported methods and bad signatures both end here
            return self._fail(
                payment_id,
                reason="signature_verification_failed",
                gateway_payment_id=request.razorpay_payment_id,
                signature=request.razorpay_signature,
            )
        return self._complete(
            payment_id,
            gateway_payment_id=request.razorpay_payment_id,
            signature=request.razorpay_signature,
            source="checkout",
        )

    def _replay(self, session, payment: Payment, gateway_payment_id: Optional[str]) -> Dict:
        order = session.query(Order).filter(Order.id == payment.order_id).first()
        body = {
            "already_processed": True,
            "payment_status": payment.status,
            "payment": to_payment_dto(payment),
            "order": to_order_dto(order) if order else None,
        }
        same_attempt = gateway_payment_id is not None and payment.gateway_payment_id == gateway_payment_id
        if payment.status == PaymentStatus.COMPLETED and same_attempt:
            return dict(body, success=True, message=PAYMENT_SUCCESS_MESSAGE)
        if payment.status == PaymentStatus.FAILED:
            return dict(body, success=False, error=PAYMENT_RETRY_MESSAGE, error_kind="verification", message=PAYMENT_RETRY_MESSAGE)
        return dict(body, success=False, error=f"Payment already {payment.status.lower()}", error_kind="conflict")

    def _verification_record(self, gateway_payment_id: Optional[str], signature: Optional[str], source: str) -> Dict:
        return {
            "payment_id": gateway_payment_id,
            "signature": signature,
            "source": source,
            "verified_at": self._clock().isoformat(),
        }

    def _fail(
        self,
        payment_id: str,
        *,
        reason: str,
        gateway_payment_id: Optional[str] = None,
        signature: Optional[str] = None,
        message: str = PAYMENT_RETRY_MESSAGE,
    ) -> Dict:
        """PENDING -> FAILED for the payment and its order, in one transaction."""
        with self._session_factory() as session:
            payment = session.query(Payment).filter(Payment.id == payment_id).one()
            response = dict(payment.gateway_response or {})
            response["verification"] = dict(
                self._verification_record(gateway_payment_id, signature, "checkout"), verified=False
            )
            claimed = (
                session.query(Payment)
                .filter(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
                .update(
                    {
                        Payment.status: PaymentStatus.FAILED,
                        Payment.failure_reason: reason,
                        Payment.gateway_payment_id: gateway_payment_id,
                        Payment.gateway_response: response,
                        Payment.paid_at: None,
                    },
                    synchronize_session=False,
                )
            )
            if not claimed:
                session.refresh(payment)
                return self._replay(session, payment, gateway_payment_id)
            (
                session.query(Order)
                .filter(Order.id == payment.order_id, Order.status == OrderStatus.PENDING)
                .update({Order.status: OrderStatus.FAILED}, synchronize_session=False)
            )
            session.flush()
            session.expire_all()
            payment = session.query(Payment).filter(Payment.id == payment_id).one()
            order = session.query(Order).filter(Order.id == payment.order_id).one()
            log_event("warning", "payment.verification_failed", order_id=order.id, payment_id=payment_id, reason=reason)
            return {
                "success": False,
                "error": message,
                "error_kind": "verification" if reason == "signature_verification_failed" else reason,
                "payment_status": PaymentStatus.FAILED,
                "message": message,
                "retry_checkout": True,
                "payment": to_payment_dto(payment),
                "order": to_order_dto(order),
            }

    def _complete(
        self,
        payment_id: str,
        *,
        gateway_payment_id: Optional[str],
        signature: Optional[str],
        source: str,
    ) -> Dict:
        now = self._clock()
        try:
            with self._session_factory() as session:
                payment = session.query(Payment).filter(Payment.id == payment_id).one()
                response = dict(payment.gateway_response or {})
                response["verification"] = dict(
                    self._verification_record(gateway_payment_id, signature, source), verified=True
                )
                claimed = (
                    session.query(Payment)
                    .filter(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
                    .update(
                        {
                            Payment.status: PaymentStatus.COMPLETED,
                            Payment.paid_at: now,
                            Payment.gateway_payment_id: gateway_payment_id,
                            Payment.gateway_response: response,
                            Payment.failure_reason: None,
                        },
                        synchronize_session=False,
                    )
                )
                if not claimed:
                    session.refresh(payment)
                    return self._replay(session, payment, gateway_payment_id)

                confirmed = (
                    session.query(Order)
                    .filter(Order.id == payment.order_id, Order.status == OrderStatus.PENDING)
                    .update({Order.status: OrderStatus.CONFIRMED}, synchronize_session=False)
                )
                if not confirmed:
                    raise ConflictError(f"order {payment.order_id} is no longer pending")

                order = session.query(Order).filter(Order.id == payment.order_id).one()
                wanted = defaultdict(int)
                for item in order.items:
                    wanted[item.product_id] += item.quantity
                # sorted so concurrent runs touch rows in the same order
                for product_id in sorted(wanted):
                    qty = wanted[product_id]
                    decremented = (
                        session.query(Product)
                        .filter(Product.id == product_id, Product.stock >= qty)
                        .update({Product.stock: Product.stock - qty}, synchronize_session=False)
                    )
                    if not decremented:
                        raise InsufficientStockError(product_id, qty)

                session.add(ShipmentTask(id=str(uuid4()), order_id=order.id, status=ShipmentTaskStatus.PENDING, attempts=0))
                order_id = order.id
        except InsufficientStockError as exc:
            log_event("error", "payment.stock_unavailable", payment_id=payment_id, product_id=exc.product_id, requested=exc.requested)
            log_event("warning", "payment.refund_required", payment_id=payment_id, gateway_payment_id=gateway_payment_id, reason="insufficient_stock")
            return self._fail(
                payment_id,
                reason="insufficient_stock",
                gateway_payment_id=gateway_payment_id,
                signature=signature,
                message=OUT_OF_STOCK_MESSAGE,
            )
        except ConflictError as exc:
            log_event("warning", "payment.refund_required", payment_id=payment_id, gateway_payment_id=gateway_payment_id, reason=exc.message)
            return self._fail(
                payment_id,
                reason="order_not_pending",
                gateway_payment_id=gateway_payment_id,
                signature=signature,
                message="This order was already settled by another payment. A refund will be issued.",
            )

        log_event("info", "payment.verified", order_id=order_id, payment_id=payment_id, source=source)

        shipment = None
        if self._dispatch_inline and self._shipments is not None:
            try:
                shipment = self._shipments.dispatch(order_id)
            except Exception as exc:
                # the outbox row is committed; the worker picks it up again
                log_event("error", "shipment.dispatch_failed", order_id=order_id, error=f"{type(exc).__name__}: {exc}")
                shipment = {"success": False, "error": "Shipment will be retried", "error_kind": "transient"}
            if not shipment.get("success"):
                log_event("error", "shipment.not_created", order_id=order_id, error=shipment.get("error"))

        with self._session_factory() as session:
            payment = session.query(Payment).filter(Payment.id == payment_id).one()
            order = session.query(Order).filter(Order.id == order_id).one()
            return {
                "success": True,
                "payment_status": PaymentStatus.COMPLETED,
                "message": PAYMENT_SUCCESS_MESSAGE,
                "payment": to_payment_dto(payment),
                "order": to_order_dto(order),
                "shipment": {"success": bool(shipment.get("success")), "waybill": shipment.get("waybill")} if shipment else None,
            }

    # -- webhooks ------------------------------------------------------

    def handle_webhook(self, raw_body: bytes, signature: str) -> Dict:
        """Asynchronous confirmation path; safe to receive more than once."""
        if not self._gateway.verify_webhook_signature(raw_body, signature):
            log_event("warning", "payment.webhook_rejected", reason="bad_signature")
            return _failure("Invalid webhook signature", "verification")
        try:
            event = json.loads(raw_body)
        except ValueError:
            return _failure("Malformed webhook payload", "rejected")

        name = event.get("event")
        entity = ((event.get("payload") or {}).get("payment") or {}).get("entity") or {}
        transaction_id = entity.get("order_id")
        gateway_payment_id = entity.get("id")
        if name not in CAPTURE_EVENTS and name != "payment.failed":
            return {"success": True, "ignored": True, "event": name}
        if not transaction_id:
            return _failure("Webhook payment has no order id", "rejected")

        with self._session_factory() as session:
            payment = self._find_payment(session, None, transaction_id)
            if not payment:
                log_event("warning", "payment.record_not_found", transaction_id=transaction_id, source="webhook")
                return _failure("Payment record not found", "not_found")
            if name == "payment.failed":
                # the buyer may still pay this gateway order with another attempt
                if payment.status == PaymentStatus.PENDING:
                    response = dict(payment.gateway_response or {})
                    response["last_failure"] = {
                        "payment_id": gateway_payment_id,
                        "code": entity.get("error_code"),
                        "description": entity.get("error_description"),
                    }
                    payment.gateway_response = response
                log_event("info", "payment.attempt_failed", transaction_id=transaction_id, gateway_payment_id=gateway_payment_id)
                return {"success": True, "event": name, "payment_status": payment.status}
            if payment.status != PaymentStatus.PENDING:
                return self._replay(session, payment, gateway_payment_id)
            payment_id = payment.id

        return self._complete(payment_id, gateway_payment_id=gateway_payment_id, signature=None, source="webhook")

    # -- queries and refunds -------------------------------------------

    def get_payment_details(self, order_id: str) -> Dict:
        with self._session_factory() as session:
            order = session.query(Order).filter(Order.id == order_id).first()
            if not order:
                return _failure("Order not found", "not_found")
            payment = (
                session.query(Payment)
                .filter(Payment.order_id == order_id)
                .order_by(Payment.created_at.desc(), Payment.id.desc())
                .first()
            )
            return {
                "success": True,
                "payment": to_payment_dto(payment) if payment else None,
                "order": to_order_dto(order),
            }

    def refund_payment(self, payment_id: str, amount: Optional[Decimal] = None) -> Dict:
        """Refund through the gateway, then COMPLETED -> REFUNDED for payment and order."""
        with self._session_factory() as session:
            payment = session.query(Payment).filter(Payment.id == payment_id).first()
            if not payment:
                return _failure("Payment not found", "not_found")
            if not PaymentStatus.can_transition(payment.status, PaymentStatus.REFUNDED):
                return _failure("Payment is not completed", "rejected")
            refund_amount = Decimal(str(amount)) if amount is not None else Decimal(str(payment.amount))
            if not refund_amount.is_finite() or refund_amount <= 0 or refund_amount > Decimal(str(payment.amount)):
                return _failure("Refund amount must be between 0 and the paid amount", "rejected")
            gateway_payment_id = payment.gateway_payment_id
            order_id = payment.order_id

        try:
            refund = self._gateway.refund(
                gateway_payment_id,
                convert_to_paise(refund_amount),
                notes={"order_id": order_id, "payment_id": payment_id},
            )
        except StorefrontError as exc:
            log_event("error", "payment.refund_failed", payment_id=payment_id, error=exc.message, error_kind=exc.kind)
            return _failure(exc.message, exc.kind)

        with self._session_factory() as session:
            payment = session.query(Payment).filter(Payment.id == payment_id).one()
            response = dict(payment.gateway_response or {})
            response["refund"] = dict(
                refund.to_dict(),
                refunded_at=self._clock().isoformat(),
                refund_amount=str(refund_amount),
            )
            claimed = (
                session.query(Payment)
                .filter(Payment.id == payment_id, Payment.status == PaymentStatus.COMPLETED)
                .update(
                    {Payment.status: PaymentStatus.REFUNDED, Payment.gateway_response: response},
                    synchronize_session=False,
                )
            )
            if not claimed:
                log_event("error", "payment.refund_state_conflict", payment_id=payment_id, refund_id=refund.id)
                return _failure("Payment is not completed", "conflict")
            (
                session.query(Order)
                .filter(Order.id == order_id, Order.status == OrderStatus.CONFIRMED)
                .update({Order.status: OrderStatus.REFUNDED}, synchronize_session=False)
            )
            task = session.query(ShipmentTask).filter(ShipmentTask.order_id == order_id).first()
            if task and task.status == ShipmentTaskStatus.PENDING:
                task.status = ShipmentTaskStatus.CANCELLED
                task.next_attempt_at = None
            elif task and task.status == ShipmentTaskStatus.DISPATCHED:
                log_event("warning", "shipment.cancel_required", order_id=order_id, waybill=task.waybill)
        log_event("info", "payment.refunded", payment_id=payment_id, order_id=order_id, amount=refund_amount)
        return {"success": True, "message": "Payment refunded successfully", "refund_id": refund.id}
