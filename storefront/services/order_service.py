from datetime import datetime
from typing import Dict, Optional
from uuid import uuid4
from decimal import Decimal
from ..models.cart_item import CartItem
from ..models.order import Order, OrderItem, OrderStatus
from ..models.product import Product
from ..utils.dto import Address, to_order_dto
from .logging import log_event


def generate_order_number() -> str:
    return f"ORD-{datetime.utcnow():%Y%m%d}-{uuid4().hex[:8].upper()}"


class OrderService:
    """Checkout (cart -> order snapshot) and order retrieval."""

    def __init__(self, session_factory, currency: str = "INR"):
        self._session_factory = session_factory
        self._currency = currency

    def create_order(
        self,
        *,
        session_id: Optional[str],
        user_id: Optional[str],
        customer: Dict,
        shipping_address: Dict,
        billing_address: Optional[Dict] = None,
        notes: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Dict:
        """Create a PENDING order from the current cart (idempotent by request_id).

        Stock is only checked here; it is decremented when the payment is
        confirmed.
        """
        if not session_id and not user_id:
            raise ValueError("session_id or user_id required")
        email = str((customer or {}).get("email") or "").strip()
        if not email:
            raise ValueError("customer email required")
        shipping = Address.from_dict(shipping_address)
        billing = Address.from_dict(billing_address) if billing_address else shipping

        with self._session_factory() as session:
            if request_id:
                existing = (
                    session.query(Order)
                    .filter(Order.checkout_request_id == request_id)
                    .first()
                )
                if existing:
                    return {"order_id": existing.id, "order_number": existing.order_number, "status": existing.status}
            q = session.query(CartItem)
            if user_id:
                q = q.filter(CartItem.user_id == user_id)
            else:
                q = q.filter(CartItem.session_id == session_id)
            cart = q.all()
            if not cart:
                raise ValueError("cart is empty")

            order = Order(
                id=str(uuid4()),
                order_number=generate_order_number(),
                session_id=session_id,
                user_id=user_id,
                customer_name=str(customer.get("name") or shipping.name),
                customer_email=email,
                customer_phone=str(customer.get("phone") or shipping.phone),
                status=OrderStatus.PENDING,
                currency=cart[0].currency or self._currency,
                billing_address=billing.to_dict(),
                shipping_address=shipping.to_dict(),
                customer_notes=notes,
                checkout_request_id=request_id,
            )
            subtotal = Decimal("0")
            for it in cart:
                prod = session.query(Product).filter(Product.id == it.product_id).first()
                if not prod or not prod.is_active:
                    raise ValueError(f"product {it.product_id} is no longer available")
                if it.quantity > int(prod.stock or 0):
                    raise ValueError(f"insufficient stock for {prod.sku}")
                unit_price = Decimal(str(it.unit_price))
                line = unit_price * Decimal(it.quantity)
                subtotal += line
                order.items.append(
                    OrderItem(
                        id=str(uuid4()),
                        product_id=prod.id,
                        product_name=prod.name,
                        product_sku=prod.sku,
                        quantity=it.quantity,
                        unit_price=unit_price,
                        total_price=line,
                    )
                )
            order.subtotal = subtotal
            order.tax = Decimal("0")
            order.shipping_cost = Decimal("0")
            order.discount = Decimal("0")
            order.total = subtotal
            session.add(order)
            # Clear cart after order creation
            for it in cart:
                session.delete(it)
            session.flush()
            log_event("info", "order.created", order_id=order.id, order_number=order.order_number, items=len(cart), total=subtotal)
            return {"order_id": order.id, "order_number": order.order_number, "status": order.status}

    def get_order(self, order_id: str) -> Dict:
        if not order_id:
            return {}
        with self._session_factory() as session:
            o = session.query(Order).filter(Order.id == order_id).first()
            if not o:
                return {}
            return to_order_dto(o)
