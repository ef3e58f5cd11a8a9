from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from .status_display import format_amount, payment_status_display
from .validators import validate_phone, validate_pin


@dataclass
class Address:
    """Shipping or billing address as stored on the order."""

    name: str
    line1: str
    city: str
    state: str
    pin: str
    phone: str
    country: str = "India"
    line2: str = ""
    email: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Address":
        data = data or {}
        missing = [k for k in ("name", "line1", "city", "state", "pin", "phone") if not str(data.get(k) or "").strip()]
        if missing:
            raise ValueError("address missing: " + ", ".join(missing))
        return cls(
            name=str(data["name"]).strip(),
            line1=str(data["line1"]).strip(),
            line2=str(data.get("line2") or "").strip(),
            city=str(data["city"]).strip(),
            state=str(data["state"]).strip(),
            pin=validate_pin(str(data["pin"])),
            phone=validate_phone(str(data["phone"])),
            country=str(data.get("country") or "India").strip(),
            email=str(data.get("email") or "").strip(),
        )

    @property
    def street(self) -> str:
        return ", ".join(p for p in (self.line1, self.line2) if p)

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


def _money(value: Any) -> float:
    return float(value or 0)


def to_product_dto(row: Any) -> Dict:
    return {
        "id": getattr(row, "id", None),
        "sku": getattr(row, "sku", None),
        "name": getattr(row, "name", None),
        "description": getattr(row, "description", None),
        "price": _money(getattr(row, "price", 0)),
        "currency": getattr(row, "currency", None),
        "category_id": getattr(row, "category_id", None),
        "stock": getattr(row, "stock", 0) or 0,
        "in_stock": (getattr(row, "stock", 0) or 0) > 0,
        "is_active": bool(getattr(row, "is_active", True)),
    }


def to_cart_item_dto(row: Any) -> Dict:
    return {
        "id": row.id,
        "product_id": row.product_id,
        "quantity": row.quantity,
        "unit_price": _money(row.unit_price),
        "currency": row.currency,
    }


def to_order_dto(order: Any) -> Dict:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "subtotal": _money(order.subtotal),
        "tax": _money(order.tax),
        "shipping_cost": _money(order.shipping_cost),
        "discount": _money(order.discount),
        "total": _money(order.total),
        "total_display": format_amount(order.total, order.currency),
        "currency": order.currency,
        "shipping_address": order.shipping_address,
        "items": [
            {
                "product_id": it.product_id,
                "name": it.product_name,
                "sku": it.product_sku,
                "quantity": it.quantity,
                "unit_price": _money(it.unit_price),
                "total_price": _money(it.total_price),
            }
            for it in order.items
        ],
    }


def to_payment_dto(payment: Any) -> Dict:
    """Payment as shown to the buyer; the gateway response blob stays server side."""
    return {
        "payment_id": payment.id,
        "order_id": payment.order_id,
        "status": payment.status,
        "display": payment_status_display(payment.status),
        "amount": _money(payment.amount),
        "amount_display": format_amount(payment.amount, payment.currency),
        "currency": payment.currency,
        "transaction_id": payment.transaction_id,
        "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
    }


def to_shipment_task_dto(task: Any) -> Dict:
    return {
        "order_id": task.order_id,
        "status": task.status,
        "waybill": task.waybill,
        "attempts": task.attempts,
        "last_error": task.last_error,
        "error_kind": task.error_kind,
        "next_attempt_at": task.next_attempt_at.isoformat() if task.next_attempt_at else None,
    }
