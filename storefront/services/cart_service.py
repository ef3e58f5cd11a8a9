from typing import Dict, Optional, Tuple
from uuid import uuid4
from decimal import Decimal
from ..models.product import Product
from ..models.cart_item import CartItem
from ..utils.dto import to_cart_item_dto
from ..utils.validators import ensure_positive_int


class CartService:
    """Cart operations backed by DB, keyed by user id or anonymous session id."""

    def __init__(self, session_factory, currency: str = "INR"):
        self._session_factory = session_factory
        self._currency = currency

    @staticmethod
    def _identity(session_id: Optional[str], user_id: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        if not session_id and not user_id:
            raise ValueError("session_id or user_id required")
        return session_id or None, user_id or None

    @staticmethod
    def _scoped(q, sid: Optional[str], uid: Optional[str]):
        if uid:
            return q.filter(CartItem.user_id == uid)
        return q.filter(CartItem.session_id == sid)

    def get_cart(self, *, session_id: Optional[str], user_id: Optional[str]) -> Dict:
        sid, uid = self._identity(session_id, user_id)
        with self._session_factory() as session:
            rows = self._scoped(session.query(CartItem), sid, uid).order_by(CartItem.added_at).all()
            items = [to_cart_item_dto(it) for it in rows]
            subtotal = sum((Decimal(str(it.unit_price)) * it.quantity for it in rows), Decimal("0"))
            currency = items[0]["currency"] if items else self._currency
            return {"items": items, "subtotal": float(subtotal), "currency": currency}

    def add_item(self, *, session_id: Optional[str], user_id: Optional[str], product_id: str, quantity: int = 1) -> Dict:
        if not product_id:
            raise ValueError("product_id required")
        qnty = ensure_positive_int(quantity or 1, "quantity")
        sid, uid = self._identity(session_id, user_id)
        with self._session_factory() as session:
            prod = (
                session.query(Product)
                .filter(Product.id == product_id, Product.is_active.is_(True))
                .first()
            )
            if not prod:
                raise ValueError("product not found or inactive")

            existing = (
                self._scoped(session.query(CartItem), sid, uid)
                .filter(CartItem.product_id == product_id)
                .first()
            )
            new_q = qnty + (existing.quantity if existing else 0)
            if new_q > int(prod.stock or 0):
                raise ValueError("insufficient stock")
            if existing:
                existing.quantity = new_q
                item_id = existing.id
            else:
                item = CartItem(
                    id=str(uuid4()),
                    session_id=sid,
                    user_id=uid,
                    product_id=product_id,
                    quantity=qnty,
                    unit_price=prod.price,
                    currency=prod.currency,
                )
                session.add(item)
                item_id = item.id
            session.flush()
            return {"status": "added", "item_id": item_id, "quantity": new_q}

    def update_item(self, *, item_id: str, quantity: int) -> Dict:
        if not item_id:
            raise ValueError("item_id required")
        qnty = ensure_positive_int(quantity, "quantity", allow_zero=True)
        with self._session_factory() as session:
            it = session.query(CartItem).filter(CartItem.id == item_id).first()
            if not it:
                raise ValueError("item not found")
            if qnty == 0:
                session.delete(it)
                return {"status": "removed", "item_id": item_id}
            prod = session.query(Product).filter(Product.id == it.product_id).first()
            if prod and qnty > int(prod.stock or 0):
                raise ValueError("insufficient stock")
            it.quantity = qnty
            return {"status": "updated", "item_id": item_id, "quantity": qnty}

    def remove_item(self, *, item_id: str) -> None:
        with self._session_factory() as session:
            it = session.query(CartItem).filter(CartItem.id == item_id).first()
            if it:
                session.delete(it)
