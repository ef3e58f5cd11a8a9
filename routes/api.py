"""JSON API for the storefront: catalog, cart, checkout, payments and tracking."""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from flask import Blueprint, current_app, jsonify, request, session

from storefront.services.payment_service import ProcessPaymentRequest
from storefront.services.logging import log_event


api_bp = Blueprint("storefront_api", __name__, url_prefix="/api")

# failure kinds that map to a status code other than 400
_STATUS_BY_KIND = {
    "not_found": 404,
    "conflict": 409,
    "configuration": 503,
    "transient": 502,
}


def _components() -> Dict[str, Any]:
    return current_app.extensions["storefront_components"]


def _cart_identity() -> Tuple[Optional[str], Optional[str]]:
    """Anonymous carts are keyed by a session id stored in the Flask session."""
    user_id = request.headers.get("X-User-Id") or None
    if user_id:
        return None, user_id
    cart_session = session.get("cart_session_id")
    if not cart_session:
        cart_session = uuid4().hex
        session["cart_session_id"] = cart_session
    return cart_session, None


def _respond(result: Dict):
    if result.get("success", True):
        return jsonify(result)
    return jsonify(result), _STATUS_BY_KIND.get(result.get("error_kind"), 400)


@api_bp.errorhandler(ValueError)
def handle_value_error(exc: ValueError):
    return jsonify({"success": False, "error": str(exc)}), 400


@api_bp.get("/products")
def list_products():
    catalog = _components()["catalog"]
    result = catalog.list_products(
        query=request.args.get("q") or None,
        category=request.args.get("category") or None,
        page=request.args.get("page", 1, type=int),
        page_size=request.args.get("page_size", 20, type=int),
    )
    return jsonify(result)


@api_bp.get("/products/<product_id>")
def get_product(product_id: str):
    product = _components()["catalog"].get_product(product_id)
    if not product:
        return jsonify({"success": False, "error": "Product not found"}), 404
    return jsonify(product)


@api_bp.get("/cart")
def get_cart():
    session_id, user_id = _cart_identity()
    return jsonify(_components()["cart"].get_cart(session_id=session_id, user_id=user_id))


@api_bp.post("/cart")
def add_to_cart():
    payload = request.get_json(silent=True) or {}
    session_id, user_id = _cart_identity()
    result = _components()["cart"].add_item(
        session_id=session_id,
        user_id=user_id,
        product_id=str(payload.get("product_id") or "").strip(),
        quantity=payload.get("quantity", 1),
    )
    return jsonify(result), 201


@api_bp.patch("/cart/<item_id>")
def update_cart_item(item_id: str):
    payload = request.get_json(silent=True) or {}
    if "quantity" not in payload:
        raise ValueError("quantity required")
    return jsonify(_components()["cart"].update_item(item_id=item_id, quantity=payload["quantity"]))


@api_bp.delete("/cart/<item_id>")
def remove_cart_item(item_id: str):
    _components()["cart"].remove_item(item_id=item_id)
    return jsonify({"status": "removed", "item_id": item_id})


@api_bp.post("/orders")
def checkout():
    payload = request.get_json(silent=True) or {}
    session_id, user_id = _cart_identity()
    result = _components()["orders"].create_order(
        session_id=session_id,
        user_id=user_id,
        customer=payload.get("customer") or {},
        shipping_address=payload.get("shipping_address") or {},
        billing_address=payload.get("billing_address") or None,
        notes=payload.get("notes") or None,
        request_id=request.headers.get("Idempotency-Key") or payload.get("request_id") or None,
    )
    return jsonify(result), 201


@api_bp.get("/orders/<order_id>")
def get_order(order_id: str):
    order = _components()["orders"].get_order(order_id)
    if not order:
        return jsonify({"success": False, "error": "Order not found"}), 404
    return jsonify(order)


@api_bp.post("/payments/create-order")
def create_payment_order():
    payload = request.get_json(silent=True) or {}
    order_id = str(payload.get("order_id") or "").strip()
    if not order_id:
        raise ValueError("order_id required")
    result = _components()["payments"].create_payment_order(
        order_id,
        customer_email=payload.get("customer_email") or None,
        customer_name=payload.get("customer_name") or None,
        customer_phone=payload.get("customer_phone") or None,
    )
    return _respond(result)


@api_bp.post("/payments/verify")
def verify_payment():
    payload = request.get_json(silent=True) or {}
    result = _components()["payments"].process_payment(ProcessPaymentRequest.from_dict(payload))
    return _respond(result)


@api_bp.post("/payments/webhook")
def payment_webhook():
    signature = request.headers.get("X-Razorpay-Signature", "")
    result = _components()["payments"].handle_webhook(request.get_data(), signature)
    if not result.get("success") and result.get("error_kind") == "verification":
        return jsonify(result), 400
    if not result.get("success"):
        # acknowledged so the gateway does not redeliver an event we cannot use
        log_event("warning", "payment.webhook_unprocessed", error=result.get("error"), error_kind=result.get("error_kind"))
    return jsonify(result)


@api_bp.get("/orders/<order_id>/payment")
def get_payment_details(order_id: str):
    return _respond(_components()["payments"].get_payment_details(order_id))


@api_bp.get("/orders/<order_id>/tracking")
def get_tracking(order_id: str):
    return _respond(_components()["shipments"].track(order_id))
