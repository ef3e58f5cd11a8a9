"""Operator routes: refunds, shipment recovery and stock reports."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from flask import Blueprint, current_app, jsonify, request, session


admin_bp = Blueprint("storefront_admin", __name__, url_prefix="/admin")


def _components() -> dict:
    return current_app.extensions["storefront_components"]


def _config():
    return current_app.config["STOREFRONT_CONFIG"]


def _is_authenticated() -> bool:
    return bool(session.get("storefront_admin"))


@admin_bp.before_request
def guard_private_routes():
    if request.endpoint and request.endpoint.startswith("storefront_admin."):
        public = {"storefront_admin.login"}
        if request.endpoint not in public and not _is_authenticated():
            return jsonify({"success": False, "error": "Login required"}), 401
    return None


@admin_bp.post("/login")
def login():
    payload = request.get_json(silent=True) or {}
    username = str(payload.get("username", "")).strip()
    password = str(payload.get("password", "")).strip()
    cfg = _config()
    if cfg.admin_password and username == cfg.admin_username and password == cfg.admin_password:
        session["storefront_admin"] = True
        return jsonify({"success": True})
    return jsonify({"success": False, "error": "Invalid username or password"}), 401


@admin_bp.post("/logout")
def logout():
    session.pop("storefront_admin", None)
    return jsonify({"success": True})


@admin_bp.post("/payments/<payment_id>/refund")
def refund_payment(payment_id: str):
    payload = request.get_json(silent=True) or {}
    amount = None
    if payload.get("amount") is not None:
        try:
            amount = Decimal(str(payload["amount"]))
        except InvalidOperation:
            return jsonify({"success": False, "error": "amount must be a number"}), 400
        if not amount.is_finite():
            return jsonify({"success": False, "error": "amount must be a number"}), 400
    result = _components()["payments"].refund_payment(payment_id, amount)
    if result.get("success"):
        return jsonify(result)
    return jsonify(result), 404 if result.get("error_kind") == "not_found" else 400


@admin_bp.post("/orders/<order_id>/shipment/cancel")
def cancel_shipment(order_id: str):
    payload = request.get_json(silent=True) or {}
    reason = str(payload.get("reason") or "Order cancelled by customer")
    result = _components()["shipments"].cancel(order_id, reason)
    return jsonify(result), 200 if result.get("success") else 400


@admin_bp.post("/orders/<order_id>/shipment/requeue")
def requeue_shipment(order_id: str):
    result = _components()["shipments"].requeue(order_id)
    return jsonify(result), 200 if result.get("success") else 400


@admin_bp.post("/shipments/dispatch-pending")
def dispatch_pending():
    limit = request.args.get("limit", 50, type=int)
    return jsonify(_components()["shipments"].process_pending(limit=limit))


@admin_bp.get("/shipments/reconciliation")
def reconciliation_report():
    report = _components()["shipments"].reconciliation_report()
    return jsonify({"orders": report, "count": len(report)})


@admin_bp.get("/products/low-stock")
def low_stock_report():
    products = _components()["catalog"].low_stock_products()
    return jsonify({"products": products, "count": len(products)})
