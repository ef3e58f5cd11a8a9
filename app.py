"""Storefront fulfillment Flask application."""

from __future__ import annotations

import json
import logging
from typing import Optional

import click
import requests
from flask import Flask

from config import StorefrontConfig
from routes import admin, api
from storefront.config import AppConfig
from storefront.db.session import build_engine, build_session_factory, init_db
from storefront.services.cart_service import CartService
from storefront.services.catalog_service import CatalogService
from storefront.services.delhivery_courier import DelhiveryCourier
from storefront.services.logging import log_event
from storefront.services.order_service import OrderService
from storefront.services.payment_service import PaymentService
from storefront.services.razorpay_gateway import RazorpayGateway
from storefront.services.shipment_service import ShipmentService


def build_components(
    app_config: AppConfig,
    session_factory,
    *,
    gateway: Optional[RazorpayGateway] = None,
    courier: Optional[DelhiveryCourier] = None,
    http: Optional[requests.Session] = None,
) -> dict:
    """Wire the services; adapters are built once and shared."""

    # ConfigurationError from the adapters is fatal at startup
    gateway = gateway or RazorpayGateway.from_config(app_config.razorpay, http=http)
    courier = courier or DelhiveryCourier.from_config(app_config.delhivery, http=http)
    shipments = ShipmentService(
        session_factory,
        courier,
        max_attempts=app_config.shipment_max_attempts,
        retry_backoff_seconds=app_config.shipment_retry_backoff_seconds,
    )
    return {
        "catalog": CatalogService(session_factory),
        "cart": CartService(session_factory, currency=app_config.currency),
        "orders": OrderService(session_factory, currency=app_config.currency),
        "payments": PaymentService(
            session_factory,
            gateway,
            shipments,
            dispatch_inline=app_config.dispatch_shipments_inline,
        ),
        "shipments": shipments,
        "gateway": gateway,
        "courier": courier,
    }


def create_app(
    config: Optional[StorefrontConfig] = None,
    *,
    gateway: Optional[RazorpayGateway] = None,
    courier: Optional[DelhiveryCourier] = None,
    http: Optional[requests.Session] = None,
) -> Flask:
    config = config or StorefrontConfig.load()
    app_config = config.app
    logging.basicConfig(level=getattr(logging, app_config.log_level, logging.INFO))

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.secret_key
    app.config["STOREFRONT_CONFIG"] = config

    engine = build_engine(app_config.database_url)
    init_db(engine)
    session_factory = build_session_factory(engine)

    app.extensions["storefront_components"] = build_components(
        app_config, session_factory, gateway=gateway, courier=courier, http=http
    )
    app.extensions["storefront_session_factory"] = session_factory

    app.register_blueprint(admin.admin_bp)
    app.register_blueprint(api.api_bp)
    _register_commands(app)

    log_event("info", "app.started", database=engine.dialect.name, currency=app_config.currency)
    return app


def _register_commands(app: Flask) -> None:
    @app.cli.command("init-db")
    def init_db_command():
        """Create tables (already done at startup; kept for deploy scripts)."""
        click.echo("database ready")

    @app.cli.command("dispatch-shipments")
    @click.option("--limit", default=50, show_default=True, help="Maximum tasks per pass.")
    def dispatch_shipments_command(limit):
        """Run one worker pass over due shipment tasks."""
        summary = app.extensions["storefront_components"]["shipments"].process_pending(limit=limit)
        click.echo(json.dumps(summary))

    @app.cli.command("shipment-report")
    def shipment_report_command():
        """List confirmed orders that have no dispatched shipment."""
        report = app.extensions["storefront_components"]["shipments"].reconciliation_report()
        click.echo(json.dumps(report, indent=2, default=str))


def main() -> None:
    app = create_app()
    app.run(host="0.0.0.0", port=5000, debug=False)


if __name__ == "__main__":
    main()
