import hashlib
import hmac
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from storefront.config import PickupLocation
from storefront.db.session import build_engine, build_session_factory, init_db
from storefront.models import Order, OrderItem, OrderStatus, Product
from storefront.services.delhivery_courier import DelhiveryCourier, ShipmentResult
from storefront.services.razorpay_gateway import RazorpayGateway
from storefront.services.shipment_service import ShipmentService


KEY_ID = "rzp_test_key"
KEY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "whsec_test"

SHIPPING_ADDRESS = {
    "name": "Asha Rao",
    "line1": "12 MG Road",
    "line2": "Indiranagar",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pin": "560038",
    "phone": "9876543210",
    "country": "India",
}


def make_response(status_code=200, body=None, *, json_error=False):
    response = MagicMock()
    response.status_code = status_code
    if json_error:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = body if body is not None else {}
    return response


def sign(order_id, payment_id, secret=KEY_SECRET):
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def sign_webhook(body: bytes, secret=WEBHOOK_SECRET):
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'store.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def seed_product(session_factory):
    def _seed(*, stock=10, price="2000.00", name="Cotton Kurta", weight_grams=None, low_stock_threshold=5):
        product_id = str(uuid4())
        with session_factory() as session:
            session.add(
                Product(
                    id=product_id,
                    sku=f"SKU-{product_id[:8]}",
                    name=name,
                    price=Decimal(price),
                    currency="INR",
                    stock=stock,
                    low_stock_threshold=low_stock_threshold,
                    weight_grams=weight_grams,
                )
            )
        return product_id

    return _seed


@pytest.fixture
def seed_order(session_factory):
    """Insert a PENDING order directly; ``lines`` is a list of (product_id, qty, unit_price)."""

    def _seed(lines, *, order_id=None, status=OrderStatus.PENDING):
        order_id = order_id or str(uuid4())
        with session_factory() as session:
            subtotal = sum((Decimal(price) * qty for _, qty, price in lines), Decimal("0"))
            order = Order(
                id=order_id,
                order_number=f"ORD-TEST-{order_id[:8].upper()}",
                customer_name="Asha Rao",
                customer_email="asha@example.com",
                customer_phone="9876543210",
                status=status,
                subtotal=subtotal,
                total=subtotal,
                currency="INR",
                billing_address=SHIPPING_ADDRESS,
                shipping_address=SHIPPING_ADDRESS,
            )
            for product_id, qty, price in lines:
                product = session.query(Product).filter(Product.id == product_id).one()
                order.items.append(
                    OrderItem(
                        id=str(uuid4()),
                        product_id=product_id,
                        product_name=product.name,
                        product_sku=product.sku,
                        quantity=qty,
                        unit_price=Decimal(price),
                        total_price=Decimal(price) * qty,
                    )
                )
            session.add(order)
        return order_id

    return _seed


@pytest.fixture
def http():
    return MagicMock()


@pytest.fixture
def gateway(http):
    return RazorpayGateway(KEY_ID, KEY_SECRET, WEBHOOK_SECRET, http=http)


@pytest.fixture
def pickup():
    return PickupLocation(
        name="Main Warehouse",
        address="Plot 4, Industrial Area",
        city="Bengaluru",
        state="Karnataka",
        pin="560058",
        phone="9812345678",
    )


@pytest.fixture
def courier():
    mock = MagicMock(spec=DelhiveryCourier)
    mock.create_shipment.return_value = ShipmentResult(success=True, waybill="WB1001", status="Success", serviceable=True)
    return mock


@pytest.fixture
def shipments(session_factory, courier):
    return ShipmentService(session_factory, courier, max_attempts=3, retry_backoff_seconds=0)
