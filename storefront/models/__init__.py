from .base import Base
from .category import Category
from .product import Product
from .cart_item import CartItem
from .order import Order, OrderItem, OrderStatus
from .payment import Payment, PaymentStatus
from .shipment_task import ShipmentTask, ShipmentTaskStatus

__all__ = [
    "Base",
    "Category",
    "Product",
    "CartItem",
    "Order",
    "OrderItem",
    "OrderStatus",
    "Payment",
    "PaymentStatus",
    "ShipmentTask",
    "ShipmentTaskStatus",
]
