"""Customer-facing wording for payment and order states.

API responses carry these instead of gateway payloads.
"""
from decimal import Decimal
from typing import Dict, Union


PAYMENT_STATUS_DISPLAY: Dict[str, Dict[str, str]] = {
    "PENDING": {"label": "Payment Pending", "description": "Payment is being processed"},
    "COMPLETED": {"label": "Payment Successful", "description": "Payment completed successfully"},
    "FAILED": {"label": "Payment Failed", "description": "Payment could not be processed"},
    "REFUNDED": {"label": "Payment Refunded", "description": "Payment has been refunded"},
}

PAYMENT_SUCCESS_MESSAGE = "Payment successful! Your order has been confirmed."
PAYMENT_RETRY_MESSAGE = "Payment verification failed. Please try again."
OUT_OF_STOCK_MESSAGE = "Some items sold out before your payment was confirmed. A refund will be issued."

_CURRENCY_SYMBOLS = {"INR": "₹", "USD": "$", "EUR": "€", "GBP": "£"}


def payment_status_display(status: str) -> Dict[str, str]:
    return dict(PAYMENT_STATUS_DISPLAY.get(status, {"label": status, "description": ""}))


def _group_indian(integer_part: str) -> str:
    # 1234567 -> 12,34,567
    if len(integer_part) <= 3:
        return integer_part
    head, tail = integer_part[:-3], integer_part[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return ",".join(groups + [tail])


def format_amount(amount: Union[Decimal, float, int, str], currency: str = "INR") -> str:
    value = Decimal(str(amount or 0)).quantize(Decimal("0.01"))
    sign = "-" if value < 0 else ""
    integer_part, fraction = f"{abs(value):.2f}".split(".")
    if currency == "INR":
        grouped = _group_indian(integer_part)
    else:
        grouped = f"{int(integer_part):,}"
    symbol = _CURRENCY_SYMBOLS.get(currency, f"{currency} ")
    return f"{sign}{symbol}{grouped}.{fraction}"
