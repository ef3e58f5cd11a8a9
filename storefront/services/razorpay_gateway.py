"""
Razorpay payment gateway adapter.

- Orders API: https://razorpay.com/docs/api/orders/
- Checkout returns razorpay_order_id / razorpay_payment_id / razorpay_signature,
  where signature = HMAC-SHA256(key_secret, "<order_id>|<payment_id>")
- Webhooks carry X-Razorpay-Signature = HMAC-SHA256(webhook_secret, raw body)

Amounts sent to the gateway are always integers in paise.
"""
import hashlib
import hmac
import logging
import time
from dataclasses import asdict, dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Union
from uuid import uuid4

import requests

from ..config import RazorpaySettings
from .errors import ConfigurationError, RemoteRequestError, TransientRemoteError


logger = logging.getLogger(__name__)

RECEIPT_MAX_LENGTH = 40


def convert_to_paise(amount: Union[Decimal, float, int, str]) -> int:
    value = Decimal(str(amount))
    if value < 0:
        raise ValueError("amount must be >= 0")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def convert_from_paise(amount_minor: int) -> Decimal:
    return (Decimal(int(amount_minor)) / 100).quantize(Decimal("0.01"))


def generate_receipt_id(order_number: str) -> str:
    """Idempotency token for one payment attempt on ``order_number``."""
    suffix = f"_{int(time.time() * 1000)}_{uuid4().hex[:6]}"
    prefix = f"rcpt_{order_number}"[: RECEIPT_MAX_LENGTH - len(suffix)]
    return prefix + suffix


@dataclass
class GatewayOrder:
    id: str
    amount: int
    currency: str
    receipt: str
    status: str
    notes: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "GatewayOrder":
        return cls(
            id=str(data.get("id") or ""),
            amount=int(data.get("amount") or 0),
            currency=str(data.get("currency") or ""),
            receipt=str(data.get("receipt") or ""),
            status=str(data.get("status") or ""),
            notes=dict(data.get("notes") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GatewayRefund:
    id: str
    payment_id: str
    amount: int
    status: str

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "GatewayRefund":
        return cls(
            id=str(data.get("id") or ""),
            payment_id=str(data.get("payment_id") or ""),
            amount=int(data.get("amount") or 0),
            status=str(data.get("status") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayGateway:
    """Razorpay REST client plus local signature checks."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str = "",
        *,
        base_url: str = "https://api.razorpay.com",
        timeout: float = 30.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        if not key_id or not key_secret:
            raise ConfigurationError("Razorpay key id and key secret are required")
        self.key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret or ""
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = http or requests.Session()

    @classmethod
    def from_config(cls, settings: RazorpaySettings, http: Optional[requests.Session] = None) -> "RazorpayGateway":
        missing = settings.missing()
        if missing:
            raise ConfigurationError("missing configuration: " + ", ".join(missing))
        return cls(
            settings.key_id,
            settings.key_secret,
            settings.webhook_secret,
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            http=http,
        )

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._http.post(
                url,
                json=payload,
                auth=(self.key_id, self._key_secret),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as exc:
            logger.warning("Razorpay timeout on %s", path)
            raise TransientRemoteError(f"Razorpay request timed out: {path}") from exc
        except requests.exceptions.ConnectionError as exc:
            logger.warning("Razorpay connection error on %s: %s", path, exc)
            raise TransientRemoteError(f"Razorpay unreachable: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            logger.warning("Razorpay request failed on %s: %s", path, exc)
            raise TransientRemoteError(f"Razorpay request failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise ConfigurationError(
                "Razorpay rejected the API credentials", status_code=response.status_code
            )
        if response.status_code >= 500:
            raise TransientRemoteError(
                f"Razorpay server error: HTTP {response.status_code}", status_code=response.status_code
            )
        if response.status_code >= 400:
            description = f"HTTP {response.status_code}"
            try:
                description = response.json().get("error", {}).get("description") or description
            except ValueError:
                pass
            logger.error("Razorpay rejected %s: %s", path, description)
            raise RemoteRequestError(f"Razorpay error: {description}", status_code=response.status_code)
        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteRequestError(
                f"Invalid response format from Razorpay (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from exc
        if not isinstance(body, dict):
            raise RemoteRequestError("Invalid response format from Razorpay", status_code=response.status_code)
        return body

    def create_order(
        self,
        *,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        """Create a gateway order. ``amount`` is in minor units (paise)."""
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValueError("amount must be an integer number of minor units")
        if amount <= 0:
            raise ValueError("amount must be > 0")
        if not receipt:
            raise ValueError("receipt required")
        data = self._post(
            "/v1/orders",
            {
                "amount": amount,
                "currency": currency,
                "receipt": receipt[:RECEIPT_MAX_LENGTH],
                "notes": notes or {},
            },
        )
        return GatewayOrder.from_response(data)

    def refund(
        self,
        gateway_payment_id: str,
        amount_minor: Optional[int] = None,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayRefund:
        """Full refund unless ``amount_minor`` is given."""
        payload: Dict[str, Any] = {"notes": notes or {}}
        if amount_minor is not None:
            payload["amount"] = int(amount_minor)
        data = self._post(f"/v1/payments/{gateway_payment_id}/refund", payload)
        return GatewayRefund.from_response(data)

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not order_id or not payment_id or not signature:
            return False
        expected = _hmac_hex(self._key_secret, f"{order_id}|{payment_id}".encode("utf-8"))
        return hmac.compare_digest(expected.encode("ascii"), str(signature).encode("utf-8"))

    def verify_webhook_signature(
        self,
        payload: Union[bytes, str],
        signature: str,
        secret: Optional[str] = None,
    ) -> bool:
        secret = secret if secret is not None else self._webhook_secret
        if not secret or not signature:
            return False
        body = payload.encode("utf-8") if isinstance(payload, str) else payload
        expected = _hmac_hex(secret, body)
        return hmac.compare_digest(expected.encode("ascii"), str(signature).encode("utf-8"))
