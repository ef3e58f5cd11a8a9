import os
from dataclasses import dataclass
from pathlib import Path
import json
from typing import Dict, List, Optional

from .services.errors import ConfigurationError


@dataclass
class RazorpaySettings:
    key_id: str
    key_secret: str
    webhook_secret: str
    base_url: str = "https://api.razorpay.com"
    timeout_seconds: float = 30.0

    def missing(self) -> List[str]:
        required = {
            "RAZORPAY_KEY_ID": self.key_id,
            "RAZORPAY_KEY_SECRET": self.key_secret,
        }
        return [k for k, v in required.items() if not v]


@dataclass
class PickupLocation:
    """Warehouse record registered with the courier; sent verbatim."""

    name: str
    address: str
    city: str
    state: str
    pin: str
    country: str = "India"
    phone: str = ""
    email: str = ""

    def missing(self) -> List[str]:
        required = {
            "DELHIVERY_PICKUP_NAME": self.name,
            "DELHIVERY_PICKUP_ADDRESS": self.address,
            "DELHIVERY_PICKUP_CITY": self.city,
            "DELHIVERY_PICKUP_STATE": self.state,
            "DELHIVERY_PICKUP_PIN": self.pin,
            "DELHIVERY_PICKUP_PHONE": self.phone,
        }
        return [k for k, v in required.items() if not v]

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "add": self.address,
            "city": self.city,
            "state": self.state,
            "pin": self.pin,
            "country": self.country,
            "phone": self.phone,
            "email": self.email,
        }


@dataclass
class DelhiverySettings:
    api_key: str
    client_name: str
    pickup: PickupLocation
    base_url: str = "https://track.delhivery.com"
    timeout_seconds: float = 30.0

    def missing(self) -> List[str]:
        keys = []
        if not self.api_key:
            keys.append("DELHIVERY_API_KEY")
        if not self.client_name:
            keys.append("DELHIVERY_CLIENT_NAME")
        return keys + self.pickup.missing()


@dataclass
class AppConfig:
    database_url: str
    secret_key: str
    log_level: str
    store_base_url: str
    currency: str
    razorpay: RazorpaySettings
    delhivery: DelhiverySettings
    shipment_max_attempts: int = 5
    shipment_retry_backoff_seconds: float = 60.0
    dispatch_shipments_inline: bool = True

    def get_store_url(self, order_number: str) -> str:
        base = self.store_base_url.rstrip("/")
        return f"{base}/orders/{order_number}"


def validate_currency(value: Optional[str]) -> str:
    v = (value or "INR").strip().upper()
    if len(v) != 3:
        raise ValueError("Invalid currency code: expected ISO4217 length 3")
    return v


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or str(value).strip() == "":
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _load_settings_file(path: Optional[Path]) -> dict:
    if path is None:
        path = Path(__file__).resolve().parents[1] / "data" / "settings.json"
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"settings file {path} is not valid JSON: {exc}") from exc
    return data if isinstance(data, dict) else {}


def load_env(settings_path: Optional[Path] = None) -> AppConfig:
    # data/settings.json wins, environment variables are the fallback
    s = _load_settings_file(settings_path)

    def get(key: str, default: str = "") -> str:
        value = s.get(key)
        if value is None or value == "":
            value = os.getenv(key, default)
        return str(value).strip()

    pickup = PickupLocation(
        name=get("DELHIVERY_PICKUP_NAME"),
        address=get("DELHIVERY_PICKUP_ADDRESS"),
        city=get("DELHIVERY_PICKUP_CITY"),
        state=get("DELHIVERY_PICKUP_STATE"),
        pin=get("DELHIVERY_PICKUP_PIN"),
        country=get("DELHIVERY_PICKUP_COUNTRY", "India"),
        phone=get("DELHIVERY_PICKUP_PHONE"),
        email=get("DELHIVERY_PICKUP_EMAIL"),
    )
    try:
        razorpay_timeout = float(get("RAZORPAY_TIMEOUT_SECONDS", "30"))
        timeout_seconds = float(get("DELHIVERY_TIMEOUT_SECONDS", "30"))
        max_attempts = int(get("SHIPMENT_MAX_ATTEMPTS", "5"))
        backoff = float(get("SHIPMENT_RETRY_BACKOFF_SECONDS", "60"))
    except ValueError as exc:
        raise ConfigurationError(f"invalid numeric setting: {exc}") from exc

    return AppConfig(
        database_url=get("DATABASE_URL", "sqlite:///data/app.db"),
        secret_key=get("SECRET_KEY", "dev_secret"),
        log_level=get("LOG_LEVEL", "INFO").upper(),
        store_base_url=get("STORE_BASE_URL", "http://127.0.0.1:5000").rstrip("/"),
        currency=validate_currency(get("CURRENCY")),
        razorpay=RazorpaySettings(
            key_id=get("RAZORPAY_KEY_ID"),
            key_secret=get("RAZORPAY_KEY_SECRET"),
            webhook_secret=get("RAZORPAY_WEBHOOK_SECRET"),
            base_url=get("RAZORPAY_BASE_URL", "https://api.razorpay.com").rstrip("/"),
            timeout_seconds=razorpay_timeout,
        ),
        delhivery=DelhiverySettings(
            api_key=get("DELHIVERY_API_KEY"),
            client_name=get("DELHIVERY_CLIENT_NAME"),
            pickup=pickup,
            base_url=get("DELHIVERY_BASE_URL", "https://track.delhivery.com").rstrip("/"),
            timeout_seconds=timeout_seconds,
        ),
        shipment_max_attempts=max_attempts,
        shipment_retry_backoff_seconds=backoff,
        dispatch_shipments_inline=_parse_bool(get("DISPATCH_SHIPMENTS_INLINE"), True),
    )


def require_complete(config: AppConfig) -> None:
    """Raise ConfigurationError naming every missing gateway/courier key."""
    missing = config.razorpay.missing() + config.delhivery.missing()
    if missing:
        raise ConfigurationError("missing configuration: " + ", ".join(missing))
