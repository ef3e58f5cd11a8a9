"""
Delhivery courier adapter.

Maps Delhivery's wire schema (``Waybill``, ``CurrentStatus``, ``ScanDetail`` ...)
onto the records below so that callers never depend on the courier's field
names. Creation requires the form-encoded ``format=json&data=<json>`` body and
a pickup location that exactly matches a warehouse registered under
``client_name``; a mismatch is reported as a configuration error.
"""
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import requests

from ..config import DelhiverySettings, PickupLocation
from .errors import (
    ConfigurationError,
    NotFoundError,
    RemoteRequestError,
    StorefrontError,
    TransientRemoteError,
)


logger = logging.getLogger(__name__)

ENDPOINTS = {
    "create_package": "/api/cmu/create.json",
    "track_package": "/api/v1/packages/json/",
    "cancel_package": "/api/p/edit",
}

PAYMENT_MODES = {"Pre-paid", "COD"}

# Remarks Delhivery returns when client name / warehouse do not line up.
_CONFIGURATION_MARKERS = (
    "clientwarehouse matching query does not exist",
    "client-warehouse",
    "client matching query does not exist",
    "invalid client",
    "login or api key",
    "authentication credentials",
)


@dataclass
class ShipmentRequest:
    name: str
    add: str
    city: str
    state: str
    country: str
    pin: str
    phone: str
    order: str
    products_desc: str
    weight: str
    payment_mode: str = "Pre-paid"
    collectable_amount: Optional[str] = None
    email: Optional[str] = None

    def to_wire(self) -> Dict[str, str]:
        if self.payment_mode not in PAYMENT_MODES:
            raise ValueError(f"payment_mode must be one of {sorted(PAYMENT_MODES)}")
        if self.payment_mode == "COD" and not self.collectable_amount:
            raise ValueError("collectable_amount required for COD shipments")
        data = {k: v for k, v in asdict(self).items() if v is not None}
        if self.payment_mode != "COD":
            data.pop("collectable_amount", None)
        return data


@dataclass
class ShipmentResult:
    success: bool
    waybill: Optional[str] = None
    reference: Optional[str] = None
    serviceable: Optional[bool] = None
    status: Optional[str] = None
    payment_mode: Optional[str] = None
    cod_amount: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TrackingScan:
    status: str
    status_type: str
    location: str
    time: str
    instruction: str = ""


@dataclass
class TrackingRecord:
    waybill: str
    status: str
    status_type: str
    location: str
    updated_at: str
    expected_delivery_date: Optional[str] = None
    delivered_at: Optional[str] = None
    origin: Optional[str] = None
    destination: Optional[str] = None
    payment_mode: Optional[str] = None
    reference: Optional[str] = None
    weight: Optional[str] = None
    cod_amount: Optional[str] = None
    scans: List[TrackingScan] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CancelResult:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _is_configuration_remark(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in _CONFIGURATION_MARKERS)


def _as_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _remarks(value: Any) -> str:
    if isinstance(value, list):
        return "; ".join(str(v) for v in value if v)
    return str(value or "")


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _scan_entries(scans: Any) -> List[Dict[str, Any]]:
    # nested shape: [{"ScanDetail": {...}}]; flat shape: {"ScanDetails": [{...}]}
    if isinstance(scans, dict):
        scans = scans.get("ScanDetails") or scans.get("ScanDetail") or []
    if not isinstance(scans, list):
        return []
    entries = []
    for entry in scans:
        if not isinstance(entry, dict):
            continue
        detail = entry.get("ScanDetail")
        entries.append(detail if isinstance(detail, dict) else entry)
    return entries


def _tracking_record(raw: Dict[str, Any], waybill: str) -> TrackingRecord:
    """Normalize either tracking payload shape Delhivery returns."""
    status = raw.get("Status") if isinstance(raw.get("Status"), dict) else {}
    scans = [
        TrackingScan(
            status=_first(detail, "Scan", "ScanStatus") or "",
            status_type=_first(detail, "ScanType") or "",
            location=_first(detail, "ScannedLocation", "ScanLocation") or "",
            time=_first(detail, "ScanDateTime") or "",
            instruction=_first(detail, "Instructions", "Instruction") or "",
        )
        for detail in _scan_entries(raw.get("Scans"))
    ]
    cod_amount = _first(raw, "CODAmount", "CodAmount")
    weight = _first(raw, "Weight", "ChargedWeight")
    return TrackingRecord(
        waybill=_first(raw, "AWB", "Waybill") or waybill,
        status=_first(status, "Status") or _first(raw, "CurrentStatus") or "",
        status_type=_first(status, "StatusType") or _first(raw, "CurrentStatusType") or "",
        location=_first(status, "StatusLocation") or _first(raw, "CurrentStatusLocation") or "",
        updated_at=_first(status, "StatusDateTime") or _first(raw, "CurrentStatusTime") or "",
        expected_delivery_date=_first(raw, "ExpectedDeliveryDate"),
        delivered_at=_first(raw, "DeliveryDate", "DeliveredAt"),
        origin=_first(raw, "Origin"),
        destination=_first(raw, "Destination"),
        payment_mode=_first(raw, "OrderType", "PaymentMode"),
        reference=_first(raw, "ReferenceNo"),
        weight=str(weight) if weight is not None else None,
        cod_amount=str(cod_amount) if cod_amount is not None else None,
        scans=scans,
    )


class DelhiveryCourier:
    """Delhivery REST client returning normalized records."""

    def __init__(
        self,
        api_key: str,
        client_name: str,
        pickup: PickupLocation,
        *,
        base_url: str = "https://track.delhivery.com",
        timeout: float = 30.0,
        track_retries: int = 3,
        retry_backoff: float = 0.5,
        http: Optional[requests.Session] = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError("Delhivery API key is required")
        if not client_name:
            raise ConfigurationError("Delhivery client name is required")
        missing = pickup.missing()
        if missing:
            raise ConfigurationError("incomplete pickup location: " + ", ".join(missing))
        self._api_key = api_key
        self.client_name = client_name
        self.pickup = pickup
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.track_retries = max(1, track_retries)
        self.retry_backoff = retry_backoff
        self._http = http or requests.Session()

    @classmethod
    def from_config(cls, settings: DelhiverySettings, http: Optional[requests.Session] = None) -> "DelhiveryCourier":
        missing = settings.missing()
        if missing:
            raise ConfigurationError("missing configuration: " + ", ".join(missing))
        return cls(
            settings.api_key,
            settings.client_name,
            settings.pickup,
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            http=http,
        )

    def _headers(self, content_type: str = "application/json") -> Dict[str, str]:
        return {
            "Authorization": f"Token {self._api_key}",
            "Content-Type": content_type,
            "Accept": "application/json",
        }

    def _request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        try:
            response = self._http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as exc:
            logger.warning("Delhivery timeout on %s %s", method, endpoint)
            raise TransientRemoteError(f"Delhivery request timed out after {self.timeout}s") from exc
        except requests.exceptions.ConnectionError as exc:
            logger.warning("Delhivery connection error on %s %s: %s", method, endpoint, exc)
            raise TransientRemoteError(f"Delhivery unreachable: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            logger.warning("Delhivery request failed on %s %s: %s", method, endpoint, exc)
            raise TransientRemoteError(f"Delhivery request failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise ConfigurationError(
                "Delhivery rejected the API token", status_code=response.status_code
            )
        if response.status_code >= 500:
            raise TransientRemoteError(
                f"Delhivery server error: HTTP {response.status_code}", status_code=response.status_code
            )
        if response.status_code == 404:
            raise NotFoundError("Delhivery resource not found", status_code=404)
        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteRequestError(
                f"Invalid response format from Delhivery (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from exc
        if response.status_code >= 400:
            remark = _remarks(body.get("rmk") or body.get("error") or body.get("detail")) if isinstance(body, dict) else ""
            if _is_configuration_remark(remark):
                raise ConfigurationError(f"Delhivery configuration error: {remark}", status_code=response.status_code)
            raise RemoteRequestError(
                f"Delhivery API Error: {remark or response.status_code}", status_code=response.status_code
            )
        return body if isinstance(body, dict) else {"data": body}

    def create_shipment(self, request: ShipmentRequest) -> ShipmentResult:
        """Create one package; failures come back as ``success=False`` with an ``error_kind``."""
        try:
            shipment = request.to_wire()
        except ValueError as exc:
            return ShipmentResult(success=False, error=str(exc), error_kind="rejected")

        payload = {
            "pickup_location": self.pickup.to_dict(),
            "shipments": [shipment],
        }
        form = {
            "format": "json",
            "client": self.client_name,
            "data": json.dumps(payload, ensure_ascii=False),
        }
        try:
            response = self._request(
                "POST",
                ENDPOINTS["create_package"],
                data=form,
                headers=self._headers("application/x-www-form-urlencoded"),
            )
        except StorefrontError as exc:
            logger.error("Error creating Delhivery shipment for %s: %s", request.order, exc)
            return ShipmentResult(success=False, error=exc.message, error_kind=exc.kind)

        packages = response.get("packages") or []
        if not packages:
            remark = _remarks(response.get("rmk") or response.get("error"))
            kind = "configuration" if _is_configuration_remark(remark) else "rejected"
            return ShipmentResult(
                success=False,
                error=remark or "Invalid response format from Delhivery",
                error_kind=kind,
            )

        pkg = packages[0]
        remark = _remarks(pkg.get("remarks"))
        waybill = pkg.get("waybill") or None
        status = pkg.get("status")
        serviceable = _as_bool(pkg.get("serviceable"))
        ok = bool(waybill) and str(status or "").lower() == "success"
        result = ShipmentResult(
            success=ok,
            waybill=waybill,
            reference=pkg.get("refnum"),
            serviceable=serviceable,
            status=status,
            payment_mode=pkg.get("payment"),
            cod_amount=str(pkg.get("cod_amount")) if pkg.get("cod_amount") is not None else None,
            message=remark or None,
        )
        if not ok:
            result.error = remark or f"Delhivery package status: {status}"
            result.error_kind = "configuration" if _is_configuration_remark(remark) else "rejected"
        return result

    def track_shipment(self, waybill: str) -> Optional[TrackingRecord]:
        """Return the tracking record, or ``None`` when the courier has no such waybill.

        Tracking is a read, so transient failures are retried with
        exponential backoff before ``TransientRemoteError`` propagates.
        """
        if not waybill:
            raise ValueError("waybill required")
        attempt = 0
        while True:
            attempt += 1
            try:
                response = self._request(
                    "GET",
                    ENDPOINTS["track_package"],
                    params={"waybill": waybill},
                    headers=self._headers(),
                )
                break
            except NotFoundError:
                return None
            except TransientRemoteError:
                if attempt >= self.track_retries:
                    raise
                time.sleep(self.retry_backoff * (2 ** (attempt - 1)))

        shipments = response.get("ShipmentData") or []
        if not shipments or not isinstance(shipments[0], dict):
            return None
        return _tracking_record(shipments[0].get("Shipment") or shipments[0], waybill)

    def cancel_shipment(self, waybill: str, reason: str = "Order cancelled by customer") -> CancelResult:
        if not waybill:
            raise ValueError("waybill required")
        try:
            response = self._request(
                "POST",
                ENDPOINTS["cancel_package"],
                json={"waybill": waybill, "cancellation": "true", "cancellation_reason": reason},
                headers=self._headers(),
            )
        except StorefrontError as exc:
            logger.error("Error cancelling Delhivery shipment %s: %s", waybill, exc)
            return CancelResult(success=False, error=exc.message, error_kind=exc.kind)

        if _as_bool(response.get("status")) or _as_bool(response.get("success")):
            return CancelResult(success=True, message=_remarks(response.get("remark")) or "Shipment cancelled successfully")
        return CancelResult(
            success=False,
            error=_remarks(response.get("remark") or response.get("error")) or "Failed to cancel shipment",
            error_kind="rejected",
        )
