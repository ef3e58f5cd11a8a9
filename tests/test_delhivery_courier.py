import json
from unittest.mock import patch

import pytest
import requests

from storefront.config import DelhiverySettings, PickupLocation
from storefront.services.delhivery_courier import DelhiveryCourier, ShipmentRequest
from storefront.services.errors import ConfigurationError, TransientRemoteError

from conftest import make_response


def _request(**overrides):
    data = dict(
        name="Asha Rao",
        add="12 MG Road, Indiranagar",
        city="Bengaluru",
        state="Karnataka",
        country="India",
        pin="560038",
        phone="9876543210",
        order="ORD-20260101-ABCDEFGH",
        products_desc="Cotton Kurta x 3",
        weight="1500",
    )
    data.update(overrides)
    return ShipmentRequest(**data)


@pytest.fixture
def delhivery(http, pickup):
    return DelhiveryCourier("dl-token", "ACME SURFACE", pickup, http=http, retry_backoff=0)


def test_incomplete_setup_is_configuration_error(http, pickup):
    with pytest.raises(ConfigurationError):
        DelhiveryCourier("", "ACME", pickup, http=http)
    with pytest.raises(ConfigurationError):
        DelhiveryCourier("dl-token", "ACME", PickupLocation(name="W", address="", city="", state="", pin=""), http=http)
    settings = DelhiverySettings(api_key="dl-token", client_name="", pickup=pickup)
    with pytest.raises(ConfigurationError) as exc:
        DelhiveryCourier.from_config(settings, http=http)
    assert "DELHIVERY_CLIENT_NAME" in exc.value.message


def test_create_shipment_sends_form_encoded_payload(delhivery, http, pickup):
    http.request.return_value = make_response(
        200,
        {
            "success": True,
            "packages": [
                {"waybill": "WB1001", "status": "Success", "serviceable": True, "refnum": "ORD-20260101-ABCDEFGH",
                 "payment": "Pre-paid", "remarks": []}
            ],
        },
    )
    result = delhivery.create_shipment(_request())

    assert result.success is True
    assert result.waybill == "WB1001"
    assert result.serviceable is True
    method, url = http.request.call_args[0]
    kwargs = http.request.call_args[1]
    assert method == "POST"
    assert url == "https://track.delhivery.com/api/cmu/create.json"
    assert kwargs["headers"]["Content-Type"] == "application/x-www-form-urlencoded"
    assert kwargs["headers"]["Authorization"] == "Token dl-token"
    form = kwargs["data"]
    assert form["format"] == "json"
    assert form["client"] == "ACME SURFACE"
    data = json.loads(form["data"])
    assert data["pickup_location"] == pickup.to_dict()
    assert data["shipments"][0]["order"] == "ORD-20260101-ABCDEFGH"
    assert "collectable_amount" not in data["shipments"][0]


def test_warehouse_mismatch_is_configuration_error(delhivery, http):
    http.request.return_value = make_response(
        200,
        {"success": False, "packages": [{"waybill": "", "status": "Fail",
                                          "remarks": ["ClientWarehouse matching query does not exist."]}]},
    )
    result = delhivery.create_shipment(_request())
    assert result.success is False
    assert result.error_kind == "configuration"


def test_unserviceable_pin_is_rejected(delhivery, http):
    http.request.return_value = make_response(
        200,
        {"packages": [{"waybill": "", "status": "Fail", "serviceable": False, "remarks": ["Non serviceable pincode"]}]},
    )
    result = delhivery.create_shipment(_request())
    assert result.success is False
    assert result.error_kind == "rejected"
    assert result.serviceable is False
    assert "Non serviceable" in result.error


def test_create_shipment_timeout_is_reported_not_raised(delhivery, http):
    http.request.side_effect = requests.exceptions.Timeout()
    result = delhivery.create_shipment(_request())
    assert result.success is False
    assert result.error_kind == "transient"


def test_non_json_response_is_rejected(delhivery, http):
    http.request.return_value = make_response(200, json_error=True)
    result = delhivery.create_shipment(_request())
    assert result.success is False
    assert result.error_kind == "rejected"


def test_cod_requires_collectable_amount(delhivery, http):
    result = delhivery.create_shipment(_request(payment_mode="COD"))
    assert result.success is False
    assert result.error_kind == "rejected"
    http.request.assert_not_called()


def test_track_shipment_normalizes_fields(delhivery, http):
    http.request.return_value = make_response(
        200,
        {
            "ShipmentData": [
                {
                    "Shipment": {
                        "AWB": "WB1001",
                        "Status": {
                            "Status": "In Transit",
                            "StatusType": "UD",
                            "StatusLocation": "Bengaluru_Hub",
                            "StatusDateTime": "2026-01-02T10:00:00",
                        },
                        "ExpectedDeliveryDate": "2026-01-05T00:00:00",
                        "Origin": "Bengaluru",
                        "Destination": "Mysuru",
                        "OrderType": "Pre-paid",
                        "ReferenceNo": "ORD-20260101-ABCDEFGH",
                        "Scans": [
                            {"ScanDetail": {"Scan": "Manifested", "ScanType": "UD",
                                            "ScannedLocation": "Bengaluru_Hub",
                                            "ScanDateTime": "2026-01-01T18:00:00"}}
                        ],
                    }
                }
            ]
        },
    )
    record = delhivery.track_shipment("WB1001")

    assert record.status == "In Transit"
    assert record.location == "Bengaluru_Hub"
    assert record.reference == "ORD-20260101-ABCDEFGH"
    assert record.scans[0].status == "Manifested"
    assert http.request.call_args[1]["params"] == {"waybill": "WB1001"}


def test_track_unknown_waybill_returns_none(delhivery, http):
    http.request.return_value = make_response(404, {})
    assert delhivery.track_shipment("NOPE") is None

    http.request.return_value = make_response(200, {"ShipmentData": []})
    assert delhivery.track_shipment("NOPE") is None


def test_track_retries_transient_failures(delhivery, http):
    ok = make_response(200, {"ShipmentData": [{"Shipment": {"AWB": "WB1001", "Status": {"Status": "Delivered"}}}]})
    http.request.side_effect = [requests.exceptions.ConnectionError(), make_response(502, {}), ok]
    with patch("storefront.services.delhivery_courier.time.sleep") as sleep:
        record = delhivery.track_shipment("WB1001")
    assert record.status == "Delivered"
    assert http.request.call_count == 3
    assert sleep.call_count == 2


def test_track_gives_up_after_retries(delhivery, http):
    http.request.side_effect = requests.exceptions.Timeout()
    with patch("storefront.services.delhivery_courier.time.sleep"):
        with pytest.raises(TransientRemoteError):
            delhivery.track_shipment("WB1001")
    assert http.request.call_count == delhivery.track_retries


def test_cancel_shipment(delhivery, http):
    http.request.return_value = make_response(200, {"status": True, "remark": "Shipment has been cancelled"})
    result = delhivery.cancel_shipment("WB1001", reason="Customer request")
    assert result.success is True
    body = http.request.call_args[1]["json"]
    assert body == {"waybill": "WB1001", "cancellation": "true", "cancellation_reason": "Customer request"}

    http.request.return_value = make_response(401, {})
    result = delhivery.cancel_shipment("WB1001")
    assert result.success is False
    assert result.error_kind == "configuration"


def test_track_shipment_reads_flat_payload(delhivery, http):
    http.request.return_value = make_response(
        200,
        {
            "ShipmentData": [
                {
                    "Waybill": "WB1",
                    "CurrentStatus": "In Transit",
                    "CurrentStatusType": "UD",
                    "CurrentStatusLocation": "Pune_Hub",
                    "CurrentStatusTime": "2026-01-03T08:30:00",
                    "DeliveredAt": None,
                    "PaymentMode": "Pre-paid",
                    "Weight": 1.5,
                    "CODAmount": 0,
                    "Scans": {
                        "ScanDetails": [
                            {"ScanStatus": "Manifested", "ScanType": "UD", "ScanLocation": "Pune_Hub",
                             "ScanDateTime": "2026-01-02T18:00:00", "Instruction": "Shipment picked up"}
                        ]
                    },
                }
            ]
        },
    )
    record = delhivery.track_shipment("WB1")

    assert record.waybill == "WB1"
    assert record.status == "In Transit"
    assert record.status_type == "UD"
    assert record.location == "Pune_Hub"
    assert record.updated_at == "2026-01-03T08:30:00"
    assert record.payment_mode == "Pre-paid"
    assert record.weight == "1.5"
    assert record.cod_amount == "0"
    assert len(record.scans) == 1
    assert record.scans[0].status == "Manifested"
    assert record.scans[0].location == "Pune_Hub"
    assert record.scans[0].instruction == "Shipment picked up"


@pytest.mark.parametrize(
    "error",
    [requests.exceptions.ChunkedEncodingError(), requests.exceptions.TooManyRedirects()],
)
def test_other_request_failures_are_transient(delhivery, http, error):
    http.request.side_effect = error
    result = delhivery.create_shipment(_request())
    assert result.success is False
    assert result.error_kind == "transient"
