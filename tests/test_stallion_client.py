"""
Tests for the Stallion Express client: auth header, error classification,
normalization of carrier payloads.
"""
from decimal import Decimal

import httpx
import pytest

from shipping_bridge.core.exceptions import (
    CarrierAuthError,
    CarrierInvalidRequestError,
    CarrierNotConfiguredError,
    CarrierRemoteError,
    CarrierUnreachableError,
)
from shipping_bridge.services.stallion_client import (
    BAD_REQUEST_MESSAGE,
    StallionClient,
    normalize_rates,
    normalize_shipment,
    normalize_tracking,
)

from conftest import SANDBOX_KEY, make_provider, make_settings


class TestRequest:

    @pytest.mark.asyncio
    async def test_bearer_token_and_base_url(self, stallion_client, carrier):
        carrier.on("GET", "postage-types", json_body=[{"code": "Canada Post Regular"}])

        result = await stallion_client.get_postage_types()

        assert result == [{"code": "Canada Post Regular"}]
        request = carrier.requests[0]
        assert request.headers["Authorization"] == f"Bearer {SANDBOX_KEY}"
        assert str(request.url) == "https://sandbox.stallion.test/api/v4/postage-types"

    @pytest.mark.asyncio
    async def test_missing_api_key_fails_before_network(self, carrier):
        provider = make_provider(make_settings(STALLION_API_KEY_SANDBOX=""))
        client = StallionClient(provider, transport=httpx.MockTransport(carrier))

        with pytest.raises(CarrierNotConfiguredError):
            await client.get_rates({"weight": 1})
        await client.close()

        assert carrier.requests == []

    @pytest.mark.asyncio
    async def test_disabled_integration_fails_before_network(self, carrier):
        provider = make_provider(make_settings(STALLION_ENABLED=False))
        client = StallionClient(provider, transport=httpx.MockTransport(carrier))

        with pytest.raises(CarrierNotConfiguredError) as exc_info:
            await client.get_postage_types()
        await client.close()

        assert exc_info.value.status_code == 503
        assert carrier.requests == []

    @pytest.mark.asyncio
    async def test_non_json_body_is_wrapped(self, stallion_client, carrier):
        carrier.on("DELETE", "shipments/SHP-1", handler=lambda r: httpx.Response(200, text="OK"))

        result = await stallion_client.cancel_shipment("SHP-1")

        assert result == {"raw": "OK"}

    @pytest.mark.asyncio
    async def test_empty_body_is_empty_dict(self, stallion_client, carrier):
        carrier.on("DELETE", "shipments/SHP-1", handler=lambda r: httpx.Response(204))

        assert await stallion_client.cancel_shipment("SHP-1") == {}


class TestErrorClassification:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_errors(self, stallion_client, carrier, status):
        carrier.on("POST", "rates", status=status, json_body={"message": "Unauthenticated."})

        with pytest.raises(CarrierAuthError) as exc_info:
            await stallion_client.get_rates({"weight": 1})

        error = exc_info.value
        assert error.remote_status == status
        assert error.retryable is False
        assert "API key" in error.message
        assert error.details["remote"] == {"message": "Unauthenticated."}

    @pytest.mark.asyncio
    async def test_bad_request_uses_remote_message(self, stallion_client, carrier):
        carrier.on(
            "POST", "rates", status=400,
            json_body={"message": "The to address.postal code is invalid.", "errors": {"postal_code": ["bad"]}},
        )

        with pytest.raises(CarrierInvalidRequestError) as exc_info:
            await stallion_client.get_rates({"weight": 1})

        assert exc_info.value.message == "The to address.postal code is invalid."
        assert exc_info.value.details["remote"]["errors"] == {"postal_code": ["bad"]}

    @pytest.mark.asyncio
    async def test_bad_request_without_message(self, stallion_client, carrier):
        carrier.on("POST", "rates", status=400, json_body={})

        with pytest.raises(CarrierInvalidRequestError) as exc_info:
            await stallion_client.get_rates({"weight": 1})

        assert exc_info.value.message == BAD_REQUEST_MESSAGE

    @pytest.mark.asyncio
    async def test_server_error_keeps_remote_body(self, stallion_client, carrier):
        carrier.on("POST", "shipments", status=500, json_body={"message": "Label service down"})

        with pytest.raises(CarrierRemoteError) as exc_info:
            await stallion_client.create_shipment({"order_id": "ORDER-1"})

        error = exc_info.value
        assert error.remote_status == 500
        assert error.details == {"status": 500, "remote": {"message": "Label service down"}}
        assert error.to_dict()["retryable"] is False

    @pytest.mark.asyncio
    async def test_connection_error_is_unreachable(self, stallion_client, carrier):
        carrier.on("GET", "shipments/SHP-1", raises=httpx.ConnectError("connection refused"))

        with pytest.raises(CarrierUnreachableError) as exc_info:
            await stallion_client.get_shipment("SHP-1")

        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_timeout_is_unreachable(self, stallion_client, carrier):
        carrier.on("POST", "rates", raises=httpx.ReadTimeout("timed out"))

        with pytest.raises(CarrierUnreachableError):
            await stallion_client.get_rates({"weight": 1})

    @pytest.mark.asyncio
    async def test_no_internal_retry(self, stallion_client, carrier):
        carrier.on("POST", "rates", status=502, json_body={"message": "Bad gateway"})

        with pytest.raises(CarrierRemoteError):
            await stallion_client.get_rates({"weight": 1})

        assert len(carrier.requests) == 1


class TestNormalization:

    def test_rates_from_wrapped_list(self):
        rates = normalize_rates({
            "success": True,
            "rates": [
                {"postage_type": "Canada Post Expedited", "total": "14.25", "currency": "CAD", "delivery_days": 2},
            ],
        })

        assert len(rates) == 1
        assert rates[0].service_code == "Canada Post Expedited"
        assert rates[0].service_name == "Canada Post Expedited"
        assert rates[0].total == Decimal("14.25")
        assert rates[0].delivery_days == 2

    def test_rates_from_bare_list(self):
        rates = normalize_rates([{"service_code": "USPS", "rate": 9.5}])

        assert rates[0].service_code == "USPS"
        assert rates[0].total == Decimal("9.5")
        assert rates[0].currency == "CAD"
        assert rates[0].to_dict()["total"] == "9.5"

    def test_shipment_flat_fields(self):
        shipment = normalize_shipment({
            "id": 98765,
            "tracking_number": "TRK123",
            "tracking_url": "https://track.test/TRK123",
            "label_url": "https://labels.test/98765.pdf",
            "status": "created",
            "total": 12.3,
        })

        assert shipment.shipment_id == "98765"
        assert shipment.tracking_number == "TRK123"
        assert shipment.label_url == "https://labels.test/98765.pdf"
        assert shipment.cost == Decimal("12.3")

    def test_shipment_nested_fields(self):
        shipment = normalize_shipment({
            "success": True,
            "shipment": {
                "shipment_id": "SHP-55",
                "tracking": {"number": "TRK55", "url": "https://track.test/TRK55"},
                "labels": [{"url": "https://labels.test/SHP-55.pdf"}],
                "amount": "8.10",
                "currency": "USD",
            },
        })

        assert shipment.shipment_id == "SHP-55"
        assert shipment.tracking_number == "TRK55"
        assert shipment.tracking_url == "https://track.test/TRK55"
        assert shipment.label_url == "https://labels.test/SHP-55.pdf"
        assert shipment.cost == Decimal("8.10")
        assert shipment.currency == "USD"
        assert shipment.status is None

    def test_tracking_events(self):
        tracking = normalize_tracking({
            "shipment": {
                "tracking_number": "TRK1",
                "status": "in_transit",
                "events": [{"status": "picked_up"}],
            }
        })

        assert tracking.status == "in_transit"
        assert tracking.events == [{"status": "picked_up"}]
        assert tracking.tracking_url is None
