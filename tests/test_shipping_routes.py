"""
API tests for the shipping routes, with the carrier mocked at the HTTP
transport and orders held in memory.
"""
import json
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio

from shipping_bridge.api.deps import get_config_provider, get_shipping_service, get_webhook_ingestor
from shipping_bridge.main import app
from shipping_bridge.schemas.shipping import ShipmentRecord
from shipping_bridge.services.encryption import encrypt_secret
from shipping_bridge.services.shipping_service import ShippingService
from shipping_bridge.services.webhook_service import WebhookIngestor, compute_signature

from conftest import make_order, make_settings

SECRET = "whsec_routes_test"

CREATED_SHIPMENT = {
    "id": "SHP-2001",
    "tracking_number": "TRK-2001",
    "tracking_url": "https://track.test/TRK-2001",
    "label_url": "https://labels.test/SHP-2001.pdf",
    "total": 13.4,
}


class ParkedFailures:
    def __init__(self):
        self.entries = []

    async def record(self, event, data, error):
        self.entries.append((event, data))

    async def replay(self, apply, limit, max_retries):
        return len(self.entries), 0


@pytest.fixture
def failures():
    return ParkedFailures()


@pytest_asyncio.fixture
async def api(stallion_client, config_provider, test_settings, order_repo, failures):
    webhook_settings = make_settings(STALLION_WEBHOOK_SECRET=SECRET)
    app.dependency_overrides[get_shipping_service] = lambda: ShippingService(
        None, stallion_client, config=test_settings, orders=order_repo
    )
    app.dependency_overrides[get_webhook_ingestor] = lambda: WebhookIngestor(
        order_repo, config=webhook_settings, failures=failures
    )
    app.dependency_overrides[get_config_provider] = lambda: config_provider

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def signed(payload):
    raw = json.dumps(payload).encode()
    return raw, {"X-Stallion-Signature": compute_signature(SECRET, raw), "Content-Type": "application/json"}


class TestRatesRoutes:

    @pytest.mark.asyncio
    async def test_rates(self, api, carrier):
        carrier.on("POST", "rates", json_body={"rates": [
            {"postage_type": "Canada Post Regular", "total": "9.99", "delivery_days": 4},
        ]})

        response = await api.post("/api/shipping/rates", json={
            "destination": {"country": "IN", "postalCode": "600001"},
            "parcels": [{"weight": 0.5, "length": 10, "width": 10, "height": 5, "quantity": 1}],
        })

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["rates"][0]["service_code"] == "Canada Post Regular"
        assert data["rates"][0]["total"] == "9.99"

    @pytest.mark.asyncio
    async def test_rates_missing_parcels(self, api, carrier):
        response = await api.post("/api/shipping/rates", json={"destination": {"country": "CA"}})

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["code"] == "VALIDATION_ERROR"
        assert carrier.requests == []

    @pytest.mark.asyncio
    async def test_carrier_auth_failure(self, api, carrier):
        carrier.on("POST", "rates", status=401, json_body={"message": "Unauthenticated."})

        response = await api.post("/api/shipping/rates", json={
            "destination": {"country": "CA"}, "parcels": [{"weight": 1}],
        })

        assert response.status_code == 400
        assert response.json()["code"] == "CARRIER_UNAUTHENTICATED"

    @pytest.mark.asyncio
    async def test_carrier_unreachable(self, api, carrier):
        carrier.on("POST", "rates", raises=httpx.ConnectError("refused"))

        response = await api.post("/api/shipping/rates", json={
            "destination": {"country": "CA"}, "parcels": [{"weight": 1}],
        })

        assert response.status_code == 503
        assert response.json()["retryable"] is True

    @pytest.mark.asyncio
    async def test_postage_types(self, api, carrier):
        carrier.on("GET", "postage-types", json_body={"data": ["Canada Post Regular"]})

        response = await api.get("/api/shipping/postage-types")

        assert response.status_code == 200
        assert response.json()["postageTypes"] == ["Canada Post Regular"]


class TestShipmentRoutes:

    @pytest.mark.asyncio
    async def test_create_from_order(self, api, carrier, order_repo):
        carrier.on("POST", "shipments", json_body=CREATED_SHIPMENT)

        response = await api.post("/api/shipping/orders/1/shipment")

        assert response.status_code == 200
        data = response.json()
        assert data["shipment"]["shipmentId"] == "SHP-2001"
        assert data["shipment"]["trackingId"] == "TRK-2001"
        assert data["order"] == {"id": 1, "invoice": "INV-0001", "status": "Processing"}
        assert order_repo.orders[1].shipment_id == "SHP-2001"

    @pytest.mark.asyncio
    async def test_create_from_order_twice(self, api, carrier):
        carrier.on("POST", "shipments", json_body=CREATED_SHIPMENT)

        await api.post("/api/shipping/orders/1/shipment")
        response = await api.post("/api/shipping/orders/1/shipment", json={})

        assert response.status_code == 400
        data = response.json()
        assert data["code"] == "SHIPMENT_EXISTS"
        assert data["shipment"]["shipmentId"] == "SHP-2001"
        assert len([r for r in carrier.requests if r.method == "POST"]) == 1

    @pytest.mark.asyncio
    async def test_create_unknown_order(self, api, carrier):
        response = await api.post("/api/shipping/orders/77/shipment")

        assert response.status_code == 404
        assert response.json()["code"] == "ORDER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_explicit_create(self, api, carrier):
        carrier.on("POST", "shipments", json_body=CREATED_SHIPMENT)

        response = await api.post("/api/shipping/create", json={
            "orderId": 1,
            "service": "Canada Post Expedited",
            "destination": {"name": "Bob", "address1": "1 Main St", "city": "Ottawa",
                            "province": "ON", "postalCode": "K1P 1J1", "country": "CA"},
            "parcels": [{"weight": 1.2}],
        })

        assert response.status_code == 201
        shipment = response.json()["shipment"]
        assert shipment["service"] == "Canada Post Expedited"
        assert shipment["cost"] == "13.4"

    @pytest.mark.asyncio
    async def test_explicit_create_requires_fields(self, api, carrier):
        response = await api.post("/api/shipping/create", json={"service": "Canada Post Regular"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert carrier.requests == []

    @pytest.mark.asyncio
    async def test_tracking_cached_on_carrier_failure(self, api, carrier, order_repo):
        order_repo.add(make_order(
            5,
            shipment=ShipmentRecord(shipment_id="SHP-5", tracking_id="TRK-5", status="in_transit").to_stored(),
            shipment_id="SHP-5",
            shipment_tracking_id="TRK-5",
        ))
        carrier.on("GET", "shipments/SHP-5", status=500, json_body={"message": "down"})

        response = await api.get("/api/shipping/orders/5/tracking")

        assert response.status_code == 200
        data = response.json()
        assert data["source"] == "cached"
        assert data["tracking"]["trackingNumber"] == "TRK-5"
        assert data["tracking"]["status"] == "in_transit"

    @pytest.mark.asyncio
    async def test_track_passthrough(self, api, carrier):
        carrier.on("GET", "shipments/TRK-9", json_body={"status": "delivered"})

        response = await api.get("/api/shipping/track/TRK-9")

        assert response.status_code == 200
        assert response.json()["tracking"] == {"status": "delivered"}

    @pytest.mark.asyncio
    async def test_cancel_without_shipment(self, api, carrier):
        response = await api.delete("/api/shipping/cancel/1")

        assert response.status_code == 404
        assert response.json()["code"] == "SHIPMENT_NOT_FOUND"
        assert carrier.requests == []

    @pytest.mark.asyncio
    async def test_cancel(self, api, carrier, order_repo):
        carrier.on("POST", "shipments", json_body=CREATED_SHIPMENT)
        carrier.on("DELETE", "shipments/SHP-2001", json_body={"success": True})
        await api.post("/api/shipping/orders/1/shipment")

        response = await api.delete("/api/shipping/cancel/1")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert order_repo.orders[1].shipment["status"] == "cancelled"


class TestWebhookRoutes:

    @pytest.mark.asyncio
    async def test_signed_webhook_applied(self, api, order_repo):
        order_repo.add(make_order(
            3,
            shipment=ShipmentRecord(shipment_id="SHP-3", tracking_id="TRK-3").to_stored(),
            shipment_id="SHP-3",
            shipment_tracking_id="TRK-3",
        ))
        raw, headers = signed({"event": "shipment.delivered", "data": {"tracking_number": "TRK-3"}})

        response = await api.post("/api/shipping/webhook", content=raw, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"success": True, "received": True, "outcome": "applied"}
        assert order_repo.orders[3].status == "Delivered"

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, api, order_repo):
        raw, _ = signed({"event": "shipment.delivered", "data": {"id": "SHP-1"}})

        response = await api.post(
            "/api/shipping/webhook", content=raw, headers={"Stallion-Signature": "sha256=00ff"}
        )

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_WEBHOOK_SIGNATURE"

    @pytest.mark.asyncio
    async def test_processing_failure_still_200(self, api, order_repo, failures):
        order_repo.add(make_order(
            4,
            shipment=ShipmentRecord(shipment_id="SHP-4").to_stored(),
            shipment_id="SHP-4",
        ))
        order_repo.fail_writes = True
        raw, headers = signed({"event": "shipment.in_transit", "data": {"id": "SHP-4"}})

        response = await api.post("/api/shipping/webhook", content=raw, headers=headers)

        assert response.status_code == 200
        assert response.json()["outcome"] == "failed"
        assert failures.entries == [("shipment.in_transit", {"id": "SHP-4"})]

    @pytest.mark.asyncio
    async def test_malformed_json(self, api):
        response = await api.post(
            "/api/shipping/webhook", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_signature_checked_before_parsing(self, api, failures):
        response = await api.post(
            "/api/shipping/webhook",
            content=b"{not json",
            headers={"X-Stallion-Signature": "sha256=00ff", "Content-Type": "application/json"},
        )

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_WEBHOOK_SIGNATURE"
        assert failures.entries == []

    @pytest.mark.asyncio
    async def test_replay(self, api, failures):
        failures.entries.append(("shipment.delivered", {"id": "SHP-1"}))

        response = await api.post("/api/shipping/webhook/replay?limit=10")

        assert response.status_code == 200
        assert response.json() == {"success": True, "replayed": 1, "resolved": 0}


class TestDebugRoute:

    @pytest.mark.asyncio
    async def test_debug_masks_key(self, api):
        response = await api.get("/api/shipping/debug")

        assert response.status_code == 200
        config = response.json()["config"]
        assert config["api_key"] == "*****1234"
        assert "sk_sandbox_abcd1234" not in response.text

    @pytest.mark.asyncio
    async def test_refresh_rereads_carrier_settings(self, api, config_provider):
        await api.get("/api/shipping/debug")

        async def saved_record():
            return SimpleNamespace(
                is_active=True,
                sandbox_base_url=None,
                production_base_url=None,
                sandbox_api_key_encrypted=encrypt_secret("sk_saved_sandbox_5678"),
                production_api_key_encrypted=None,
            )

        config_provider._load_record = saved_record

        cached = await api.get("/api/shipping/debug")
        assert cached.json()["config"]["source"] == "static"

        refreshed = await api.get("/api/shipping/debug?refresh=true")
        config = refreshed.json()["config"]
        assert config["source"] == "settings"
        assert config["api_key"] == "*****5678"
