"""
Route tests for the tracking service.

The app's lifespan is not run here: the session dependency is pointed at the
test database and no broker connection is made.
"""
from datetime import datetime, timedelta
from uuid import uuid4

import jwt
import pytest
from httpx import ASGITransport, AsyncClient

from services.tracking_service import app as tracking
from supplychain_shared.auth import Role


def auth_headers(role: Role, user_id: str = None, name: str = None):
    claims = {"sub": user_id or f"{role.value}-1", "role": role.value}
    if name:
        claims["name"] = name
    token = jwt.encode(claims, tracking.settings.jwt_secret_key, algorithm=tracking.settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client(database):
    async def override_get_session():
        async for session in database.get_session():
            yield session

    tracking.app.dependency_overrides[tracking.get_session] = override_get_session
    async with AsyncClient(transport=ASGITransport(app=tracking.app), base_url="http://test") as client:
        yield client
    tracking.app.dependency_overrides.clear()


async def create_product(client, **overrides):
    payload = {
        "name": "Hex Bolt M12",
        "current_location": "Pune Plant",
        "category": "Fasteners",
        "specifications": {"material": "Stainless Steel", "grade": "A2-70"},
    }
    payload.update(overrides)
    response = await client.post("/products", json=payload, headers=auth_headers(Role.MANUFACTURER))
    assert response.status_code == 201
    return response.json()


class TestAuthentication:
    """Bearer token handling"""

    @pytest.mark.asyncio
    async def test_health_is_public(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "tracking-service"}

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get("/products")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token(self, client):
        response = await client.get("/products", headers={"Authorization": "Bearer nonsense"})
        assert response.status_code == 401


class TestProductRoutes:
    """Product endpoints"""

    @pytest.mark.asyncio
    async def test_create_product(self, client):
        product = await create_product(client)

        assert product["status"] == "manufactured"
        assert product["tracking_number"].startswith("TRK")
        assert len(product["timeline"]) == 1
        assert product["timeline"][0]["title"] == "Product Manufactured"
        assert product["manufacturer"] == {"id": "manufacturer-1", "name": "manufacturer-1"}

    @pytest.mark.asyncio
    async def test_customer_cannot_create(self, client):
        response = await client.post(
            "/products",
            json={"name": "Gear", "current_location": "Plant"},
            headers=auth_headers(Role.CUSTOMER),
        )

        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_get_and_track(self, client):
        product = await create_product(client)
        headers = auth_headers(Role.CUSTOMER)

        by_id = await client.get(f"/products/{product['id']}", headers=headers)
        by_tracking = await client.get(f"/products/track/{product['tracking_number']}", headers=headers)

        assert by_id.status_code == 200
        assert by_tracking.json()["id"] == product["id"]

    @pytest.mark.asyncio
    async def test_unknown_product(self, client):
        response = await client.get(f"/products/{uuid4()}", headers=auth_headers(Role.ADMIN))

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, client):
        product = await create_product(client)
        await create_product(client, name="Washer")
        await client.patch(
            f"/products/{product['id']}/status",
            json={"status": "in-supply", "location": "Warehouse"},
            headers=auth_headers(Role.SUPPLIER),
        )

        response = await client.get("/products?status=in-supply", headers=auth_headers(Role.ADMIN))

        assert response.status_code == 200
        assert [p["id"] for p in response.json()] == [product["id"]]

    @pytest.mark.asyncio
    async def test_list_rejects_unknown_status(self, client):
        response = await client.get("/products?status=shipped", headers=auth_headers(Role.ADMIN))
        assert response.status_code == 422


class TestStatusRoutes:
    """Lifecycle transitions over HTTP"""

    @pytest.mark.asyncio
    async def test_invalid_transition_is_conflict(self, client):
        product = await create_product(client)

        response = await client.patch(
            f"/products/{product['id']}/status",
            json={"status": "in-distribution", "location": "Hub"},
            headers=auth_headers(Role.SUPPLIER),
        )

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["code"] == "INVALID_TRANSITION"
        assert detail["from_status"] == "manufactured"
        assert detail["to_status"] == "in-distribution"

    @pytest.mark.asyncio
    async def test_customer_transition_forbidden(self, client):
        product = await create_product(client)

        response = await client.patch(
            f"/products/{product['id']}/status",
            json={"status": "in-supply", "location": "Hub"},
            headers=auth_headers(Role.CUSTOMER),
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_missing_location_is_validation_error(self, client):
        product = await create_product(client)

        response = await client.patch(
            f"/products/{product['id']}/status",
            json={"status": "in-supply"},
            headers=auth_headers(Role.SUPPLIER),
        )

        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "location"

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, client):
        product = await create_product(client)
        product_id = product["id"]

        checked = await client.post(
            f"/products/{product_id}/quality-check",
            json={"passed": True, "notes": "All good", "check_details": {"visual_inspection": "clean"}},
            headers=auth_headers(Role.QUALITY_INSPECTOR, name="Ravi"),
        )
        assert checked.status_code == 200
        assert checked.json()["status"] == "in-supply"
        assert checked.json()["quality_check"]["performed_by"] == {"id": "quality-inspector-1", "name": "Ravi"}

        for target, location in [("in-distribution", "Delhi Hub"), ("delivered", "Customer Site")]:
            response = await client.patch(
                f"/products/{product_id}/status",
                json={"status": target, "location": location},
                headers=auth_headers(Role.DISTRIBUTOR),
            )
            assert response.status_code == 200

        timeline = await client.get(f"/products/{product_id}/timeline", headers=auth_headers(Role.CUSTOMER))
        assert [e["status"] for e in timeline.json()] == [
            "manufactured", "in-supply", "in-distribution", "delivered"
        ]
        assert timeline.json()[-1]["location"] == "Customer Site"

    @pytest.mark.asyncio
    async def test_quality_check_from_wrong_state(self, client):
        product = await create_product(client)
        await client.patch(
            f"/products/{product['id']}/status",
            json={"status": "in-supply", "location": "Warehouse"},
            headers=auth_headers(Role.SUPPLIER),
        )

        response = await client.post(
            f"/products/{product['id']}/quality-check",
            json={"passed": True},
            headers=auth_headers(Role.QUALITY_INSPECTOR),
        )

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "INVALID_STATE"

    @pytest.mark.asyncio
    async def test_auto_quality_check_follows_setting(self, client, monkeypatch):
        product = await create_product(client)
        url = f"/products/{product['id']}/auto-quality-check"
        headers = auth_headers(Role.QUALITY_INSPECTOR)

        assert (await client.post(url, headers=headers)).status_code == 403

        monkeypatch.setattr(tracking.settings, "auto_quality_check_enabled", True)
        response = await client.post(url, headers=headers)

        assert response.status_code == 200
        assert response.json()["quality_check"]["automated"] is True


class TestShipmentRoutes:
    """Shipment endpoints"""

    @pytest.mark.asyncio
    async def test_shipment_flow(self, client):
        product = await create_product(client)
        supplier = auth_headers(Role.SUPPLIER)

        created = await client.post(
            "/shipments",
            json={
                "product_id": product["id"],
                "to_user_id": "distributor-1",
                "expected_delivery_date": (datetime.utcnow() + timedelta(days=3)).isoformat(),
                "origin": "Pune Plant",
            },
            headers=supplier,
        )
        assert created.status_code == 201
        shipment_id = created.json()["id"]
        assert created.json()["created_at"] is not None
        assert created.json()["updated_at"] is not None

        delayed = await client.post(
            f"/shipments/{shipment_id}/delays", json={"reason": "Customs hold"}, headers=supplier
        )
        assert delayed.json()["status"] == "delayed"

        resolved = await client.post(f"/shipments/{shipment_id}/delays/0/resolve", headers=supplier)
        assert resolved.json()["delays"][0]["resolved_at"] is not None

        again = await client.post(f"/shipments/{shipment_id}/delays/0/resolve", headers=supplier)
        assert again.status_code == 409

        delivered = await client.put(
            f"/shipments/{shipment_id}/status",
            json={"status": "delivered", "location": "Delhi DC"},
            headers=auth_headers(Role.DISTRIBUTOR),
        )
        assert delivered.status_code == 200
        body = delivered.json()
        assert body["delivered_at"] is not None
        assert [h["status"] for h in body["location_history"]] == ["pending", "delayed", "delivered"]

    @pytest.mark.asyncio
    async def test_outsider_cannot_update(self, client):
        product = await create_product(client)
        created = await client.post(
            "/shipments",
            json={
                "product_id": product["id"],
                "to_user_id": "distributor-1",
                "expected_delivery_date": datetime.utcnow().isoformat(),
            },
            headers=auth_headers(Role.SUPPLIER),
        )

        response = await client.put(
            f"/shipments/{created.json()['id']}/status",
            json={"status": "in-transit"},
            headers=auth_headers(Role.DISTRIBUTOR, user_id="distributor-7"),
        )

        assert response.status_code == 403


class TestTransactionRoutes:
    """Transaction endpoints"""

    @pytest.mark.asyncio
    async def test_transaction_flow(self, client):
        product = await create_product(client)
        supplier = auth_headers(Role.SUPPLIER)

        created = await client.post(
            "/transactions",
            json={"product_id": product["id"], "to_user_id": "distributor-1", "quantity": 50},
            headers=supplier,
        )
        assert created.status_code == 201
        transaction_id = created.json()["id"]

        updated = await client.put(
            f"/transactions/{transaction_id}/status",
            json={"status": "in-transit", "note": "Loaded on truck"},
            headers=supplier,
        )
        assert updated.status_code == 200
        assert [n["status"] for n in updated.json()["notes"]] == ["pending", "in-transit"]

        listed = await client.get(f"/transactions/product/{product['id']}", headers=supplier)
        assert [t["id"] for t in listed.json()] == [transaction_id]

    @pytest.mark.asyncio
    async def test_invalid_status(self, client):
        product = await create_product(client)
        created = await client.post(
            "/transactions",
            json={"product_id": product["id"], "to_user_id": "distributor-1"},
            headers=auth_headers(Role.SUPPLIER),
        )

        response = await client.put(
            f"/transactions/{created.json()['id']}/status",
            json={"status": "refunded"},
            headers=auth_headers(Role.SUPPLIER),
        )

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"


class TestAdminRoutes:
    """Operational endpoints"""

    @pytest.mark.asyncio
    async def test_outbox_retry_requires_admin(self, client):
        response = await client.post("/admin/outbox/retry", headers=auth_headers(Role.SUPPLIER))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_outbox_retry_without_publisher(self, client):
        response = await client.post("/admin/outbox/retry", headers=auth_headers(Role.ADMIN))
        assert response.status_code == 503
