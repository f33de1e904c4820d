"""
Engine tests for product creation and status transitions.
"""
import pytest

from services.tracking_service.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from services.tracking_service.models import ProductStatus
from supplychain_shared.auth import Role
from supplychain_shared.outbox import OutboxMessage
from sqlalchemy import select
from uuid import uuid4


def assert_status_matches_timeline(product):
    assert product.timeline
    assert product.status == product.timeline[-1]["status"]


class TestCreateProduct:
    """Tests for product registration"""

    @pytest.mark.asyncio
    async def test_creation_seeds_manufactured_entry(self, product, actors):
        manufacturer = actors[Role.MANUFACTURER]

        assert product.status == ProductStatus.MANUFACTURED.value
        assert len(product.timeline) == 1
        entry = product.timeline[0]
        assert entry["status"] == "manufactured"
        assert entry["title"] == "Product Manufactured"
        assert entry["location"] == "Pune Plant"
        assert entry["handler"] == {"id": manufacturer.user_id, "name": manufacturer.display_name}
        assert product.current_owner == manufacturer.reference()
        assert product.tracking_number.startswith("TRK")
        assert product.version == 1

    @pytest.mark.asyncio
    async def test_creation_writes_outbox_event(self, product, session):
        result = await session.execute(
            select(OutboxMessage).where(OutboxMessage.aggregate_id == product.id)
        )
        messages = result.scalars().all()
        assert [m.event_type for m in messages] == ["product.created"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("role", [Role.SUPPLIER, Role.DISTRIBUTOR, Role.CUSTOMER, Role.QUALITY_INSPECTOR])
    async def test_only_manufacturer_or_admin_creates(self, engine, actors, role):
        with pytest.raises(ForbiddenError):
            await engine.create_product({"name": "Gear", "current_location": "Plant"}, actors[role])

    @pytest.mark.asyncio
    async def test_admin_can_create(self, engine, actors):
        product = await engine.create_product({"name": "Gear", "current_location": "Plant"}, actors[Role.ADMIN])
        assert product.status == "manufactured"

    @pytest.mark.asyncio
    async def test_location_required(self, engine, actors):
        with pytest.raises(ValidationError) as exc_info:
            await engine.create_product({"name": "Gear", "current_location": "  "}, actors[Role.MANUFACTURER])
        assert exc_info.value.field == "current_location"


class TestStatusTransition:
    """Tests for request_status_transition"""

    @pytest.mark.asyncio
    async def test_supplier_moves_to_supply(self, engine, product, actors):
        updated = await engine.request_status_transition(
            product.id, actors[Role.SUPPLIER], "in-supply", "Mumbai Warehouse", notes="Received"
        )

        assert updated.status == "in-supply"
        assert updated.current_location == "Mumbai Warehouse"
        assert len(updated.timeline) == 2
        entry = updated.timeline[-1]
        assert entry["title"] == "In Supply"
        assert entry["description"] == "Received"
        assert entry["handler"]["id"] == actors[Role.SUPPLIER].user_id
        assert entry["metadata"]["previous_status"] == "manufactured"
        assert_status_matches_timeline(updated)

    @pytest.mark.asyncio
    async def test_rejected_transition_leaves_timeline_unchanged(self, engine, product, actors):
        with pytest.raises(InvalidTransitionError) as exc_info:
            await engine.request_status_transition(
                product.id, actors[Role.DISTRIBUTOR], "in-distribution", "Hub"
            )

        assert exc_info.value.from_status == "manufactured"
        assert exc_info.value.to_status == "in-distribution"
        reloaded = await engine.get_product(product.id)
        assert len(reloaded.timeline) == 1
        assert reloaded.status == "manufactured"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", ["quality-check", "in-supply", "delivered", "delayed", "bogus"])
    async def test_customer_always_forbidden(self, engine, product, actors, target):
        with pytest.raises(ForbiddenError):
            await engine.request_status_transition(product.id, actors[Role.CUSTOMER], target, "Anywhere")

    @pytest.mark.asyncio
    async def test_missing_location_is_validation_error(self, engine, product, actors):
        with pytest.raises(ValidationError) as exc_info:
            await engine.request_status_transition(product.id, actors[Role.SUPPLIER], "in-supply", "")
        assert exc_info.value.field == "location"

    @pytest.mark.asyncio
    async def test_unknown_status_is_validation_error(self, engine, product, actors):
        with pytest.raises(ValidationError) as exc_info:
            await engine.request_status_transition(product.id, actors[Role.ADMIN], "shipped", "Hub")
        assert exc_info.value.field == "status"

    @pytest.mark.asyncio
    async def test_unknown_product_is_not_found(self, engine, actors):
        with pytest.raises(NotFoundError):
            await engine.request_status_transition(uuid4(), actors[Role.SUPPLIER], "in-supply", "Hub")

    @pytest.mark.asyncio
    async def test_repeat_call_fails_instead_of_duplicating(self, engine, product, actors):
        await engine.request_status_transition(product.id, actors[Role.SUPPLIER], "in-supply", "Warehouse")
        await engine.request_status_transition(product.id, actors[Role.DISTRIBUTOR], "in-distribution", "Hub")

        with pytest.raises(InvalidTransitionError):
            await engine.request_status_transition(product.id, actors[Role.DISTRIBUTOR], "in-distribution", "Hub")

        reloaded = await engine.get_product(product.id)
        assert len(reloaded.timeline) == 3

    @pytest.mark.asyncio
    async def test_delivered_is_terminal(self, engine, product, actors):
        admin = actors[Role.ADMIN]
        for target in ["in-supply", "in-distribution", "delivered"]:
            await engine.request_status_transition(product.id, admin, target, "Somewhere")

        for target in ["delayed", "quality-check", "in-distribution"]:
            with pytest.raises(InvalidTransitionError):
                await engine.request_status_transition(product.id, admin, target, "Somewhere")

    @pytest.mark.asyncio
    async def test_timeline_grows_by_one_per_success(self, engine, product, actors):
        steps = [
            (Role.SUPPLIER, "in-supply", True),
            (Role.SUPPLIER, "in-distribution", False),
            (Role.QUALITY_INSPECTOR, "quality-check", True),
            (Role.DISTRIBUTOR, "in-distribution", False),
            (Role.SUPPLIER, "in-supply", True),
            (Role.DISTRIBUTOR, "in-distribution", True),
            (Role.DISTRIBUTOR, "delivered", True),
        ]
        expected_length = 1
        for role, target, should_succeed in steps:
            if should_succeed:
                updated = await engine.request_status_transition(product.id, actors[role], target, "Loc")
                expected_length += 1
            else:
                with pytest.raises(InvalidTransitionError):
                    await engine.request_status_transition(product.id, actors[role], target, "Loc")
                updated = await engine.get_product(product.id)
            assert len(updated.timeline) == expected_length
            assert_status_matches_timeline(updated)


class TestDelayedProducts:
    """Tests for the delayed marker"""

    @pytest.mark.asyncio
    async def test_delay_and_resume_to_prior_state(self, engine, product, actors):
        distributor = actors[Role.DISTRIBUTOR]
        await engine.request_status_transition(product.id, actors[Role.SUPPLIER], "in-supply", "Warehouse")

        delayed = await engine.request_status_transition(
            product.id, distributor, "delayed", "Warehouse", notes="Truck breakdown"
        )
        assert delayed.status == "delayed"

        with pytest.raises(InvalidTransitionError):
            await engine.request_status_transition(product.id, distributor, "in-distribution", "Hub")

        resumed = await engine.request_status_transition(product.id, distributor, "in-supply", "Warehouse")
        assert resumed.status == "in-supply"
        assert [e["status"] for e in resumed.timeline] == ["manufactured", "in-supply", "delayed", "in-supply"]
        assert_status_matches_timeline(resumed)


class TestDocumentedScenario:
    """End-to-end walk through the lifecycle"""

    @pytest.mark.asyncio
    async def test_manufacture_to_delivery(self, engine, product, actors):
        # Given a manufactured product
        assert [e["status"] for e in product.timeline] == ["manufactured"]

        # When the inspector passes it
        checked = await engine.perform_quality_check(
            product.id, actors[Role.QUALITY_INSPECTOR], passed=True, notes="All good"
        )
        assert checked.status == "in-supply"
        assert len(checked.timeline) == 2

        # Then the supplier may not distribute it
        with pytest.raises(InvalidTransitionError):
            await engine.request_status_transition(product.id, actors[Role.SUPPLIER], "in-distribution", "Hub")

        # But the distributor may
        distributed = await engine.request_status_transition(
            product.id, actors[Role.DISTRIBUTOR], "in-distribution", "Hub"
        )
        assert distributed.status == "in-distribution"
        assert len(distributed.timeline) == 3

        delivered = await engine.request_status_transition(
            product.id, actors[Role.DISTRIBUTOR], "delivered", "Customer Site"
        )
        assert delivered.status == "delivered"
        assert len(delivered.timeline) == 4
        assert_status_matches_timeline(delivered)
