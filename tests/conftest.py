"""
Shared fixtures.

Engine and route tests run against a throwaway SQLite file so that separate
sessions behave like separate request connections.
"""
from datetime import datetime, timedelta
from typing import Dict

import pytest

from services.tracking_service import models  # noqa: F401  (registers tables)
from services.tracking_service.lifecycle_engine import LifecycleEngine
from supplychain_shared import outbox  # noqa: F401  (registers the outbox table)
from supplychain_shared.auth import Actor, Role
from supplychain_shared.database import Database


def make_actor(role: Role, user_id: str = None, name: str = None) -> Actor:
    user_id = user_id or f"{role.value}-1"
    return Actor(user_id=user_id, role=role, name=name or user_id.replace("-", " ").title())


@pytest.fixture
def actors() -> Dict[Role, Actor]:
    return {role: make_actor(role) for role in Role}


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'tracking.db'}")
    await db.create_tables()
    yield db
    await db.drop_tables()
    await db.close()


@pytest.fixture
async def session(database):
    async with database.session_factory() as session:
        yield session


@pytest.fixture
def engine(session) -> LifecycleEngine:
    return LifecycleEngine(session)


@pytest.fixture
async def product(engine, actors):
    """A freshly manufactured product."""
    return await engine.create_product(
        {
            "name": "Hex Bolt M12",
            "current_location": "Pune Plant",
            "category": "Fasteners",
            "sub_category": "Bolts",
            "quantity": 500,
            "price": 0.42,
            "specifications": {"material": "Stainless Steel", "size": "M12x50", "standards": ["ISO 4014"]},
        },
        actors[Role.MANUFACTURER],
    )


@pytest.fixture
async def shipment(engine, product, actors):
    """A pending shipment from the supplier to the distributor."""
    return await engine.create_shipment(
        product_id=product.id,
        to_user_id=actors[Role.DISTRIBUTOR].user_id,
        expected_delivery_date=datetime.utcnow() + timedelta(days=4),
        actor=actors[Role.SUPPLIER],
        origin="Pune Plant",
    )


@pytest.fixture
async def transaction(engine, product, actors):
    """A pending transfer from the supplier to the distributor."""
    return await engine.create_transaction(
        product_id=product.id,
        to_user_id=actors[Role.DISTRIBUTOR].user_id,
        actor=actors[Role.SUPPLIER],
        quantity=100,
    )
