"""
Shared test fixtures.

Uses an in-memory SQLite database (via aiosqlite) so tests run without
Docker / PostgreSQL.  ``build_engine`` hands SQLite a single static
connection, so every session opened from one engine sees the same data.
"""

from __future__ import annotations

from datetime import timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from lastmile.domain.clock import FrozenClock
from lastmile.domain.offer import (
    DeliveryDetails,
    Dimensions,
    Offer,
    PackageDetails,
    PaymentTerms,
    PickupDetails,
)
from lastmile.infrastructure.database import (
    build_engine,
    build_session_factory,
    create_schema,
    drop_schema,
)

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

BUSINESS_ID = 1
RIDER_ID = 10
OTHER_RIDER_ID = 11
STRANGER_ID = 99

# Downtown San Francisco, about 2.3 km apart
PICKUP_COORDS = (-122.4194, 37.7749)
DROPOFF_COORDS = (-122.4010, 37.7890)


# ── Builders ──────────────────────────────────────────────────────────


def make_offer(clock: FrozenClock, **overrides) -> Offer:
    now = clock()
    offer_id = overrides.pop("id", 1)
    fields = dict(
        business_id=BUSINESS_ID,
        title="Flowers to Market St",
        pickup=PickupDetails(
            address="1 Dr Carlton B Goodlett Pl",
            coordinates=PICKUP_COORDS,
            contact_name="Shop Front",
            contact_phone="+1 415 555 0100",
            available_from=now + timedelta(minutes=15),
            available_until=now + timedelta(hours=1),
        ),
        delivery=DeliveryDetails(
            address="1 Market St",
            coordinates=DROPOFF_COORDS,
            contact_name="Alex Doe",
            contact_phone="+1 415 555 0199",
            deliver_by=now + timedelta(hours=2),
        ),
        payment=PaymentTerms(amount=12.5),
        package=PackageDetails(weight=2.0, dimensions=Dimensions(30, 20, 10)),
        clock=clock,
    )
    fields.update(overrides)
    offer = Offer.create(**fields)
    offer.id = offer_id
    return offer


def offer_request_payload(clock: FrozenClock, **overrides) -> dict:
    now = clock()
    payload = {
        "business_id": BUSINESS_ID,
        "title": "Flowers to Market St",
        "pickup": {
            "address": "1 Dr Carlton B Goodlett Pl",
            "location": {"lng": PICKUP_COORDS[0], "lat": PICKUP_COORDS[1]},
            "contact_name": "Shop Front",
            "contact_phone": "+1 415 555 0100",
            "available_from": now + timedelta(minutes=15),
            "available_until": now + timedelta(hours=1),
        },
        "delivery": {
            "address": "1 Market St",
            "location": {"lng": DROPOFF_COORDS[0], "lat": DROPOFF_COORDS[1]},
            "contact_name": "Alex Doe",
            "contact_phone": "+1 415 555 0199",
            "deliver_by": now + timedelta(hours=2),
        },
        "package": {"weight": 2.0, "dimensions": {"length": 30, "width": 20, "height": 10}},
        "payment": {"amount": 12.5},
    }
    payload.update(overrides)
    return payload


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def offer(clock) -> Offer:
    return make_offer(clock)


@pytest.fixture
def accepted_offer(offer) -> Offer:
    offer.update_status("accepted", RIDER_ID)
    return offer


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create tables, hand out the engine, then drop everything."""
    test_engine = build_engine(TEST_DB_URL)
    await create_schema(test_engine)
    yield test_engine
    await drop_schema(test_engine)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
