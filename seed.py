"""
Seed script -- populates the database with sample deliveries for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 6 open offers around downtown San Francisco
  - 1 delivery in transit with a GPS trail and a resolved issue
  - 1 completed delivery with a signature confirmation
  - 1 cancelled delivery
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from lastmile.domain.enums import TrackingEventType
from lastmile.infrastructure.database import async_session_factory, engine
from lastmile.infrastructure.models import OfferModel
from lastmile.schemas import OfferCreateRequest
from lastmile.services.delivery import DeliveryCoordinator

RIDER_IDS = (101, 102, 103)

# (title, business, pickup (lng, lat), drop-off (lng, lat), payment, fragile)
OFFERS = [
    ("Bouquet for Market St", 1, (-122.4194, 37.7749), (-122.4010, 37.7890), 12.50, True),
    ("Documents to FiDi", 1, (-122.4180, 37.7760), (-122.3990, 37.7940), 9.00, False),
    ("Groceries to Mission", 2, (-122.4090, 37.7830), (-122.4180, 37.7600), 15.00, False),
    ("Cake to Noe Valley", 2, (-122.4100, 37.7850), (-122.4330, 37.7500), 18.75, True),
    ("Laptop repair return", 3, (-122.4050, 37.7870), (-122.4460, 37.7700), 22.00, False),
    ("Pharmacy order", 3, (-122.4200, 37.7800), (-122.4300, 37.7900), 8.25, False),
    ("Tailored suit", 1, (-122.4070, 37.7880), (-122.4380, 37.7990), 20.00, False),
    ("Board game pickup", 2, (-122.4210, 37.7700), (-122.4050, 37.7550), 11.00, False),
    ("Wine case", 3, (-122.4000, 37.7900), (-122.4150, 37.8000), 25.00, True),
]


def _request(title, business_id, pickup, dropoff, amount, fragile, now):
    return OfferCreateRequest(
        business_id=business_id,
        title=title,
        pickup={
            "address": f"{title} pickup",
            "location": {"lng": pickup[0], "lat": pickup[1]},
            "contact_name": "Front desk",
            "contact_phone": "+1 415 555 0100",
            "available_from": now,
            "available_until": now + timedelta(hours=2),
        },
        delivery={
            "address": f"{title} drop-off",
            "location": {"lng": dropoff[0], "lat": dropoff[1]},
            "contact_name": "Recipient",
            "contact_phone": "+1 415 555 0199",
            "deliver_by": now + timedelta(hours=3),
        },
        package={"weight": 2.5, "fragile": fragile},
        payment={"amount": amount},
    )


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        count = await session.scalar(select(func.count()).select_from(OfferModel))
        if count:
            print("Database already seeded. Skipping.")
            return

        coordinator = DeliveryCoordinator(session)
        now = datetime.now(timezone.utc)

        # ── Offers ────────────────────────────────────────────────────
        offers = []
        for row in OFFERS:
            offers.append(await coordinator.create_offer(_request(*row, now=now)))
        print(f"  Created {len(offers)} offers")

        # ── In transit ────────────────────────────────────────────────
        moving, rider = offers[6], RIDER_IDS[0]
        await coordinator.accept_offer(moving.id, rider)
        await coordinator.record_event(moving.id, rider, TrackingEventType.HEADING_TO_PICKUP)
        await coordinator.record_location(moving.id, rider, moving.pickup.coordinates)
        await coordinator.record_pickup_attempt(moving.id, rider, True)
        await coordinator.record_event(moving.id, rider, TrackingEventType.IN_TRANSIT)
        await coordinator.record_location(
            moving.id, rider, (-122.4200, 37.7930), speed=6.5, heading=280.0
        )
        await coordinator.report_issue(moving.id, rider, "traffic_delay", "Road works on Pine St")
        await coordinator.resolve_issue(moving.id, rider, 0, resolution="Took Bush St instead")
        await coordinator.refresh_estimate(moving.id, rider, traffic="moderate")
        print("  Moved 1 delivery into transit")

        # ── Completed ─────────────────────────────────────────────────
        done, rider = offers[7], RIDER_IDS[1]
        await coordinator.accept_offer(done.id, rider, vehicle_type="scooter")
        await coordinator.record_pickup_attempt(done.id, rider, True)
        await coordinator.record_location(done.id, rider, done.delivery.coordinates)
        await coordinator.record_event(done.id, rider, TrackingEventType.ARRIVED_AT_DELIVERY)
        await coordinator.confirm_delivery(
            done.id, rider, "signature", payload={"signed_by": "Recipient"}
        )
        await coordinator.update_offer_status(done.id, "completed", done.business_id)
        print("  Completed 1 delivery")

        # ── Cancelled ─────────────────────────────────────────────────
        dropped, rider = offers[8], RIDER_IDS[2]
        await coordinator.accept_offer(dropped.id, rider, vehicle_type="car")
        await coordinator.update_offer_status(
            dropped.id, "cancelled", dropped.business_id, notes="Customer changed plans"
        )
        print("  Cancelled 1 delivery")

        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
