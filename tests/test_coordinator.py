"""Integration tests for the delivery coordinator (SQLite + mocked notifier)."""

from __future__ import annotations

import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import (
    BUSINESS_ID,
    DROPOFF_COORDS,
    PICKUP_COORDS,
    RIDER_ID,
    STRANGER_ID,
    offer_request_payload,
)
from lastmile.domain.enums import (
    OfferStatus,
    TrackingEventType,
    TrackingStatus,
)
from lastmile.domain.exceptions import (
    InvalidOffer,
    InvalidStatusTransition,
    NotAuthorized,
    OfferNotFound,
    TrackingSessionClosed,
    TrackingSessionNotFound,
)
from lastmile.schemas import NearbyOffersQuery, OfferCreateRequest
from lastmile.services.delivery import DeliveryCoordinator


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def coordinator(db_session, clock, notifier) -> DeliveryCoordinator:
    return DeliveryCoordinator(db_session, clock=clock, notifier=notifier)


async def _open_offer(coordinator, clock, **overrides):
    request = OfferCreateRequest(**offer_request_payload(clock, **overrides))
    return await coordinator.create_offer(request)


async def _accepted_offer(coordinator, clock):
    offer = await _open_offer(coordinator, clock)
    offer, _ = await coordinator.accept_offer(offer.id, RIDER_ID)
    return offer


def _event_types(tracking_data: dict) -> list[TrackingEventType]:
    return [event["event_type"] for event in tracking_data["events"]]


class TestCreateOffer:
    @pytest.mark.asyncio
    async def test_creates_open_offer_with_estimates(self, coordinator, clock, notifier):
        offer = await _open_offer(coordinator, clock)

        assert offer.id is not None
        assert offer.status == OfferStatus.OPEN
        assert 2000 <= offer.estimated_distance <= 2600
        assert offer.estimated_duration is not None

        notifier.status_changed.assert_awaited_once()
        _, entry = notifier.status_changed.await_args.args
        assert entry.status == OfferStatus.OPEN

    @pytest.mark.asyncio
    async def test_rejects_past_deadline(self, coordinator, clock):
        payload = offer_request_payload(clock)
        payload["delivery"]["deliver_by"] = clock() - timedelta(minutes=1)
        with pytest.raises(InvalidOffer) as exc:
            await coordinator.create_offer(OfferCreateRequest(**payload))
        assert [e.field for e in exc.value.errors] == ["delivery.deliver_by"]


class TestAcceptOffer:
    @pytest.mark.asyncio
    async def test_accept_opens_tracking_session(self, coordinator, clock, notifier):
        offer = await _open_offer(coordinator, clock)
        notifier.reset_mock()

        offer, tracking = await coordinator.accept_offer(offer.id, RIDER_ID)

        assert offer.status == OfferStatus.ACCEPTED
        assert offer.rider_id == RIDER_ID
        assert tracking.offer_id == offer.id
        assert tracking.events.latest.event_type == TrackingEventType.DELIVERY_ACCEPTED
        notifier.status_changed.assert_awaited_once()
        notifier.event_recorded.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_business_cannot_accept(self, coordinator, clock):
        offer = await _open_offer(coordinator, clock)
        with pytest.raises(InvalidStatusTransition) as exc:
            await coordinator.accept_offer(offer.id, BUSINESS_ID)
        assert exc.value.message == "Only riders can accept offers"

    @pytest.mark.asyncio
    async def test_unknown_offer(self, coordinator):
        with pytest.raises(OfferNotFound):
            await coordinator.accept_offer(404, RIDER_ID)


class TestTrackingToOfferSync:
    @pytest.mark.asyncio
    async def test_event_advances_offer_through_skipped_steps(self, coordinator, clock):
        offer = await _accepted_offer(coordinator, clock)

        await coordinator.record_event(offer.id, RIDER_ID, TrackingEventType.IN_TRANSIT)

        stored = await coordinator.get_offer(offer.id)
        assert stored.status == OfferStatus.IN_TRANSIT
        assert [e.status for e in stored.status_history][-2:] == [
            OfferStatus.PICKED_UP,
            OfferStatus.IN_TRANSIT,
        ]

    @pytest.mark.asyncio
    async def test_illegal_sync_leaves_both_untouched(self, coordinator, clock):
        offer = await _accepted_offer(coordinator, clock)

        with pytest.raises(InvalidStatusTransition):
            await coordinator.record_event(
                offer.id, BUSINESS_ID, TrackingEventType.PACKAGE_PICKED_UP
            )

        data = await coordinator.get_tracking(offer.id, RIDER_ID)
        assert data["current_status"] == TrackingStatus.ACCEPTED
        assert len(data["events"]) == 1
        assert (await coordinator.get_offer(offer.id)).status == OfferStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_informational_statuses_do_not_move_offer(self, coordinator, clock):
        offer = await _accepted_offer(coordinator, clock)
        await coordinator.record_event(offer.id, RIDER_ID, "heading_to_pickup")
        await coordinator.record_event(offer.id, RIDER_ID, "arrived_at_pickup")
        assert (await coordinator.get_offer(offer.id)).status == OfferStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_custom_mapping_can_decouple(self, db_session, clock):
        coordinator = DeliveryCoordinator(db_session, clock=clock, status_mapping={})
        offer = await _accepted_offer(coordinator, clock)
        await coordinator.record_event(offer.id, RIDER_ID, TrackingEventType.PACKAGE_PICKED_UP)
        assert (await coordinator.get_offer(offer.id)).status == OfferStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_full_delivery_run(self, coordinator, clock):
        offer = await _accepted_offer(coordinator, clock)

        clock.advance(minutes=5)
        await coordinator.record_event(offer.id, RIDER_ID, "heading_to_pickup")
        await coordinator.record_location(offer.id, RIDER_ID, PICKUP_COORDS, accuracy=6.0)
        clock.advance(minutes=10)
        await coordinator.record_pickup_attempt(
            offer.id, RIDER_ID, True, contact_attempts=[{"method": "doorbell"}]
        )
        await coordinator.record_event(offer.id, RIDER_ID, "in_transit")
        clock.advance(minutes=12)
        await coordinator.record_location(offer.id, RIDER_ID, DROPOFF_COORDS)
        await coordinator.record_event(offer.id, RIDER_ID, "arrived_at_delivery")
        await coordinator.confirm_delivery(
            offer.id, RIDER_ID, "photo", payload={"photo_url": "s3://proof/1.jpg"}
        )
        assert (await coordinator.get_offer(offer.id)).status == OfferStatus.DELIVERED

        clock.advance(minutes=2)
        await coordinator.record_event(offer.id, RIDER_ID, "delivery_completed")

        stored = await coordinator.get_offer(offer.id)
        assert stored.status == OfferStatus.COMPLETED
        assert 2000 <= stored.actual_distance <= 2600
        assert stored.actual_duration == 29

        detailed = await coordinator.get_tracking(offer.id, BUSINESS_ID, detailed=True)
        assert detailed["is_active"] is False
        assert detailed["progress_percentage"] == 100
        assert detailed["metrics"]["transit_duration"] == 12
        assert detailed["metrics"]["on_time_performance"] is True
        assert detailed["delivery_confirmation"]["payload"] == {"photo_url": "s3://proof/1.jpg"}

        with pytest.raises(TrackingSessionClosed):
            await coordinator.record_location(offer.id, RIDER_ID, DROPOFF_COORDS)


class TestOfferToTrackingSync:
    @pytest.mark.asyncio
    async def test_cancel_archives_session(self, coordinator, clock):
        offer = await _accepted_offer(coordinator, clock)

        await coordinator.update_offer_status(
            offer.id, OfferStatus.CANCELLED, BUSINESS_ID, notes="Customer cancelled"
        )

        data = await coordinator.get_tracking(offer.id, BUSINESS_ID)
        assert data["current_status"] == TrackingStatus.CANCELLED
        assert data["is_active"] is False
        assert _event_types(data)[-1] == TrackingEventType.DELIVERY_CANCELLED

    @pytest.mark.asyncio
    async def test_offer_pickup_records_tracking_event(self, coordinator, clock):
        offer = await _accepted_offer(coordinator, clock)
        await coordinator.update_offer_status(offer.id, "picked_up", RIDER_ID)

        data = await coordinator.get_tracking(offer.id, RIDER_ID)
        assert data["current_status"] == TrackingStatus.PICKED_UP
        assert _event_types(data)[-1] == TrackingEventType.PACKAGE_PICKED_UP

    @pytest.mark.asyncio
    async def test_rejected_update_raises(self, coordinator, clock):
        offer = await _open_offer(coordinator, clock)
        with pytest.raises(InvalidStatusTransition):
            await coordinator.update_offer_status(offer.id, "delivered", RIDER_ID)


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_stranger_cannot_record_events(self, coordinator, clock):
        offer = await _accepted_offer(coordinator, clock)
        with pytest.raises(NotAuthorized):
            await coordinator.record_event(offer.id, STRANGER_ID, "customer_contacted")

    @pytest.mark.asyncio
    async def test_only_rider_sends_locations(self, coordinator, clock):
        offer = await _accepted_offer(coordinator, clock)
        with pytest.raises(NotAuthorized):
            await coordinator.record_location(offer.id, BUSINESS_ID, PICKUP_COORDS)

    @pytest.mark.asyncio
    async def test_open_offer_has_no_session(self, coordinator, clock):
        offer = await _open_offer(coordinator, clock)
        with pytest.raises(TrackingSessionNotFound):
            await coordinator.get_tracking(offer.id, BUSINESS_ID)


class TestIssuesAndEstimates:
    @pytest.mark.asyncio
    async def test_report_and_resolve_issue(self, coordinator, clock):
        offer = await _accepted_offer(coordinator, clock)

        issue = await coordinator.report_issue(
            offer.id, RIDER_ID, "vehicle_breakdown", "Chain snapped", severity="high"
        )
        assert issue.reported_by == RIDER_ID
        assert (await coordinator.get_tracking(offer.id, BUSINESS_ID))["has_active_issues"]

        resolved = await coordinator.resolve_issue(
            offer.id, BUSINESS_ID, 0, resolution="Replacement bike sent"
        )
        assert resolved.resolved
        data = await coordinator.get_tracking(offer.id, BUSINESS_ID)
        assert not data["has_active_issues"]
        assert _event_types(data)[-1] == TrackingEventType.ISSUE_RESOLVED

    @pytest.mark.asyncio
    async def test_refresh_estimate_uses_remaining_distance(self, coordinator, clock):
        offer = await _accepted_offer(coordinator, clock)

        estimate = await coordinator.refresh_estimate(offer.id, RIDER_ID, traffic="heavy")

        assert estimate.distance_km == pytest.approx(offer.calculate_distance() / 1000)
        data = await coordinator.get_tracking(offer.id, RIDER_ID)
        assert data["estimated_arrival_time"] == estimate.estimated_time

    @pytest.mark.asyncio
    async def test_manual_eta(self, coordinator, clock):
        offer = await _accepted_offer(coordinator, clock)
        tracking = await coordinator.update_eta(offer.id, RIDER_ID, clock() + timedelta(minutes=30))
        assert tracking.estimated_time_remaining == 30


class TestNotifier:
    @pytest.mark.asyncio
    async def test_notifier_failure_is_logged_not_raised(
        self, db_session, clock, caplog
    ):
        failing = AsyncMock()
        failing.status_changed.side_effect = RuntimeError("push service down")
        coordinator = DeliveryCoordinator(db_session, clock=clock, notifier=failing)

        with caplog.at_level(logging.ERROR, logger="lastmile.services.delivery"):
            offer = await _open_offer(coordinator, clock)

        assert offer.id is not None
        assert "Notifier failed" in caplog.text


class TestQueries:
    @pytest.mark.asyncio
    async def test_nearby_offers_exclude_accepted(self, coordinator, clock):
        await _open_offer(coordinator, clock, title="still open")
        await _accepted_offer(coordinator, clock)

        query = NearbyOffersQuery(location={"lng": PICKUP_COORDS[0], "lat": PICKUP_COORDS[1]})
        results = await coordinator.find_nearby_offers(query)

        assert [r.offer.title for r in results] == ["still open"]
        assert results[0].to_dict()["distance"] == 0

    @pytest.mark.asyncio
    async def test_active_deliveries_and_stats(self, coordinator, clock):
        done = await _accepted_offer(coordinator, clock)
        dropped = await _accepted_offer(coordinator, clock)
        live = await _accepted_offer(coordinator, clock)

        for status in ("picked_up", "in_transit", "delivered"):
            clock.advance(minutes=10)
            await coordinator.update_offer_status(done.id, status, RIDER_ID)
        await coordinator.update_offer_status(done.id, "completed", BUSINESS_ID)
        await coordinator.update_offer_status(dropped.id, "cancelled", RIDER_ID)

        active = await coordinator.active_deliveries(RIDER_ID)
        assert [t.offer_id for t in active] == [live.id]

        stats = await coordinator.delivery_stats(rider_id=RIDER_ID)
        assert stats.total_deliveries == 2
        assert stats.completed_deliveries == 1
        assert stats.cancelled_deliveries == 1
        assert stats.average_delivery_time == 30
        assert stats.on_time_deliveries == 1
        assert stats.completion_rate == 50.0
        assert stats.on_time_rate == 100.0

        by_status = await coordinator.sessions_by_status("cancelled")
        assert [t.offer_id for t in by_status] == [dropped.id]
        assert len(await coordinator.business_deliveries(BUSINESS_ID)) == 3
