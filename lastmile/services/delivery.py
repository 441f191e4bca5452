"""
Delivery coordinator
====================

Application service that keeps an ``Offer`` and its ``TrackingSession`` in
step, one database transaction per operation.

Coupling between the two state machines
---------------------------------------
* Tracking -> offer: when a tracking mutation would move the session to a
  status listed in the status mapping (``TRACKING_TO_OFFER_STATUS`` by
  default), the offer is first *planned* forward with
  ``Offer.plan_advance``.  Planning validates every intermediate step, so
  an illegal sync raises before either aggregate is touched.
* Offer -> tracking: a direct offer status change records the matching
  tracking event (``OFFER_STATUS_EVENTS``) on an active session.

Notifications go out after the commit.  A failing notifier is logged and
never turns a committed operation into an error.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.config import Settings, settings
from lastmile.domain import geo
from lastmile.domain.clock import Clock, utc_now
from lastmile.domain.enums import (
    EVENT_STATUS_MAP,
    OFFER_STATUS_EVENTS,
    TRACKING_TO_OFFER_STATUS,
    ConfirmationType,
    DeliveryMethod,
    IssueImpact,
    IssueSeverity,
    IssueType,
    OfferStatus,
    TimeOfDay,
    TrackingEventType,
    TrackingStatus,
    TrafficLevel,
    VehicleType,
    WeatherCondition,
)
from lastmile.domain.exceptions import (
    InvalidOffer,
    InvalidStatusTransition,
    NotAuthorized,
    OfferAlreadyAccepted,
    OfferNotFound,
    TrackingSessionNotFound,
)
from lastmile.domain.history import (
    AppendOnlyLog,
    LocationFix,
    StatusHistoryEntry,
    TrackingEvent,
)
from lastmile.domain.issues import Issue
from lastmile.domain.offer import Offer
from lastmile.domain.roles import Rider, Unknown
from lastmile.domain.stats import DeliveryStats, summarize_deliveries
from lastmile.domain.tracking import (
    ContactInput,
    DeliveryAttempt,
    DeliveryConfirmation,
    EstimatedDelivery,
    PickupAttempt,
    TrackingSession,
)
from lastmile.infrastructure.repositories import OfferRepository, TrackingSessionRepository
from lastmile.schemas import NearbyOffersQuery, OfferCreateRequest

logger = logging.getLogger(__name__)

# Tracking statuses that come before the package is in the rider's hands
PRE_PICKUP_STATUSES = frozenset(
    {
        TrackingStatus.ACCEPTED,
        TrackingStatus.HEADING_TO_PICKUP,
        TrackingStatus.ARRIVED_AT_PICKUP,
    }
)


class DeliveryNotifier(Protocol):
    async def status_changed(self, offer: Offer, entry: StatusHistoryEntry) -> None: ...

    async def event_recorded(self, tracking: TrackingSession, event: TrackingEvent) -> None: ...


def _appended(log: AppendOnlyLog) -> int:
    """Entries ever appended, including those the ring buffer evicted."""
    return len(log) + log.evicted


@dataclass
class _Watermark:
    offer: Offer
    history: int
    tracking: Optional[TrackingSession] = None
    events: int = 0


@dataclass(frozen=True)
class NearbyOffer:
    offer: Offer
    distance: int  # meters from the search point

    def to_dict(self) -> dict[str, Any]:
        return {**self.offer.get_summary(), "distance": self.distance}


class DeliveryCoordinator:
    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Clock = utc_now,
        notifier: Optional[DeliveryNotifier] = None,
        status_mapping: Optional[Mapping[TrackingStatus, OfferStatus]] = None,
        config: Settings = settings,
    ):
        self.session = session
        self.clock = clock
        self.notifier = notifier
        self.status_mapping = dict(
            TRACKING_TO_OFFER_STATUS if status_mapping is None else status_mapping
        )
        self.config = config
        self.offers = OfferRepository(session, clock=clock, h3_resolution=config.h3_resolution)
        self.sessions = TrackingSessionRepository(
            session,
            clock=clock,
            event_capacity=config.event_log_capacity,
            location_capacity=config.location_history_capacity,
        )

    # ── Plumbing ──────────────────────────────────────────────────

    @asynccontextmanager
    async def _transaction(self):
        try:
            yield
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    async def _offer(self, offer_id: int) -> Offer:
        offer = await self.offers.get_by_id(offer_id)
        if offer is None:
            raise OfferNotFound(f"Offer {offer_id} not found")
        return offer

    async def _pair(
        self, offer_id: int, actor_id: int, *, rider_only: bool = False
    ) -> tuple[Offer, TrackingSession]:
        offer = await self._offer(offer_id)
        role = offer.get_role(actor_id)
        if isinstance(role, Unknown) or (rider_only and not isinstance(role, Rider)):
            raise NotAuthorized(f"User {actor_id} is not authorized for offer {offer_id}")

        tracking = await self.sessions.get_by_offer_id(offer_id)
        if tracking is None:
            raise TrackingSessionNotFound(f"No tracking session for offer {offer_id}")
        return offer, tracking

    def _mark(self, offer: Offer, tracking: Optional[TrackingSession] = None) -> _Watermark:
        return _Watermark(
            offer=offer,
            history=len(offer.status_history),
            tracking=tracking,
            events=_appended(tracking.events) if tracking else 0,
        )

    async def _notify(self, mark: _Watermark) -> None:
        if self.notifier is None:
            return

        for entry in mark.offer.status_history.to_list()[mark.history:]:
            try:
                await self.notifier.status_changed(mark.offer, entry)
            except Exception:
                logger.exception(
                    "Notifier failed on offer %s status %s", mark.offer.id, entry.status.value
                )

        if mark.tracking is None:
            return
        fresh = _appended(mark.tracking.events) - mark.events
        for event in mark.tracking.events.tail(fresh):
            try:
                await self.notifier.event_recorded(mark.tracking, event)
            except Exception:
                logger.exception(
                    "Notifier failed on offer %s event %s",
                    mark.tracking.offer_id,
                    event.event_type.value,
                )

    def _plan_sync(
        self, offer: Offer, status: Optional[TrackingStatus], actor_id: int
    ) -> list[OfferStatus]:
        target = self.status_mapping.get(status) if status is not None else None
        if target is None:
            return []
        try:
            return offer.plan_advance(target, actor_id)
        except InvalidStatusTransition as exc:
            logger.warning(
                "Offer %s cannot follow tracking to %s: %s", offer.id, status.value, exc.message
            )
            raise

    def _apply_sync(
        self, offer: Offer, tracking: TrackingSession, steps: Iterable[OfferStatus], actor_id: int
    ) -> None:
        for step in steps:
            offer.update_status(
                step,
                actor_id,
                notes=f"Synced from tracking status '{tracking.current_status.value}'",
            )
            logger.info("Offer %s -> %s (tracking sync)", offer.id, step.value)
        if tracking.current_status is TrackingStatus.COMPLETED:
            tracking.calculate_metrics()
            offer.actual_distance = round(tracking.actual_distance)

    async def _persist(self, offer: Offer, tracking: TrackingSession) -> None:
        await self.offers.save(offer)
        await self.sessions.save(tracking)

    # ── Offers ────────────────────────────────────────────────────

    async def create_offer(self, request: OfferCreateRequest) -> Offer:
        offer = Offer.create(
            business_id=request.business_id,
            title=request.title,
            description=request.description,
            pickup=request.pickup_details(),
            delivery=request.delivery_details(),
            package=request.package_details(),
            payment=request.payment_terms(),
            clock=self.clock,
        )
        errors = offer.validate()
        if errors:
            raise InvalidOffer(errors)
        offer.update_estimates(self.config.default_vehicle_type)

        mark = _Watermark(offer=offer, history=0)
        async with self._transaction():
            await self.offers.add(offer)
        logger.info("Offer %s created by business %s", offer.id, offer.business_id)
        await self._notify(mark)
        return offer

    async def get_offer(self, offer_id: int) -> Offer:
        return await self._offer(offer_id)

    async def accept_offer(
        self,
        offer_id: int,
        rider_id: int,
        *,
        vehicle_type: VehicleType | str | None = None,
    ) -> tuple[Offer, TrackingSession]:
        """
        Claim an open offer for *rider_id* and open its tracking session.

        Re-accepting by the same rider returns the existing pair unchanged.
        """
        vehicle = VehicleType(vehicle_type or self.config.default_vehicle_type)
        async with self._transaction():
            offer = await self._offer(offer_id)
            mark = self._mark(offer)

            result = offer.validate_transition(OfferStatus.ACCEPTED, rider_id)
            if not result.is_valid:
                logger.warning(
                    "Rider %s cannot accept offer %s: %s", rider_id, offer_id, result.error
                )
                if offer.rider_id is not None and offer.rider_id != rider_id:
                    raise OfferAlreadyAccepted(result.error, result.valid_transitions)
                raise InvalidStatusTransition(result.error, result.valid_transitions)

            if not result.is_noop:
                offer.update_status(
                    OfferStatus.ACCEPTED, rider_id, notes="Offer accepted by rider"
                )
                await self.offers.claim_for_rider(offer)

            tracking, created = await self.sessions.get_or_create(offer, vehicle)

        if created:
            mark.tracking, mark.events = tracking, 0
            logger.info("Offer %s accepted by rider %s", offer_id, rider_id)
        await self._notify(mark)
        return offer, tracking

    async def update_offer_status(
        self,
        offer_id: int,
        status: OfferStatus | str,
        actor_id: int,
        *,
        notes: Optional[str] = None,
        location: Optional[Sequence[float]] = None,
    ) -> Offer:
        status = OfferStatus(status)
        if status is OfferStatus.ACCEPTED:
            offer, _ = await self.accept_offer(offer_id, actor_id)
            return offer

        async with self._transaction():
            offer = await self._offer(offer_id)
            tracking = await self.sessions.get_by_offer_id(offer_id)
            mark = self._mark(offer, tracking)

            try:
                offer.update_status(status, actor_id, notes=notes, location=location)
            except InvalidStatusTransition as exc:
                logger.warning("Offer %s rejected %s: %s", offer_id, status.value, exc.message)
                raise
            logger.info("Offer %s -> %s by %s", offer_id, status.value, actor_id)

            event_type = OFFER_STATUS_EVENTS.get(status)
            if tracking is not None and tracking.is_active and event_type is not None:
                if tracking.current_status is not EVENT_STATUS_MAP[event_type]:
                    tracking.add_event(
                        event_type, notes=notes, location=location, reported_by=actor_id
                    )
                if tracking.current_status is TrackingStatus.COMPLETED:
                    tracking.calculate_metrics()
                    offer.actual_distance = round(tracking.actual_distance)
                await self.sessions.save(tracking)

            await self.offers.save(offer)

        await self._notify(mark)
        return offer

    async def find_nearby_offers(self, query: NearbyOffersQuery) -> list[NearbyOffer]:
        matches = await self.offers.find_open_near(
            query.location.as_pair(),
            query.radius_m or self.config.nearby_radius_m,
            min_payment=query.min_payment,
            max_payment=query.max_payment,
            fragile=query.fragile,
            vehicle_type=query.vehicle_type,
            limit=query.limit,
        )
        return [NearbyOffer(offer, meters) for offer, meters in matches]

    async def offers_for_business(
        self, business_id: int, status: OfferStatus | str | None = None
    ) -> list[Offer]:
        return await self.offers.list_for_business(business_id, status)

    # ── Tracking ──────────────────────────────────────────────────

    async def record_event(
        self,
        offer_id: int,
        actor_id: int,
        event_type: TrackingEventType | str,
        *,
        notes: Optional[str] = None,
        location: Optional[Sequence[float]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> TrackingEvent:
        event_type = TrackingEventType(event_type)
        async with self._transaction():
            offer, tracking = await self._pair(offer_id, actor_id)
            tracking.ensure_active()
            mark = self._mark(offer, tracking)

            steps = self._plan_sync(offer, EVENT_STATUS_MAP.get(event_type), actor_id)
            event = tracking.add_event(
                event_type,
                notes=notes,
                location=location,
                metadata=metadata,
                reported_by=actor_id,
            )
            self._apply_sync(offer, tracking, steps, actor_id)
            await self._persist(offer, tracking)

        await self._notify(mark)
        return event

    async def record_location(
        self,
        offer_id: int,
        rider_id: int,
        coordinates: Sequence[float],
        *,
        accuracy: Optional[float] = None,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
    ) -> LocationFix:
        async with self._transaction():
            offer, tracking = await self._pair(offer_id, rider_id, rider_only=True)
            mark = self._mark(offer, tracking)
            fix = tracking.update_location(
                coordinates, accuracy=accuracy, heading=heading, speed=speed
            )
            await self.sessions.save(tracking)

        await self._notify(mark)
        return fix

    async def record_pickup_attempt(
        self,
        offer_id: int,
        rider_id: int,
        successful: bool,
        *,
        notes: Optional[str] = None,
        contact_attempts: Iterable[ContactInput] = (),
    ) -> PickupAttempt:
        async with self._transaction():
            offer, tracking = await self._pair(offer_id, rider_id, rider_only=True)
            tracking.ensure_active()
            mark = self._mark(offer, tracking)

            steps = self._plan_sync(
                offer, TrackingStatus.PICKED_UP if successful else None, rider_id
            )
            attempt = tracking.add_pickup_attempt(
                successful, notes=notes, contact_attempts=contact_attempts
            )
            self._apply_sync(offer, tracking, steps, rider_id)
            await self._persist(offer, tracking)

        await self._notify(mark)
        return attempt

    async def record_delivery_attempt(
        self,
        offer_id: int,
        rider_id: int,
        successful: bool,
        *,
        notes: Optional[str] = None,
        delivery_method: DeliveryMethod | str | None = None,
        signature_required: bool = False,
        signature_obtained: bool = False,
        photo_taken: bool = False,
        contact_attempts: Iterable[ContactInput] = (),
    ) -> DeliveryAttempt:
        async with self._transaction():
            offer, tracking = await self._pair(offer_id, rider_id, rider_only=True)
            tracking.ensure_active()
            mark = self._mark(offer, tracking)

            steps = self._plan_sync(
                offer, TrackingStatus.DELIVERED if successful else None, rider_id
            )
            attempt = tracking.add_delivery_attempt(
                successful,
                notes=notes,
                delivery_method=delivery_method,
                signature_required=signature_required,
                signature_obtained=signature_obtained,
                photo_taken=photo_taken,
                contact_attempts=contact_attempts,
            )
            self._apply_sync(offer, tracking, steps, rider_id)
            await self._persist(offer, tracking)

        await self._notify(mark)
        return attempt

    async def report_issue(
        self,
        offer_id: int,
        actor_id: int,
        issue_type: IssueType | str,
        description: str,
        *,
        severity: IssueSeverity | str | None = None,
        impact_on_delivery: IssueImpact | str | None = None,
    ) -> Issue:
        async with self._transaction():
            offer, tracking = await self._pair(offer_id, actor_id)
            mark = self._mark(offer, tracking)
            issue = tracking.report_issue(
                issue_type,
                description,
                severity=severity,
                reported_by=actor_id,
                impact_on_delivery=impact_on_delivery,
            )
            await self.sessions.save(tracking)

        logger.info(
            "Issue %s (%s) reported on offer %s",
            issue.type.value,
            issue.severity.value,
            offer_id,
        )
        await self._notify(mark)
        return issue

    async def resolve_issue(
        self,
        offer_id: int,
        actor_id: int,
        index: int,
        *,
        resolution: Optional[str] = None,
    ) -> Issue:
        async with self._transaction():
            offer, tracking = await self._pair(offer_id, actor_id)
            mark = self._mark(offer, tracking)
            issue = tracking.resolve_issue(index, resolution=resolution, resolved_by=actor_id)
            await self.sessions.save(tracking)

        await self._notify(mark)
        return issue

    async def confirm_delivery(
        self,
        offer_id: int,
        rider_id: int,
        confirmation_type: ConfirmationType | str,
        *,
        payload: Optional[Mapping[str, Any]] = None,
        location: Optional[Sequence[float]] = None,
        notes: Optional[str] = None,
    ) -> DeliveryConfirmation:
        async with self._transaction():
            offer, tracking = await self._pair(offer_id, rider_id, rider_only=True)
            tracking.ensure_active()
            mark = self._mark(offer, tracking)

            steps = []
            if tracking.current_status is TrackingStatus.ARRIVED_AT_DELIVERY:
                steps = self._plan_sync(offer, TrackingStatus.DELIVERED, rider_id)
            confirmation = tracking.confirm_delivery(
                confirmation_type, payload=payload, location=location, notes=notes
            )
            self._apply_sync(offer, tracking, steps, rider_id)
            await self._persist(offer, tracking)

        await self._notify(mark)
        return confirmation

    def _remaining_km(self, offer: Offer, tracking: TrackingSession) -> float:
        pickup, dropoff = offer.pickup.coordinates, offer.delivery.coordinates
        here = tracking.current_location
        if here is None:
            legs = [(pickup, dropoff)]
        elif tracking.current_status in PRE_PICKUP_STATUSES:
            legs = [(here, pickup), (pickup, dropoff)]
        else:
            legs = [(here, dropoff)]
        return sum(geo.distance(a, b) or 0 for a, b in legs) / 1000

    async def refresh_estimate(
        self,
        offer_id: int,
        actor_id: int,
        *,
        distance_km: Optional[float] = None,
        traffic: TrafficLevel | str | None = None,
        weather: WeatherCondition | str | None = None,
        time_of_day: TimeOfDay | str | None = None,
    ) -> EstimatedDelivery:
        """
        Recompute the ETA.  Without *distance_km* the remaining straight-line
        distance is used: via the pickup while the package is still there.
        """
        async with self._transaction():
            offer, tracking = await self._pair(offer_id, actor_id)
            if distance_km is None:
                distance_km = self._remaining_km(offer, tracking)
            estimate = tracking.update_estimated_delivery(
                distance_km, traffic=traffic, weather=weather, time_of_day=time_of_day
            )
            await self.sessions.save(tracking)
        return estimate

    async def update_eta(self, offer_id: int, rider_id: int, eta: datetime) -> TrackingSession:
        async with self._transaction():
            _, tracking = await self._pair(offer_id, rider_id, rider_only=True)
            tracking.update_eta(eta)
            await self.sessions.save(tracking)
        return tracking

    # ── Read side ─────────────────────────────────────────────────

    async def get_tracking(
        self, offer_id: int, actor_id: int, *, detailed: bool = False
    ) -> dict[str, Any]:
        _, tracking = await self._pair(offer_id, actor_id)
        window = self.config.tracking_window
        if detailed:
            return tracking.get_detailed_tracking(window)
        return tracking.get_tracking_data(window)

    async def active_deliveries(self, rider_id: int) -> list[TrackingSession]:
        return await self.sessions.list_active_for_rider(rider_id)

    async def sessions_by_status(self, status: TrackingStatus | str) -> list[TrackingSession]:
        return await self.sessions.list_by_status(status)

    async def business_deliveries(
        self, business_id: int, *, active: Optional[bool] = None
    ) -> list[TrackingSession]:
        return await self.sessions.list_for_business(business_id, active=active)

    async def delivery_stats(
        self, *, rider_id: Optional[int] = None, business_id: Optional[int] = None
    ) -> DeliveryStats:
        archived = await self.sessions.list_archived(rider_id=rider_id, business_id=business_id)
        return summarize_deliveries(archived)
