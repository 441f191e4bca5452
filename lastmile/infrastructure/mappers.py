"""
Conversion between domain aggregates and ORM rows.

Nested values go through pydantic ``TypeAdapter``s: ``dump_python(mode=
"json")`` turns frozen dataclasses, enums, tuples and datetimes into plain
JSON, and ``validate_python`` rebuilds the typed values on load.

SQLite drops tzinfo from ``DateTime(timezone=True)`` columns, so every
datetime read back from a column is normalised to UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import TypeAdapter

from lastmile.domain import geo
from lastmile.domain.clock import Clock
from lastmile.domain.enums import TrackingStatus, VehicleType
from lastmile.domain.history import (
    EventLog,
    LocationFix,
    LocationHistory,
    StatusHistory,
    StatusHistoryEntry,
    TrackingEvent,
)
from lastmile.domain.issues import Issue, IssueTracker
from lastmile.domain.offer import (
    DeliveryDetails,
    Offer,
    PackageDetails,
    PaymentTerms,
    PickupDetails,
)
from lastmile.domain.tracking import (
    DeliveryAttempt,
    DeliveryConfirmation,
    DeliveryMetrics,
    EstimatedDelivery,
    PickupAttempt,
    TrackingSession,
)

from .models import OfferModel, TrackingSessionModel

pickup_adapter = TypeAdapter(PickupDetails)
delivery_adapter = TypeAdapter(DeliveryDetails)
package_adapter = TypeAdapter(PackageDetails)
payment_adapter = TypeAdapter(PaymentTerms)
status_history_adapter = TypeAdapter(list[StatusHistoryEntry])

events_adapter = TypeAdapter(list[TrackingEvent])
locations_adapter = TypeAdapter(list[LocationFix])
issues_adapter = TypeAdapter(list[Issue])
pickup_attempts_adapter = TypeAdapter(list[PickupAttempt])
delivery_attempts_adapter = TypeAdapter(list[DeliveryAttempt])
status_timestamps_adapter = TypeAdapter(dict[TrackingStatus, datetime])
estimated_delivery_adapter = TypeAdapter(Optional[EstimatedDelivery])
confirmation_adapter = TypeAdapter(Optional[DeliveryConfirmation])
metrics_adapter = TypeAdapter(DeliveryMetrics)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Offers ────────────────────────────────────────────────────────────


def offer_to_row(
    offer: Offer, row: Optional[OfferModel] = None, *, h3_resolution: int = 8
) -> OfferModel:
    row = row or OfferModel()
    pickup_lng, pickup_lat = offer.pickup.coordinates
    delivery_lng, delivery_lat = offer.delivery.coordinates

    row.business_id = offer.business_id
    row.rider_id = offer.rider_id
    row.title = offer.title
    row.description = offer.description
    row.status = offer.status
    row.pickup = pickup_adapter.dump_python(offer.pickup, mode="json")
    row.delivery = delivery_adapter.dump_python(offer.delivery, mode="json")
    row.package = package_adapter.dump_python(offer.package, mode="json")
    row.payment = payment_adapter.dump_python(offer.payment, mode="json")
    row.status_history = status_history_adapter.dump_python(
        offer.status_history.to_list(), mode="json"
    )

    row.pickup_lat, row.pickup_lng = pickup_lat, pickup_lng
    row.delivery_lat, row.delivery_lng = delivery_lat, delivery_lng
    row.pickup_h3_cell = geo.h3_cell(offer.pickup.coordinates, h3_resolution)
    row.payment_amount = offer.payment.amount
    row.weight_kg = offer.package.weight
    row.fragile = offer.package.fragile

    row.estimated_distance = offer.estimated_distance
    row.estimated_duration = offer.estimated_duration
    row.actual_distance = offer.actual_distance
    row.actual_duration = offer.actual_duration

    row.created_at = offer.created_at
    row.accepted_at = offer.accepted_at
    row.picked_up_at = offer.picked_up_at
    row.in_transit_at = offer.in_transit_at
    row.delivered_at = offer.delivered_at
    row.completed_at = offer.completed_at
    row.cancelled_at = offer.cancelled_at
    return row


def offer_from_row(row: OfferModel, clock: Clock) -> Offer:
    return Offer(
        id=row.id,
        business_id=row.business_id,
        rider_id=row.rider_id,
        title=row.title,
        description=row.description,
        status=row.status,
        pickup=pickup_adapter.validate_python(row.pickup),
        delivery=delivery_adapter.validate_python(row.delivery),
        package=package_adapter.validate_python(row.package),
        payment=payment_adapter.validate_python(row.payment),
        status_history=StatusHistory(status_history_adapter.validate_python(row.status_history)),
        estimated_distance=row.estimated_distance,
        estimated_duration=row.estimated_duration,
        actual_distance=row.actual_distance,
        actual_duration=row.actual_duration,
        created_at=as_utc(row.created_at),
        accepted_at=as_utc(row.accepted_at),
        picked_up_at=as_utc(row.picked_up_at),
        in_transit_at=as_utc(row.in_transit_at),
        delivered_at=as_utc(row.delivered_at),
        completed_at=as_utc(row.completed_at),
        cancelled_at=as_utc(row.cancelled_at),
        clock=clock,
    )


# ── Tracking sessions ─────────────────────────────────────────────────


def session_to_row(
    tracking: TrackingSession, row: Optional[TrackingSessionModel] = None
) -> TrackingSessionModel:
    row = row or TrackingSessionModel()

    row.offer_id = tracking.offer_id
    row.rider_id = tracking.rider_id
    row.business_id = tracking.business_id
    row.current_status = tracking.current_status
    row.is_active = tracking.is_active
    row.vehicle_type = tracking.vehicle_type.value

    row.status_timestamps = status_timestamps_adapter.dump_python(
        tracking.status_timestamps, mode="json"
    )
    row.events = events_adapter.dump_python(tracking.events.to_list(), mode="json")
    row.location_history = locations_adapter.dump_python(
        tracking.location_history.to_list(), mode="json"
    )
    row.pickup_attempts = pickup_attempts_adapter.dump_python(
        tracking.pickup_attempts, mode="json"
    )
    row.delivery_attempts = delivery_attempts_adapter.dump_python(
        tracking.delivery_attempts, mode="json"
    )
    row.issues = issues_adapter.dump_python(tracking.issues.to_list(), mode="json")
    row.estimated_delivery = estimated_delivery_adapter.dump_python(
        tracking.estimated_delivery, mode="json"
    )
    row.delivery_confirmation = confirmation_adapter.dump_python(
        tracking.delivery_confirmation, mode="json"
    )
    row.metrics = metrics_adapter.dump_python(tracking.metrics, mode="json")

    if tracking.current_location is not None:
        row.current_lng, row.current_lat = tracking.current_location
    else:
        row.current_lng = row.current_lat = None
    row.last_location_update = tracking.last_location_update

    row.estimated_distance = tracking.estimated_distance
    row.actual_distance = tracking.actual_distance
    row.accepted_at = tracking.accepted_at
    row.estimated_pickup_time = tracking.estimated_pickup_time
    row.actual_pickup_time = tracking.actual_pickup_time
    row.estimated_delivery_time = tracking.estimated_delivery_time
    row.actual_delivery_time = tracking.actual_delivery_time
    row.estimated_arrival_time = tracking.estimated_arrival_time
    row.completed_at = tracking.completed_at
    row.cancelled_at = tracking.cancelled_at
    return row


def session_from_row(
    row: TrackingSessionModel,
    clock: Clock,
    *,
    event_capacity: Optional[int] = None,
    location_capacity: Optional[int] = None,
) -> TrackingSession:
    events = events_adapter.validate_python(row.events)
    locations = locations_adapter.validate_python(row.location_history)
    current = (
        (row.current_lng, row.current_lat)
        if row.current_lng is not None and row.current_lat is not None
        else None
    )
    return TrackingSession(
        id=row.id,
        offer_id=row.offer_id,
        rider_id=row.rider_id,
        business_id=row.business_id,
        current_status=row.current_status,
        is_active=row.is_active,
        vehicle_type=VehicleType(row.vehicle_type),
        status_timestamps=status_timestamps_adapter.validate_python(row.status_timestamps),
        events=EventLog(events, capacity=event_capacity) if event_capacity else EventLog(events),
        location_history=(
            LocationHistory(locations, capacity=location_capacity)
            if location_capacity
            else LocationHistory(locations)
        ),
        pickup_attempts=pickup_attempts_adapter.validate_python(row.pickup_attempts),
        delivery_attempts=delivery_attempts_adapter.validate_python(row.delivery_attempts),
        issues=IssueTracker(issues_adapter.validate_python(row.issues)),
        estimated_delivery=estimated_delivery_adapter.validate_python(row.estimated_delivery),
        delivery_confirmation=confirmation_adapter.validate_python(row.delivery_confirmation),
        metrics=metrics_adapter.validate_python(row.metrics or {}),
        current_location=current,
        last_location_update=as_utc(row.last_location_update),
        estimated_distance=row.estimated_distance,
        actual_distance=row.actual_distance or 0.0,
        accepted_at=as_utc(row.accepted_at),
        estimated_pickup_time=as_utc(row.estimated_pickup_time),
        actual_pickup_time=as_utc(row.actual_pickup_time),
        estimated_delivery_time=as_utc(row.estimated_delivery_time),
        actual_delivery_time=as_utc(row.actual_delivery_time),
        estimated_arrival_time=as_utc(row.estimated_arrival_time),
        completed_at=as_utc(row.completed_at),
        cancelled_at=as_utc(row.cancelled_at),
        clock=clock,
    )
