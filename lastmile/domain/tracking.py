"""
Tracking session: the operational record of one offer's execution.

The session is a finer state machine than the offer.  Its status only
moves through events: ``add_event`` appends to the event log and looks the
event type up in ``EVENT_STATUS_MAP``; every other mutator (attempts,
issues, confirmations, location fixes) funnels through ``add_event`` so the
log is the single ordered record of what happened.

Once the session reaches ``completed`` or ``cancelled`` it is archived:
``is_active`` flips to False, history is kept and every mutator raises
``TrackingSessionClosed``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from . import geo
from .clock import Clock, utc_now
from .enums import (
    EVENT_STATUS_MAP,
    PHASE_BY_STATUS,
    PROGRESS_BY_STATUS,
    ConfirmationType,
    ContactMethod,
    DeliveryMethod,
    IssueImpact,
    IssueSeverity,
    IssueType,
    TimeOfDay,
    TrackingEventType,
    TrackingStatus,
    TrafficLevel,
    VehicleType,
    WeatherCondition,
)
from .exceptions import DeliveryNotConfirmable, TrackingSessionClosed
from .history import EventLog, LocationFix, LocationHistory, TrackingEvent
from .issues import Issue, IssueTracker
from .offer import Offer

DEFAULT_TRACKING_WINDOW = 20

CONFIRMABLE_STATUSES = frozenset(
    {TrackingStatus.ARRIVED_AT_DELIVERY, TrackingStatus.DELIVERED}
)


def _minutes(start: datetime, end: datetime) -> int:
    return round((end - start).total_seconds() / 60)


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class ContactAttempt:
    method: ContactMethod
    timestamp: datetime
    successful: Optional[bool] = None
    response: Optional[str] = None


@dataclass(frozen=True)
class PickupAttempt:
    timestamp: datetime
    successful: bool
    notes: Optional[str] = None
    contact_attempts: tuple[ContactAttempt, ...] = ()


@dataclass(frozen=True)
class DeliveryAttempt:
    timestamp: datetime
    successful: bool
    notes: Optional[str] = None
    delivery_method: Optional[DeliveryMethod] = None
    signature_required: bool = False
    signature_obtained: bool = False
    photo_taken: bool = False
    contact_attempts: tuple[ContactAttempt, ...] = ()


@dataclass(frozen=True)
class EstimatedDelivery:
    distance_km: float
    estimated_duration: int  # minutes
    estimated_time: datetime
    calculated_at: datetime
    factors: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryConfirmation:
    type: ConfirmationType
    confirmed_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    location: Optional[tuple[float, float]] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class DeliveryMetrics:
    pickup_duration: Optional[int] = None  # minutes, accepted -> picked up
    transit_duration: Optional[int] = None  # minutes, picked up -> delivered
    total_duration: Optional[int] = None  # minutes, accepted -> completed
    average_speed: Optional[float] = None  # km/h over the transit leg
    on_time_performance: Optional[bool] = None
    delay_minutes: Optional[int] = None


ContactInput = Union[ContactAttempt, Mapping[str, Any]]


# ── Aggregate ─────────────────────────────────────────────────────────


@dataclass
class TrackingSession:
    offer_id: int
    rider_id: int
    business_id: int
    accepted_at: datetime
    id: Optional[int] = None
    current_status: TrackingStatus = TrackingStatus.ACCEPTED
    status_timestamps: dict[TrackingStatus, datetime] = field(default_factory=dict)
    events: EventLog = field(default_factory=EventLog)
    location_history: LocationHistory = field(default_factory=LocationHistory)
    current_location: Optional[tuple[float, float]] = None
    last_location_update: Optional[datetime] = None
    pickup_attempts: list[PickupAttempt] = field(default_factory=list)
    delivery_attempts: list[DeliveryAttempt] = field(default_factory=list)
    issues: IssueTracker = field(default_factory=IssueTracker)
    vehicle_type: VehicleType = VehicleType.BIKE
    estimated_distance: Optional[float] = None  # meters
    actual_distance: float = 0.0  # meters, summed over the location trail
    estimated_pickup_time: Optional[datetime] = None
    actual_pickup_time: Optional[datetime] = None
    estimated_delivery_time: Optional[datetime] = None  # deadline from the offer
    actual_delivery_time: Optional[datetime] = None
    estimated_arrival_time: Optional[datetime] = None  # latest ETA
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    estimated_delivery: Optional[EstimatedDelivery] = None
    delivery_confirmation: Optional[DeliveryConfirmation] = None
    metrics: DeliveryMetrics = field(default_factory=DeliveryMetrics)
    is_active: bool = True
    clock: Clock = field(default=utc_now, repr=False, compare=False)

    @classmethod
    def create_for_offer(
        cls,
        offer: Offer,
        *,
        vehicle_type: VehicleType | str = VehicleType.BIKE,
        event_capacity: Optional[int] = None,
        location_capacity: Optional[int] = None,
        clock: Clock = utc_now,
    ) -> "TrackingSession":
        """
        Fresh session seeded from an accepted offer.

        Idempotency (one session per offer) is enforced by the repository;
        this factory always builds a new object.
        """
        if offer.id is None or offer.rider_id is None:
            raise ValueError("Offer must be accepted by a rider")

        accepted_at = offer.accepted_at or clock()
        session = cls(
            offer_id=offer.id,
            rider_id=offer.rider_id,
            business_id=offer.business_id,
            accepted_at=accepted_at,
            vehicle_type=VehicleType(vehicle_type),
            status_timestamps={TrackingStatus.ACCEPTED: accepted_at},
            events=EventLog(capacity=event_capacity) if event_capacity else EventLog(),
            location_history=(
                LocationHistory(capacity=location_capacity)
                if location_capacity
                else LocationHistory()
            ),
            estimated_distance=offer.estimated_distance or offer.calculate_distance(),
            estimated_pickup_time=offer.pickup.available_from,
            estimated_delivery_time=offer.delivery.deliver_by,
            clock=clock,
        )
        session.add_event(
            TrackingEventType.DELIVERY_ACCEPTED,
            notes="Delivery accepted by rider",
            reported_by=offer.rider_id,
        )
        return session

    # ── Events ────────────────────────────────────────────────────

    def ensure_active(self) -> None:
        if not self.is_active:
            raise TrackingSessionClosed(
                f"Tracking session for offer {self.offer_id} is archived "
                f"({self.current_status.value})"
            )

    def add_event(
        self,
        event_type: TrackingEventType | str,
        *,
        notes: Optional[str] = None,
        location: Optional[Sequence[float]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        reported_by: Optional[int] = None,
    ) -> TrackingEvent:
        self.ensure_active()
        event_type = TrackingEventType(event_type)
        point = geo.validate_coordinates(location) if location is not None else None
        now = self.clock()

        event = self.events.append(
            TrackingEvent(
                event_type=event_type,
                timestamp=now,
                notes=notes,
                location=point,
                metadata=dict(metadata or {}),
                reported_by=reported_by,
            )
        )
        self._apply_status(event_type, now)
        return event

    def _apply_status(self, event_type: TrackingEventType, now: datetime) -> None:
        status = EVENT_STATUS_MAP.get(event_type)
        if status is None:
            return

        self.current_status = status
        self.status_timestamps[status] = now
        if status is TrackingStatus.PICKED_UP:
            self.actual_pickup_time = now
        elif status is TrackingStatus.DELIVERED:
            self.actual_delivery_time = now
        elif status is TrackingStatus.COMPLETED:
            self.completed_at = now
            self.is_active = False
        elif status is TrackingStatus.CANCELLED:
            self.cancelled_at = now
            self.is_active = False

    # ── Location ──────────────────────────────────────────────────

    def update_location(
        self,
        coordinates: Sequence[float],
        *,
        accuracy: Optional[float] = None,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
    ) -> LocationFix:
        """Record a GPS fix in arrival order and add it to the travelled distance."""
        self.ensure_active()
        point = geo.validate_coordinates(coordinates)
        now = self.clock()

        if self.current_location is not None:
            self.actual_distance += geo.haversine_m(
                self.current_location[1], self.current_location[0], point[1], point[0]
            )

        fix = self.location_history.append(
            LocationFix(
                coordinates=point,
                timestamp=now,
                accuracy=accuracy,
                heading=heading,
                speed=speed,
            )
        )
        self.current_location = point
        self.last_location_update = now

        readings = {"accuracy": accuracy, "heading": heading, "speed": speed}
        self.add_event(
            TrackingEventType.LOCATION_UPDATED,
            location=point,
            metadata={k: v for k, v in readings.items() if v is not None},
            reported_by=self.rider_id,
        )
        return fix

    # ── Attempts ──────────────────────────────────────────────────

    def _contacts(self, contact_attempts: Iterable[ContactInput]) -> tuple[ContactAttempt, ...]:
        now = self.clock()
        contacts = []
        for attempt in contact_attempts:
            if isinstance(attempt, ContactAttempt):
                contacts.append(attempt)
                continue
            contacts.append(
                ContactAttempt(
                    method=ContactMethod(attempt["method"]),
                    timestamp=attempt.get("timestamp") or now,
                    successful=attempt.get("successful"),
                    response=attempt.get("response"),
                )
            )
        return tuple(contacts)

    def add_pickup_attempt(
        self,
        successful: bool,
        *,
        notes: Optional[str] = None,
        contact_attempts: Iterable[ContactInput] = (),
    ) -> PickupAttempt:
        """Log an attempt; only a successful one moves the session to picked_up."""
        self.ensure_active()
        attempt = PickupAttempt(
            timestamp=self.clock(),
            successful=successful,
            notes=notes,
            contact_attempts=self._contacts(contact_attempts),
        )
        self.pickup_attempts.append(attempt)

        self.add_event(
            TrackingEventType.PACKAGE_PICKED_UP
            if successful
            else TrackingEventType.PICKUP_ATTEMPTED,
            notes=notes,
            reported_by=self.rider_id,
        )
        return attempt

    def add_delivery_attempt(
        self,
        successful: bool,
        *,
        notes: Optional[str] = None,
        delivery_method: DeliveryMethod | str | None = None,
        signature_required: bool = False,
        signature_obtained: bool = False,
        photo_taken: bool = False,
        contact_attempts: Iterable[ContactInput] = (),
    ) -> DeliveryAttempt:
        """Log an attempt; only a successful one moves the session to delivered."""
        self.ensure_active()
        method = DeliveryMethod(delivery_method) if delivery_method else None
        attempt = DeliveryAttempt(
            timestamp=self.clock(),
            successful=successful,
            notes=notes,
            delivery_method=method,
            signature_required=signature_required,
            signature_obtained=signature_obtained,
            photo_taken=photo_taken,
            contact_attempts=self._contacts(contact_attempts),
        )
        self.delivery_attempts.append(attempt)

        if successful:
            self.add_event(
                TrackingEventType.PACKAGE_DELIVERED,
                notes=notes,
                metadata={
                    "delivery_method": method.value if method else None,
                    "signature_obtained": signature_obtained,
                    "photo_taken": photo_taken,
                },
                reported_by=self.rider_id,
            )
        else:
            self.add_event(
                TrackingEventType.DELIVERY_ATTEMPTED,
                notes=notes,
                reported_by=self.rider_id,
            )
        return attempt

    # ── Issues ────────────────────────────────────────────────────

    def report_issue(
        self,
        issue_type: IssueType | str,
        description: str,
        *,
        severity: IssueSeverity | str | None = None,
        reported_by: Optional[int] = None,
        impact_on_delivery: IssueImpact | str | None = None,
    ) -> Issue:
        self.ensure_active()
        issue = self.issues.report(
            issue_type,
            description,
            reported_at=self.clock(),
            severity=severity,
            reported_by=reported_by,
            impact_on_delivery=impact_on_delivery,
        )
        self.add_event(
            TrackingEventType.ISSUE_REPORTED,
            notes=description,
            metadata={
                "issue_type": issue.type.value,
                "severity": issue.severity.value,
                "impact": issue.impact_on_delivery.value,
            },
            reported_by=reported_by,
        )
        return issue

    def resolve_issue(
        self,
        index: int,
        *,
        resolution: Optional[str] = None,
        resolved_by: Optional[int] = None,
    ) -> Issue:
        self.ensure_active()
        issue = self.issues.resolve(index, resolved_at=self.clock(), resolution=resolution)
        self.add_event(
            TrackingEventType.ISSUE_RESOLVED,
            notes=resolution,
            metadata={"issue_type": issue.type.value, "issue_index": index},
            reported_by=resolved_by,
        )
        return issue

    @property
    def has_active_issues(self) -> bool:
        return self.issues.has_active

    # ── Confirmation & estimates ──────────────────────────────────

    def confirm_delivery(
        self,
        confirmation_type: ConfirmationType | str,
        *,
        payload: Optional[Mapping[str, Any]] = None,
        location: Optional[Sequence[float]] = None,
        notes: Optional[str] = None,
    ) -> DeliveryConfirmation:
        """
        Store proof of delivery.  Only valid at or after the drop-off; a
        session still at ``arrived_at_delivery`` is marked delivered first.
        """
        self.ensure_active()
        if self.current_status not in CONFIRMABLE_STATUSES:
            raise DeliveryNotConfirmable(
                f"Cannot confirm delivery while status is '{self.current_status.value}'"
            )

        confirmation_type = ConfirmationType(confirmation_type)
        point = geo.validate_coordinates(location) if location is not None else None

        if self.current_status is TrackingStatus.ARRIVED_AT_DELIVERY:
            self.add_event(
                TrackingEventType.PACKAGE_DELIVERED,
                notes=notes,
                location=point,
                reported_by=self.rider_id,
            )

        self.delivery_confirmation = DeliveryConfirmation(
            type=confirmation_type,
            confirmed_at=self.clock(),
            payload=dict(payload or {}),
            location=point,
            notes=notes,
        )
        self.add_event(
            TrackingEventType.DELIVERY_CONFIRMED,
            notes=notes,
            location=point,
            metadata={"confirmation_type": confirmation_type.value},
            reported_by=self.rider_id,
        )
        return self.delivery_confirmation

    def update_estimated_delivery(
        self,
        distance_km: float,
        *,
        traffic: TrafficLevel | str | None = None,
        weather: WeatherCondition | str | None = None,
        time_of_day: TimeOfDay | str | None = None,
        vehicle_type: VehicleType | str | None = None,
    ) -> EstimatedDelivery:
        """
        Recompute the ETA for the remaining *distance_km*.

        Heavier traffic, worse weather and rush hour each slow the base
        vehicle speed, so each can only lengthen ``estimated_duration``.
        """
        self.ensure_active()
        if distance_km is None or distance_km < 0:
            raise ValueError("distance_km must be a non-negative number")

        vehicle = VehicleType(vehicle_type) if vehicle_type else self.vehicle_type
        traffic = TrafficLevel(traffic) if traffic else None
        weather = WeatherCondition(weather) if weather else None
        time_of_day = TimeOfDay(time_of_day) if time_of_day else None

        duration = geo.estimate_duration(
            distance_km * 1000, vehicle, traffic, weather, time_of_day
        )
        now = self.clock()
        self.estimated_delivery = EstimatedDelivery(
            distance_km=distance_km,
            estimated_duration=duration,
            estimated_time=now + timedelta(minutes=duration),
            calculated_at=now,
            factors={
                "distance_km": distance_km,
                "vehicle_type": vehicle.value,
                "traffic": traffic.value if traffic else None,
                "weather": weather.value if weather else None,
                "time_of_day": time_of_day.value if time_of_day else None,
            },
        )
        self.estimated_arrival_time = self.estimated_delivery.estimated_time
        return self.estimated_delivery

    def update_eta(self, eta: datetime) -> None:
        """Manual ETA override supplied by the rider's device."""
        self.ensure_active()
        self.estimated_arrival_time = eta

    # ── Metrics ───────────────────────────────────────────────────

    def compute_metrics(self) -> DeliveryMetrics:
        """Derived metrics for the current state, without storing them."""
        pickup_duration = transit_duration = total_duration = None
        average_speed = on_time = delay = None

        if self.actual_pickup_time:
            pickup_duration = _minutes(self.accepted_at, self.actual_pickup_time)
        if self.actual_pickup_time and self.actual_delivery_time:
            transit_duration = _minutes(self.actual_pickup_time, self.actual_delivery_time)
        if self.completed_at:
            total_duration = _minutes(self.accepted_at, self.completed_at)
        if self.actual_distance and transit_duration:
            average_speed = round((self.actual_distance / 1000) / (transit_duration / 60), 2)

        target = self.estimated_delivery_time or self.estimated_arrival_time
        if target and self.actual_delivery_time:
            on_time = self.actual_delivery_time <= target
            delay = max(0, _minutes(target, self.actual_delivery_time))

        return DeliveryMetrics(
            pickup_duration=pickup_duration,
            transit_duration=transit_duration,
            total_duration=total_duration,
            average_speed=average_speed,
            on_time_performance=on_time,
            delay_minutes=delay,
        )

    def calculate_metrics(self) -> DeliveryMetrics:
        """Recompute and store the derived metrics; missing inputs stay None."""
        self.metrics = self.compute_metrics()
        return self.metrics

    # ── Derived values ────────────────────────────────────────────

    @property
    def total_delivery_time(self) -> Optional[int]:
        if not self.completed_at:
            return None
        return _minutes(self.accepted_at, self.completed_at)

    @property
    def current_phase(self) -> str:
        return PHASE_BY_STATUS[self.current_status]

    @property
    def progress_percentage(self) -> int:
        return PROGRESS_BY_STATUS[self.current_status]

    @property
    def estimated_time_remaining(self) -> Optional[int]:
        eta = self.estimated_arrival_time or self.estimated_delivery_time
        if eta is None:
            return None
        return max(0, _minutes(self.clock(), eta))

    # ── Projections (side-effect free) ────────────────────────────

    def get_summary(self) -> dict[str, Any]:
        latest = self.events.latest
        return {
            "id": self.id,
            "offer_id": self.offer_id,
            "rider_id": self.rider_id,
            "business_id": self.business_id,
            "current_status": self.current_status,
            "current_phase": self.current_phase,
            "progress_percentage": self.progress_percentage,
            "is_active": self.is_active,
            "accepted_at": self.accepted_at,
            "actual_pickup_time": self.actual_pickup_time,
            "actual_delivery_time": self.actual_delivery_time,
            "completed_at": self.completed_at,
            "cancelled_at": self.cancelled_at,
            "estimated_arrival_time": self.estimated_arrival_time,
            "estimated_time_remaining": self.estimated_time_remaining,
            "total_delivery_time": self.total_delivery_time,
            "current_location": self.current_location,
            "last_location_update": self.last_location_update,
            "has_active_issues": self.has_active_issues,
            "latest_event": asdict(latest) if latest else None,
        }

    def get_tracking_data(self, window: int = DEFAULT_TRACKING_WINDOW) -> dict[str, Any]:
        data = self.get_summary()
        data.update(
            {
                "events": [asdict(e) for e in self.events.tail(window)],
                "issues": [asdict(i) for i in self.issues.active],
                "metrics": asdict(self.compute_metrics()),
                "estimated_delivery_time": self.estimated_delivery_time,
            }
        )
        return data

    def get_detailed_tracking(self, window: int = DEFAULT_TRACKING_WINDOW) -> dict[str, Any]:
        data = self.get_tracking_data(window)
        data.update(
            {
                "location_history": [asdict(f) for f in self.location_history.tail(window)],
                "pickup_attempts": [asdict(a) for a in self.pickup_attempts],
                "delivery_attempts": [asdict(a) for a in self.delivery_attempts],
                "delivery_confirmation": (
                    asdict(self.delivery_confirmation) if self.delivery_confirmation else None
                ),
                "estimated_delivery": (
                    asdict(self.estimated_delivery) if self.estimated_delivery else None
                ),
                "status_timestamps": dict(self.status_timestamps),
                "estimated_distance": self.estimated_distance,
                "actual_distance": round(self.actual_distance),
                "vehicle_type": self.vehicle_type,
            }
        )
        return data
