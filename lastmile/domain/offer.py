"""
Offer aggregate: the commercial contract between a business and a rider.

Patterns used
-------------
- **State Pattern**: ``OFFER_TRANSITIONS`` is the only source of legal
  moves; ``validate_transition`` layers the role rules on top of it and
  ``update_status`` applies a validated move atomically (status, timestamp
  field and history entry) or raises without touching anything.
- **Event sourcing (audit)**: ``status_history`` only ever appends.

The acceptance race is *not* settled here.  ``validate_transition`` sees a
snapshot; the repository's conditional UPDATE decides the winner.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence

from . import geo
from .clock import Clock, utc_now
from .enums import (
    OFFER_STATUS_TIMESTAMP_FIELDS,
    OFFER_TRANSITIONS,
    TERMINAL_OFFER_STATUSES,
    Currency,
    OfferStatus,
    PaymentMethod,
    VehicleType,
)
from .exceptions import InvalidStatusTransition
from .history import StatusHistory, StatusHistoryEntry
from .roles import Business, Rider, Role, resolve_role

# Forward path used when the offer has to catch up with its tracking session
OFFER_PROGRESSION: tuple[OfferStatus, ...] = (
    OfferStatus.OPEN,
    OfferStatus.ACCEPTED,
    OfferStatus.PICKED_UP,
    OfferStatus.IN_TRANSIT,
    OfferStatus.DELIVERED,
    OfferStatus.COMPLETED,
)

RIDER_ONLY_STATUSES = frozenset(
    {OfferStatus.PICKED_UP, OfferStatus.IN_TRANSIT, OfferStatus.DELIVERED}
)


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Dimensions:
    length: float  # cm
    width: float
    height: float

    @property
    def volume_cm3(self) -> float:
        return geo.package_volume_cm3(self.length, self.width, self.height)


@dataclass(frozen=True)
class PackageDetails:
    weight: Optional[float] = None  # kg
    dimensions: Optional[Dimensions] = None
    fragile: bool = False
    special_instructions: Optional[str] = None

    @property
    def volume_cm3(self) -> Optional[float]:
        return self.dimensions.volume_cm3 if self.dimensions else None

    def fits(self, vehicle_type: VehicleType | str) -> bool:
        return geo.is_vehicle_compatible(vehicle_type, self.weight, self.volume_cm3)


@dataclass(frozen=True)
class PickupDetails:
    address: str
    coordinates: tuple[float, float]  # (lng, lat)
    contact_name: str
    contact_phone: str
    available_from: Optional[datetime] = None
    available_until: Optional[datetime] = None
    instructions: Optional[str] = None


@dataclass(frozen=True)
class DeliveryDetails:
    address: str
    coordinates: tuple[float, float]  # (lng, lat)
    contact_name: str
    contact_phone: str
    deliver_by: Optional[datetime] = None
    instructions: Optional[str] = None


@dataclass(frozen=True)
class PaymentTerms:
    amount: float
    currency: Currency = Currency.USD
    method: PaymentMethod = PaymentMethod.DIGITAL


# ── Results ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TransitionResult:
    is_valid: bool
    error: Optional[str] = None
    valid_transitions: tuple[OfferStatus, ...] = ()
    is_noop: bool = False


@dataclass(frozen=True)
class StatusUpdateResult:
    previous_status: OfferStatus
    new_status: OfferStatus
    timestamp: datetime
    actor: int


@dataclass(frozen=True)
class ModificationPermissions:
    can_modify: bool
    allowed_actions: tuple[str, ...] = ()
    reason: Optional[str] = None


@dataclass(frozen=True)
class OfferValidationError:
    field: str
    message: str


def _transition_error(current: OfferStatus, target: OfferStatus) -> str:
    return f"Invalid status transition from '{current.value}' to '{target.value}'"


# ── Aggregate ─────────────────────────────────────────────────────────


@dataclass
class Offer:
    business_id: int
    title: str
    pickup: PickupDetails
    delivery: DeliveryDetails
    payment: PaymentTerms
    package: PackageDetails = field(default_factory=PackageDetails)
    description: Optional[str] = None
    id: Optional[int] = None
    rider_id: Optional[int] = None
    status: OfferStatus = OfferStatus.OPEN
    status_history: StatusHistory = field(default_factory=StatusHistory)
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    in_transit_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    estimated_distance: Optional[int] = None  # meters
    estimated_duration: Optional[int] = None  # minutes
    actual_distance: Optional[float] = None  # meters
    actual_duration: Optional[int] = None  # minutes
    clock: Clock = field(default=utc_now, repr=False, compare=False)

    @classmethod
    def create(
        cls,
        *,
        business_id: int,
        title: str,
        pickup: PickupDetails,
        delivery: DeliveryDetails,
        payment: PaymentTerms,
        package: Optional[PackageDetails] = None,
        description: Optional[str] = None,
        clock: Clock = utc_now,
    ) -> "Offer":
        """New ``open`` offer whose history starts with the creation entry."""
        now = clock()
        offer = cls(
            business_id=business_id,
            title=title,
            pickup=pickup,
            delivery=delivery,
            payment=payment,
            package=package or PackageDetails(),
            description=description,
            created_at=now,
            clock=clock,
        )
        offer.status_history.append(
            StatusHistoryEntry(
                status=OfferStatus.OPEN,
                timestamp=now,
                actor=business_id,
                notes="Offer created",
            )
        )
        return offer

    # ── Roles & permissions ───────────────────────────────────────

    def get_role(self, actor_id: int) -> Role:
        return resolve_role(actor_id, self.business_id, self.rider_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_OFFER_STATUSES

    @property
    def valid_next_states(self) -> tuple[OfferStatus, ...]:
        return OFFER_TRANSITIONS[self.status]

    def can_be_modified_by(self, actor_id: int) -> ModificationPermissions:
        if self.is_terminal:
            return ModificationPermissions(False, reason="Offer is in terminal state")

        role = self.get_role(actor_id)
        if isinstance(role, Business) and self.status is OfferStatus.OPEN:
            return ModificationPermissions(True, allowed_actions=("cancel", "edit"))
        if isinstance(role, Rider):
            return ModificationPermissions(True, allowed_actions=("update_status", "cancel"))
        return ModificationPermissions(False, reason="Insufficient permissions")

    # ── State machine ─────────────────────────────────────────────

    def validate_transition(
        self,
        target: OfferStatus | str,
        actor_id: int,
        *,
        from_status: Optional[OfferStatus] = None,
    ) -> TransitionResult:
        """
        Check *target* against the transition table and the role rules.

        ``from_status`` evaluates the move from a hypothetical status; it is
        used to plan multi-step catch-ups without mutating the offer.
        """
        target = OfferStatus(target)
        current = from_status or self.status

        if current in TERMINAL_OFFER_STATUSES:
            return TransitionResult(False, error=_transition_error(current, target))

        valid = OFFER_TRANSITIONS[current]
        role = self.get_role(actor_id)

        def deny(message: str) -> TransitionResult:
            return TransitionResult(False, error=message, valid_transitions=valid)

        if target is OfferStatus.ACCEPTED:
            if isinstance(role, Business):
                return deny("Only riders can accept offers")
            if self.rider_id is not None:
                if not isinstance(role, Rider):
                    return deny("Offer already accepted by another rider")
                if current is OfferStatus.ACCEPTED:
                    return TransitionResult(True, valid_transitions=valid, is_noop=True)

        if target not in valid:
            return deny(_transition_error(current, target))

        if target in RIDER_ONLY_STATUSES and not isinstance(role, Rider):
            return deny("Only the assigned rider can update this status")
        if target is OfferStatus.COMPLETED and not isinstance(role, (Business, Rider)):
            return deny("Only business owners or assigned riders can complete offers")
        if target is OfferStatus.CANCELLED and not isinstance(role, (Business, Rider)):
            return deny("Only the business owner or assigned rider can cancel this offer")

        return TransitionResult(True, valid_transitions=valid)

    def update_status(
        self,
        target: OfferStatus | str,
        actor_id: int,
        *,
        notes: Optional[str] = None,
        location: Optional[Sequence[float]] = None,
    ) -> StatusUpdateResult:
        """Apply a validated transition or raise ``InvalidStatusTransition``."""
        target = OfferStatus(target)
        result = self.validate_transition(target, actor_id)
        if not result.is_valid:
            raise InvalidStatusTransition(
                result.error or "Invalid status transition", result.valid_transitions
            )

        now = self.clock()
        if result.is_noop:
            return StatusUpdateResult(self.status, self.status, now, actor_id)

        point = geo.validate_coordinates(location) if location is not None else None
        previous = self.status

        self.status = target
        setattr(self, OFFER_STATUS_TIMESTAMP_FIELDS[target], now)
        if target is OfferStatus.ACCEPTED:
            self.rider_id = actor_id
        if target is OfferStatus.COMPLETED and self.accepted_at is not None:
            self.actual_duration = round((now - self.accepted_at).total_seconds() / 60)

        self.status_history.append(
            StatusHistoryEntry(
                status=target, timestamp=now, actor=actor_id, notes=notes, location=point
            )
        )
        return StatusUpdateResult(previous, target, now, actor_id)

    def plan_advance(self, target: OfferStatus | str, actor_id: int) -> list[OfferStatus]:
        """
        Statuses to apply, in order, to bring the offer to *target*.

        Direct moves return ``[target]``.  A target further along the
        forward path is reached step by step, each step validated from the
        previous one.  A target already reached or passed yields ``[]``.
        Raises ``InvalidStatusTransition`` on the first illegal step.
        """
        target = OfferStatus(target)
        if target is self.status:
            return []

        steps: list[OfferStatus]
        if target in OFFER_TRANSITIONS[self.status] or target not in OFFER_PROGRESSION:
            steps = [target]
        elif self.status not in OFFER_PROGRESSION:
            steps = [target]
        else:
            here = OFFER_PROGRESSION.index(self.status)
            there = OFFER_PROGRESSION.index(target)
            if there <= here:
                return []
            steps = list(OFFER_PROGRESSION[here + 1 : there + 1])

        current = self.status
        for step in steps:
            result = self.validate_transition(step, actor_id, from_status=current)
            if not result.is_valid:
                raise InvalidStatusTransition(
                    result.error or "Invalid status transition", result.valid_transitions
                )
            current = step
        return steps

    def advance_to(
        self, target: OfferStatus | str, actor_id: int, *, notes: Optional[str] = None
    ) -> list[StatusUpdateResult]:
        """Apply ``plan_advance``; one history entry per step."""
        return [
            self.update_status(step, actor_id, notes=notes)
            for step in self.plan_advance(target, actor_id)
        ]

    # ── Projections ───────────────────────────────────────────────

    def get_current_status_info(self) -> dict[str, Any]:
        return {
            "current_status": self.status,
            "timestamp": getattr(self, OFFER_STATUS_TIMESTAMP_FIELDS[self.status]),
            "valid_next_states": list(self.valid_next_states),
            "is_terminal": self.is_terminal,
            "assigned_rider": self.rider_id,
            "status_history": [asdict(e) for e in self.status_history],
        }

    def get_summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "pickup": {
                "address": self.pickup.address,
                "coordinates": self.pickup.coordinates,
                "available_from": self.pickup.available_from,
                "available_until": self.pickup.available_until,
            },
            "delivery": {
                "address": self.delivery.address,
                "coordinates": self.delivery.coordinates,
                "deliver_by": self.delivery.deliver_by,
            },
            "payment": asdict(self.payment),
            "status": self.status,
            "estimated_distance": self.estimated_distance,
            "estimated_duration": self.estimated_duration,
            "created_at": self.created_at,
            "accepted_by": self.rider_id,
            "accepted_at": self.accepted_at,
        }

    # ── Estimates ─────────────────────────────────────────────────

    def calculate_distance(self) -> Optional[int]:
        """Straight-line meters from pickup to drop-off (None if unknown)."""
        return geo.distance(self.pickup.coordinates, self.delivery.coordinates)

    def estimate_delivery_time(self, vehicle_type: VehicleType | str = VehicleType.BIKE) -> Optional[int]:
        distance_m = self.estimated_distance or self.calculate_distance()
        if not distance_m:
            return None
        return geo.estimate_duration(distance_m, vehicle_type)

    def update_estimates(self, vehicle_type: VehicleType | str = VehicleType.BIKE) -> "Offer":
        self.estimated_distance = self.calculate_distance()
        self.estimated_duration = self.estimate_delivery_time(vehicle_type)
        return self

    def fits_vehicle(self, vehicle_type: VehicleType | str) -> bool:
        return self.package.fits(vehicle_type)

    # ── Validation ────────────────────────────────────────────────

    def validate(self) -> list[OfferValidationError]:
        """Field-level problems; an empty list means the offer is publishable."""
        errors: list[OfferValidationError] = []

        def err(field_name: str, message: str) -> None:
            errors.append(OfferValidationError(field_name, message))

        if not self.title:
            err("title", "Title is required")
        if not self.pickup.address:
            err("pickup.address", "Pickup address is required")
        if not self.pickup.contact_name:
            err("pickup.contact_name", "Pickup contact name is required")
        if not self.pickup.contact_phone:
            err("pickup.contact_phone", "Pickup contact phone is required")
        if not self.delivery.address:
            err("delivery.address", "Delivery address is required")
        if not self.delivery.contact_name:
            err("delivery.contact_name", "Delivery contact name is required")
        if not self.delivery.contact_phone:
            err("delivery.contact_phone", "Delivery contact phone is required")
        if not self.payment.amount or self.payment.amount <= 0:
            err("payment.amount", "Valid payment amount is required")

        for name, coords in (
            ("pickup.coordinates", self.pickup.coordinates),
            ("delivery.coordinates", self.delivery.coordinates),
        ):
            try:
                geo.validate_coordinates(coords)
            except ValueError:
                err(name, f"Valid {name.split('.')[0]} coordinates are required")

        window_start, window_end = self.pickup.available_from, self.pickup.available_until
        if window_start and window_end and window_start >= window_end:
            err(
                "pickup.available_until",
                "Pickup available until time must be after available from time",
            )
        if self.delivery.deliver_by and self.delivery.deliver_by <= self.clock():
            err("delivery.deliver_by", "Delivery deadline must be in the future")

        return errors
