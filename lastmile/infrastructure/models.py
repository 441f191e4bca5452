"""
SQLAlchemy ORM models.

Tables
------
* ``offers``             -- delivery contracts posted by businesses
* ``tracking_sessions``  -- one per accepted offer, holds the live trail

Nested, append-only values (status history, events, GPS fixes, issues,
attempts) live in JSON columns; the columns the engine filters on are
flattened next to them.

Indexes
-------
* **B-Tree** on ``status``, ``business_id``, ``rider_id`` and ``is_active``
  for the dashboard queries.
* **B-Tree** on ``pickup_h3_cell``: nearby search pre-filters on a disk of
  H3 cells before the exact haversine check.
* **Unique** ``tracking_sessions.offer_id``: one session per offer.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)

from .database import Base
from lastmile.domain.enums import OfferStatus, TrackingStatus


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class OfferModel(Base):
    __tablename__ = "offers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    business_id = Column(Integer, nullable=False)
    rider_id = Column(Integer, nullable=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    status = Column(
        Enum(OfferStatus, name="offerstatus", values_callable=_enum_values),
        default=OfferStatus.OPEN,
        nullable=False,
    )

    pickup = Column(JSON, nullable=False)
    delivery = Column(JSON, nullable=False)
    package = Column(JSON, nullable=False)
    payment = Column(JSON, nullable=False)
    status_history = Column(JSON, nullable=False, default=list)

    # Flattened for filtering without touching the JSON payloads
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    delivery_lat = Column(Float, nullable=False)
    delivery_lng = Column(Float, nullable=False)
    pickup_h3_cell = Column(String(20), nullable=False)
    payment_amount = Column(Float, nullable=False)
    weight_kg = Column(Float, nullable=True)
    fragile = Column(Boolean, default=False, nullable=False)

    estimated_distance = Column(Integer, nullable=True)  # meters
    estimated_duration = Column(Integer, nullable=True)  # minutes
    actual_distance = Column(Float, nullable=True)
    actual_duration = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    picked_up_at = Column(DateTime(timezone=True), nullable=True)
    in_transit_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_offers_status", "status"),
        Index("idx_offers_business", "business_id"),
        Index("idx_offers_rider", "rider_id"),
        Index("idx_offers_pickup_cell", "pickup_h3_cell"),
    )


class TrackingSessionModel(Base):
    __tablename__ = "tracking_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    offer_id = Column(Integer, ForeignKey("offers.id"), unique=True, nullable=False)
    rider_id = Column(Integer, nullable=False)
    business_id = Column(Integer, nullable=False)

    current_status = Column(
        Enum(TrackingStatus, name="trackingstatus", values_callable=_enum_values),
        default=TrackingStatus.ACCEPTED,
        nullable=False,
    )
    is_active = Column(Boolean, default=True, nullable=False)
    vehicle_type = Column(String(20), nullable=False)

    status_timestamps = Column(JSON, nullable=False, default=dict)
    events = Column(JSON, nullable=False, default=list)
    location_history = Column(JSON, nullable=False, default=list)
    pickup_attempts = Column(JSON, nullable=False, default=list)
    delivery_attempts = Column(JSON, nullable=False, default=list)
    issues = Column(JSON, nullable=False, default=list)
    estimated_delivery = Column(JSON, nullable=True)
    delivery_confirmation = Column(JSON, nullable=True)
    metrics = Column(JSON, nullable=False, default=dict)

    current_lat = Column(Float, nullable=True)
    current_lng = Column(Float, nullable=True)
    last_location_update = Column(DateTime(timezone=True), nullable=True)

    estimated_distance = Column(Float, nullable=True)  # meters
    actual_distance = Column(Float, default=0.0, nullable=False)

    accepted_at = Column(DateTime(timezone=True), nullable=False)
    estimated_pickup_time = Column(DateTime(timezone=True), nullable=True)
    actual_pickup_time = Column(DateTime(timezone=True), nullable=True)
    estimated_delivery_time = Column(DateTime(timezone=True), nullable=True)
    actual_delivery_time = Column(DateTime(timezone=True), nullable=True)
    estimated_arrival_time = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_tracking_rider", "rider_id"),
        Index("idx_tracking_business", "business_id"),
        Index("idx_tracking_status", "current_status"),
        Index("idx_tracking_active", "is_active"),
    )
