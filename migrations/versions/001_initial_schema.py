"""Initial schema: offers and tracking sessions.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

OFFER_STATUSES = (
    "open",
    "accepted",
    "picked_up",
    "in_transit",
    "delivered",
    "completed",
    "cancelled",
)

TRACKING_STATUSES = (
    "accepted",
    "heading_to_pickup",
    "arrived_at_pickup",
    "picked_up",
    "in_transit",
    "arrived_at_delivery",
    "delivered",
    "completed",
    "cancelled",
)


def upgrade() -> None:
    # ── offers ────────────────────────────────────────────────────────
    op.create_table(
        "offers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("business_id", sa.Integer, nullable=False),
        sa.Column("rider_id", sa.Integer, nullable=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column(
            "status",
            sa.Enum(*OFFER_STATUSES, name="offerstatus"),
            default="open",
            nullable=False,
        ),
        sa.Column("pickup", sa.JSON, nullable=False),
        sa.Column("delivery", sa.JSON, nullable=False),
        sa.Column("package", sa.JSON, nullable=False),
        sa.Column("payment", sa.JSON, nullable=False),
        sa.Column("status_history", sa.JSON, nullable=False),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("delivery_lat", sa.Float, nullable=False),
        sa.Column("delivery_lng", sa.Float, nullable=False),
        sa.Column("pickup_h3_cell", sa.String(20), nullable=False),
        sa.Column("payment_amount", sa.Float, nullable=False),
        sa.Column("weight_kg", sa.Float, nullable=True),
        sa.Column("fragile", sa.Boolean, default=False, nullable=False),
        sa.Column("estimated_distance", sa.Integer, nullable=True),
        sa.Column("estimated_duration", sa.Integer, nullable=True),
        sa.Column("actual_distance", sa.Float, nullable=True),
        sa.Column("actual_duration", sa.Integer, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("picked_up_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("in_transit_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_offers_status", "offers", ["status"])
    op.create_index("idx_offers_business", "offers", ["business_id"])
    op.create_index("idx_offers_rider", "offers", ["rider_id"])
    op.create_index("idx_offers_pickup_cell", "offers", ["pickup_h3_cell"])

    # ── tracking_sessions ─────────────────────────────────────────────
    op.create_table(
        "tracking_sessions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "offer_id",
            sa.Integer,
            sa.ForeignKey("offers.id"),
            unique=True,
            nullable=False,
        ),
        sa.Column("rider_id", sa.Integer, nullable=False),
        sa.Column("business_id", sa.Integer, nullable=False),
        sa.Column(
            "current_status",
            sa.Enum(*TRACKING_STATUSES, name="trackingstatus"),
            default="accepted",
            nullable=False,
        ),
        sa.Column("is_active", sa.Boolean, default=True, nullable=False),
        sa.Column("vehicle_type", sa.String(20), nullable=False),
        sa.Column("status_timestamps", sa.JSON, nullable=False),
        sa.Column("events", sa.JSON, nullable=False),
        sa.Column("location_history", sa.JSON, nullable=False),
        sa.Column("pickup_attempts", sa.JSON, nullable=False),
        sa.Column("delivery_attempts", sa.JSON, nullable=False),
        sa.Column("issues", sa.JSON, nullable=False),
        sa.Column("estimated_delivery", sa.JSON, nullable=True),
        sa.Column("delivery_confirmation", sa.JSON, nullable=True),
        sa.Column("metrics", sa.JSON, nullable=False),
        sa.Column("current_lat", sa.Float, nullable=True),
        sa.Column("current_lng", sa.Float, nullable=True),
        sa.Column("last_location_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_distance", sa.Float, nullable=True),
        sa.Column("actual_distance", sa.Float, default=0.0, nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("estimated_pickup_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_pickup_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_delivery_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_delivery_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_arrival_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_tracking_rider", "tracking_sessions", ["rider_id"])
    op.create_index("idx_tracking_business", "tracking_sessions", ["business_id"])
    op.create_index("idx_tracking_status", "tracking_sessions", ["current_status"])
    op.create_index("idx_tracking_active", "tracking_sessions", ["is_active"])


def downgrade() -> None:
    op.drop_table("tracking_sessions")
    op.drop_table("offers")
    op.execute("DROP TYPE IF EXISTS trackingstatus")
    op.execute("DROP TYPE IF EXISTS offerstatus")
