"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work), speaks domain
aggregates on the outside and ORM rows on the inside, and never commits:
the caller owns the transaction.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .mappers import offer_from_row, offer_to_row, session_from_row, session_to_row
from .models import OfferModel, TrackingSessionModel
from lastmile.config import settings
from lastmile.domain import geo
from lastmile.domain.clock import Clock, utc_now
from lastmile.domain.enums import OfferStatus, TrackingStatus, VehicleType
from lastmile.domain.exceptions import OfferAlreadyAccepted, OfferNotFound
from lastmile.domain.offer import Offer
from lastmile.domain.tracking import TrackingSession

logger = logging.getLogger(__name__)


class OfferRepository:
    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Clock = utc_now,
        h3_resolution: int = settings.h3_resolution,
    ):
        self.session = session
        self.clock = clock
        self.h3_resolution = h3_resolution

    async def add(self, offer: Offer) -> Offer:
        row = offer_to_row(offer, h3_resolution=self.h3_resolution)
        self.session.add(row)
        await self.session.flush()
        offer.id = row.id
        return offer

    async def _row(self, offer_id: int) -> Optional[OfferModel]:
        return await self.session.get(OfferModel, offer_id, populate_existing=True)

    async def get_by_id(self, offer_id: int) -> Optional[Offer]:
        row = await self._row(offer_id)
        return offer_from_row(row, self.clock) if row else None

    async def save(self, offer: Offer) -> Offer:
        row = await self._row(offer.id)
        if row is None:
            raise OfferNotFound(f"Offer {offer.id} not found")
        offer_to_row(offer, row, h3_resolution=self.h3_resolution)
        await self.session.flush()
        return offer

    async def claim_for_rider(self, offer: Offer) -> Offer:
        """
        Persist an in-memory acceptance with a compare-and-set UPDATE.

        The row is only written while it is still ``open`` with no rider,
        so of two riders racing on stale snapshots exactly one update hits
        a row.  The loser gets ``OfferAlreadyAccepted``.
        """
        result = await self.session.execute(
            update(OfferModel)
            .where(
                OfferModel.id == offer.id,
                OfferModel.rider_id.is_(None),
                OfferModel.status == OfferStatus.OPEN,
            )
            .values(
                rider_id=offer.rider_id,
                status=offer.status,
                accepted_at=offer.accepted_at,
                status_history=offer_to_row(
                    offer, h3_resolution=self.h3_resolution
                ).status_history,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(
                "Rider %s lost the acceptance race for offer %s", offer.rider_id, offer.id
            )
            raise OfferAlreadyAccepted("Offer already accepted by another rider")
        return offer

    async def find_open_near(
        self,
        coordinates: Sequence[float],
        radius_m: float,
        *,
        min_payment: Optional[float] = None,
        max_payment: Optional[float] = None,
        fragile: Optional[bool] = None,
        vehicle_type: VehicleType | str | None = None,
        limit: int = 50,
    ) -> list[tuple[Offer, int]]:
        """
        Open offers whose pickup lies within *radius_m*, nearest first.

        The H3 disk narrows the candidates in SQL; the haversine check and
        the vehicle capacity check run in Python on what is left.
        """
        cells = geo.cells_within(coordinates, radius_m, self.h3_resolution)
        query = select(OfferModel).where(
            OfferModel.status == OfferStatus.OPEN,
            OfferModel.pickup_h3_cell.in_(cells),
        )
        if min_payment is not None:
            query = query.where(OfferModel.payment_amount >= min_payment)
        if max_payment is not None:
            query = query.where(OfferModel.payment_amount <= max_payment)
        if fragile is not None:
            query = query.where(OfferModel.fragile.is_(fragile))

        result = await self.session.execute(query.execution_options(populate_existing=True))
        matches: list[tuple[Offer, int]] = []
        for row in result.scalars().all():
            offer = offer_from_row(row, self.clock)
            meters = geo.distance(coordinates, offer.pickup.coordinates)
            if meters is None or meters > radius_m:
                continue
            if vehicle_type is not None and not offer.fits_vehicle(vehicle_type):
                continue
            matches.append((offer, meters))

        matches.sort(key=lambda pair: pair[1])
        return matches[:limit]

    async def list_for_business(
        self, business_id: int, status: OfferStatus | str | None = None
    ) -> list[Offer]:
        query = select(OfferModel).where(OfferModel.business_id == business_id)
        if status is not None:
            query = query.where(OfferModel.status == OfferStatus(status))
        result = await self.session.execute(
            query.order_by(OfferModel.created_at.desc()).execution_options(
                populate_existing=True
            )
        )
        return [offer_from_row(row, self.clock) for row in result.scalars().all()]


class TrackingSessionRepository:
    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Clock = utc_now,
        event_capacity: int = settings.event_log_capacity,
        location_capacity: int = settings.location_history_capacity,
    ):
        self.session = session
        self.clock = clock
        self.event_capacity = event_capacity
        self.location_capacity = location_capacity

    def _to_domain(self, row: TrackingSessionModel) -> TrackingSession:
        return session_from_row(
            row,
            self.clock,
            event_capacity=self.event_capacity,
            location_capacity=self.location_capacity,
        )

    async def _row_for_offer(self, offer_id: int) -> Optional[TrackingSessionModel]:
        result = await self.session.execute(
            select(TrackingSessionModel)
            .where(TrackingSessionModel.offer_id == offer_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_offer_id(self, offer_id: int) -> Optional[TrackingSession]:
        row = await self._row_for_offer(offer_id)
        return self._to_domain(row) if row else None

    async def get_or_create(
        self, offer: Offer, vehicle_type: VehicleType | str = VehicleType.BIKE
    ) -> tuple[TrackingSession, bool]:
        """
        Return the offer's session, creating it on first call.

        The unique ``offer_id`` constraint backs this up: a concurrent
        second insert fails with ``IntegrityError`` instead of duplicating.
        """
        existing = await self.get_by_offer_id(offer.id)
        if existing is not None:
            return existing, False

        tracking = TrackingSession.create_for_offer(
            offer,
            vehicle_type=vehicle_type,
            event_capacity=self.event_capacity,
            location_capacity=self.location_capacity,
            clock=self.clock,
        )
        row = session_to_row(tracking)
        self.session.add(row)
        await self.session.flush()
        tracking.id = row.id
        return tracking, True

    async def save(self, tracking: TrackingSession) -> TrackingSession:
        row = await self._row_for_offer(tracking.offer_id)
        if row is None:
            row = session_to_row(tracking)
            self.session.add(row)
        else:
            session_to_row(tracking, row)
        await self.session.flush()
        tracking.id = row.id
        return tracking

    async def _list(self, *criteria) -> list[TrackingSession]:
        result = await self.session.execute(
            select(TrackingSessionModel)
            .where(*criteria)
            .order_by(TrackingSessionModel.accepted_at.desc())
            .execution_options(populate_existing=True)
        )
        return [self._to_domain(row) for row in result.scalars().all()]

    async def list_active_for_rider(self, rider_id: int) -> list[TrackingSession]:
        return await self._list(
            TrackingSessionModel.rider_id == rider_id,
            TrackingSessionModel.is_active.is_(True),
        )

    async def list_by_status(self, status: TrackingStatus | str) -> list[TrackingSession]:
        return await self._list(TrackingSessionModel.current_status == TrackingStatus(status))

    async def list_for_business(
        self, business_id: int, *, active: Optional[bool] = None
    ) -> list[TrackingSession]:
        criteria = [TrackingSessionModel.business_id == business_id]
        if active is not None:
            criteria.append(TrackingSessionModel.is_active.is_(active))
        return await self._list(*criteria)

    async def list_archived(
        self, *, rider_id: Optional[int] = None, business_id: Optional[int] = None
    ) -> list[TrackingSession]:
        criteria = [TrackingSessionModel.is_active.is_(False)]
        if rider_id is not None:
            criteria.append(TrackingSessionModel.rider_id == rider_id)
        if business_id is not None:
            criteria.append(TrackingSessionModel.business_id == business_id)
        return await self._list(*criteria)
