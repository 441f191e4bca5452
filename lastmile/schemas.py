"""Pydantic request schemas validated before anything reaches the domain."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from lastmile.domain.enums import Currency, PaymentMethod, VehicleType
from lastmile.domain.offer import (
    DeliveryDetails,
    Dimensions,
    PackageDetails,
    PaymentTerms,
    PickupDetails,
)

PHONE_PATTERN = r"^\+?[\d\s\-\(\)]{10,}$"


# ── Shared pieces ─────────────────────────────────────────────────────


class Point(BaseModel):
    lng: float = Field(..., ge=-180, le=180)
    lat: float = Field(..., ge=-90, le=90)

    def as_pair(self) -> tuple[float, float]:
        return (self.lng, self.lat)


class ContactRequest(BaseModel):
    address: str = Field(..., min_length=1, max_length=500)
    location: Point
    contact_name: str = Field(..., min_length=1, max_length=100)
    contact_phone: str = Field(..., pattern=PHONE_PATTERN)
    instructions: Optional[str] = Field(None, max_length=500)


class PickupRequest(ContactRequest):
    available_from: Optional[datetime] = None
    available_until: Optional[datetime] = None

    @model_validator(mode="after")
    def _window_is_ordered(self) -> "PickupRequest":
        if (
            self.available_from
            and self.available_until
            and self.available_from >= self.available_until
        ):
            raise ValueError("available_until must be after available_from")
        return self


class DeliveryRequest(ContactRequest):
    deliver_by: Optional[datetime] = None


class DimensionsRequest(BaseModel):
    length: float = Field(..., gt=0, le=500)  # cm
    width: float = Field(..., gt=0, le=500)
    height: float = Field(..., gt=0, le=500)


class PackageRequest(BaseModel):
    weight: Optional[float] = Field(None, gt=0, le=200)  # kg
    dimensions: Optional[DimensionsRequest] = None
    fragile: bool = False
    special_instructions: Optional[str] = Field(None, max_length=500)


class PaymentRequest(BaseModel):
    amount: float = Field(..., gt=0)
    currency: Currency = Currency.USD
    method: PaymentMethod = PaymentMethod.DIGITAL


# ── Requests ──────────────────────────────────────────────────────────


class OfferCreateRequest(BaseModel):
    business_id: int
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    pickup: PickupRequest
    delivery: DeliveryRequest
    package: PackageRequest = Field(default_factory=PackageRequest)
    payment: PaymentRequest

    def pickup_details(self) -> PickupDetails:
        return PickupDetails(
            address=self.pickup.address,
            coordinates=self.pickup.location.as_pair(),
            contact_name=self.pickup.contact_name,
            contact_phone=self.pickup.contact_phone,
            available_from=self.pickup.available_from,
            available_until=self.pickup.available_until,
            instructions=self.pickup.instructions,
        )

    def delivery_details(self) -> DeliveryDetails:
        return DeliveryDetails(
            address=self.delivery.address,
            coordinates=self.delivery.location.as_pair(),
            contact_name=self.delivery.contact_name,
            contact_phone=self.delivery.contact_phone,
            deliver_by=self.delivery.deliver_by,
            instructions=self.delivery.instructions,
        )

    def package_details(self) -> PackageDetails:
        dims = self.package.dimensions
        return PackageDetails(
            weight=self.package.weight,
            dimensions=Dimensions(dims.length, dims.width, dims.height) if dims else None,
            fragile=self.package.fragile,
            special_instructions=self.package.special_instructions,
        )

    def payment_terms(self) -> PaymentTerms:
        return PaymentTerms(
            amount=self.payment.amount,
            currency=self.payment.currency,
            method=self.payment.method,
        )


class LocationUpdateRequest(BaseModel):
    location: Point
    accuracy: Optional[float] = Field(None, ge=0)  # meters
    heading: Optional[float] = Field(None, ge=0, le=360)
    speed: Optional[float] = Field(None, ge=0)  # m/s


class NearbyOffersQuery(BaseModel):
    location: Point
    radius_m: Optional[float] = Field(None, gt=0, le=100_000)
    min_payment: Optional[float] = Field(None, ge=0)
    max_payment: Optional[float] = Field(None, ge=0)
    fragile: Optional[bool] = None
    vehicle_type: Optional[VehicleType] = None
    limit: int = Field(50, ge=1, le=200)
