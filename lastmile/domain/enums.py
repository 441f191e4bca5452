"""Domain enumerations and state-transition rules."""

import enum


class OfferStatus(str, enum.Enum):
    OPEN = "open"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# State machine: maps current status -> ordered tuple of valid next statuses
OFFER_TRANSITIONS: dict[OfferStatus, tuple[OfferStatus, ...]] = {
    OfferStatus.OPEN: (OfferStatus.ACCEPTED, OfferStatus.CANCELLED),
    OfferStatus.ACCEPTED: (OfferStatus.PICKED_UP, OfferStatus.CANCELLED),
    OfferStatus.PICKED_UP: (OfferStatus.IN_TRANSIT, OfferStatus.CANCELLED),
    OfferStatus.IN_TRANSIT: (OfferStatus.DELIVERED, OfferStatus.CANCELLED),
    OfferStatus.DELIVERED: (OfferStatus.COMPLETED,),
    OfferStatus.COMPLETED: (),
    OfferStatus.CANCELLED: (),
}

TERMINAL_OFFER_STATUSES = frozenset({OfferStatus.COMPLETED, OfferStatus.CANCELLED})

# Offer attribute stamped when the status is entered
OFFER_STATUS_TIMESTAMP_FIELDS: dict[OfferStatus, str] = {
    OfferStatus.OPEN: "created_at",
    OfferStatus.ACCEPTED: "accepted_at",
    OfferStatus.PICKED_UP: "picked_up_at",
    OfferStatus.IN_TRANSIT: "in_transit_at",
    OfferStatus.DELIVERED: "delivered_at",
    OfferStatus.COMPLETED: "completed_at",
    OfferStatus.CANCELLED: "cancelled_at",
}


class TrackingStatus(str, enum.Enum):
    ACCEPTED = "accepted"
    HEADING_TO_PICKUP = "heading_to_pickup"
    ARRIVED_AT_PICKUP = "arrived_at_pickup"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    ARRIVED_AT_DELIVERY = "arrived_at_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_TRACKING_STATUSES = frozenset(
    {TrackingStatus.COMPLETED, TrackingStatus.CANCELLED}
)


class TrackingEventType(str, enum.Enum):
    DELIVERY_ACCEPTED = "delivery_accepted"
    HEADING_TO_PICKUP = "heading_to_pickup"
    ARRIVED_AT_PICKUP = "arrived_at_pickup"
    PICKUP_ATTEMPTED = "pickup_attempted"
    PACKAGE_PICKED_UP = "package_picked_up"
    DEPARTURE_FROM_PICKUP = "departure_from_pickup"
    IN_TRANSIT = "in_transit"
    ARRIVED_AT_DELIVERY = "arrived_at_delivery"
    DELIVERY_ATTEMPTED = "delivery_attempted"
    PACKAGE_DELIVERED = "package_delivered"
    DELIVERY_COMPLETED = "delivery_completed"
    DELIVERY_CANCELLED = "delivery_cancelled"
    ISSUE_REPORTED = "issue_reported"
    ISSUE_RESOLVED = "issue_resolved"
    CUSTOMER_CONTACTED = "customer_contacted"
    ROUTE_DEVIATED = "route_deviated"
    DELAY_REPORTED = "delay_reported"
    LOCATION_UPDATED = "location_updated"
    DELIVERY_CONFIRMED = "delivery_confirmed"


# Events that move the tracking session; every other event is informational
EVENT_STATUS_MAP: dict[TrackingEventType, TrackingStatus] = {
    TrackingEventType.DELIVERY_ACCEPTED: TrackingStatus.ACCEPTED,
    TrackingEventType.HEADING_TO_PICKUP: TrackingStatus.HEADING_TO_PICKUP,
    TrackingEventType.ARRIVED_AT_PICKUP: TrackingStatus.ARRIVED_AT_PICKUP,
    TrackingEventType.PACKAGE_PICKED_UP: TrackingStatus.PICKED_UP,
    TrackingEventType.IN_TRANSIT: TrackingStatus.IN_TRANSIT,
    TrackingEventType.ARRIVED_AT_DELIVERY: TrackingStatus.ARRIVED_AT_DELIVERY,
    TrackingEventType.PACKAGE_DELIVERED: TrackingStatus.DELIVERED,
    TrackingEventType.DELIVERY_COMPLETED: TrackingStatus.COMPLETED,
    TrackingEventType.DELIVERY_CANCELLED: TrackingStatus.CANCELLED,
}

# Default coupling between the two machines.  Tracking statuses missing
# from this table never move the offer.
TRACKING_TO_OFFER_STATUS: dict[TrackingStatus, OfferStatus] = {
    TrackingStatus.PICKED_UP: OfferStatus.PICKED_UP,
    TrackingStatus.IN_TRANSIT: OfferStatus.IN_TRANSIT,
    TrackingStatus.DELIVERED: OfferStatus.DELIVERED,
    TrackingStatus.COMPLETED: OfferStatus.COMPLETED,
    TrackingStatus.CANCELLED: OfferStatus.CANCELLED,
}

# Reverse direction: the tracking event recorded when the offer moves first
OFFER_STATUS_EVENTS: dict[OfferStatus, TrackingEventType] = {
    OfferStatus.PICKED_UP: TrackingEventType.PACKAGE_PICKED_UP,
    OfferStatus.IN_TRANSIT: TrackingEventType.IN_TRANSIT,
    OfferStatus.DELIVERED: TrackingEventType.PACKAGE_DELIVERED,
    OfferStatus.COMPLETED: TrackingEventType.DELIVERY_COMPLETED,
    OfferStatus.CANCELLED: TrackingEventType.DELIVERY_CANCELLED,
}

PROGRESS_BY_STATUS: dict[TrackingStatus, int] = {
    TrackingStatus.ACCEPTED: 10,
    TrackingStatus.HEADING_TO_PICKUP: 20,
    TrackingStatus.ARRIVED_AT_PICKUP: 30,
    TrackingStatus.PICKED_UP: 50,
    TrackingStatus.IN_TRANSIT: 70,
    TrackingStatus.ARRIVED_AT_DELIVERY: 85,
    TrackingStatus.DELIVERED: 95,
    TrackingStatus.COMPLETED: 100,
    TrackingStatus.CANCELLED: 0,
}

PHASE_BY_STATUS: dict[TrackingStatus, str] = {
    TrackingStatus.ACCEPTED: "Awaiting departure",
    TrackingStatus.HEADING_TO_PICKUP: "Heading to pickup",
    TrackingStatus.ARRIVED_AT_PICKUP: "At pickup location",
    TrackingStatus.PICKED_UP: "Package collected",
    TrackingStatus.IN_TRANSIT: "In transit",
    TrackingStatus.ARRIVED_AT_DELIVERY: "At delivery location",
    TrackingStatus.DELIVERED: "Delivered",
    TrackingStatus.COMPLETED: "Completed",
    TrackingStatus.CANCELLED: "Cancelled",
}


class IssueType(str, enum.Enum):
    TRAFFIC_DELAY = "traffic_delay"
    WEATHER_DELAY = "weather_delay"
    VEHICLE_BREAKDOWN = "vehicle_breakdown"
    PACKAGE_DAMAGED = "package_damaged"
    WRONG_ADDRESS = "wrong_address"
    CUSTOMER_UNAVAILABLE = "customer_unavailable"
    ACCESS_DENIED = "access_denied"
    SAFETY_CONCERN = "safety_concern"
    OTHER = "other"


class IssueSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueImpact(str, enum.Enum):
    NONE = "none"
    MINOR_DELAY = "minor_delay"
    MAJOR_DELAY = "major_delay"
    DELIVERY_FAILED = "delivery_failed"
    DELIVERY_CANCELLED = "delivery_cancelled"


class ContactMethod(str, enum.Enum):
    PHONE = "phone"
    TEXT = "text"
    APP_NOTIFICATION = "app_notification"
    DOORBELL = "doorbell"


class DeliveryMethod(str, enum.Enum):
    HAND_TO_CUSTOMER = "hand_to_customer"
    LEFT_AT_DOOR = "left_at_door"
    LEFT_WITH_NEIGHBOR = "left_with_neighbor"
    RETURNED_TO_SENDER = "returned_to_sender"


class ConfirmationType(str, enum.Enum):
    SIGNATURE = "signature"
    PHOTO = "photo"
    PIN_CODE = "pin_code"
    CONTACTLESS = "contactless"


class VehicleType(str, enum.Enum):
    BIKE = "bike"
    SCOOTER = "scooter"
    CAR = "car"
    VAN = "van"


class TrafficLevel(str, enum.Enum):
    LIGHT = "light"
    MODERATE = "moderate"
    HEAVY = "heavy"


class WeatherCondition(str, enum.Enum):
    CLEAR = "clear"
    RAIN = "rain"
    SNOW = "snow"
    STORM = "storm"


class TimeOfDay(str, enum.Enum):
    NIGHT = "night"
    OFF_PEAK = "off_peak"
    RUSH_HOUR = "rush_hour"


class Currency(str, enum.Enum):
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    DIGITAL = "digital"
