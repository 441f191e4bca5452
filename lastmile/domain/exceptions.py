"""Domain exceptions raised by the lifecycle engine."""

from __future__ import annotations

from typing import Sequence


class LastMileError(Exception):
    """Base class for every error raised by the engine."""


class InvalidStatusTransition(LastMileError):
    """Raised when an offer status change violates the state machine or roles."""

    def __init__(self, message: str, valid_transitions: Sequence = ()):
        super().__init__(message)
        self.message = message
        self.valid_transitions = tuple(valid_transitions)


class OfferAlreadyAccepted(InvalidStatusTransition):
    """Raised when another rider won the acceptance race."""


class TrackingSessionClosed(LastMileError):
    """Raised when an archived tracking session is mutated."""


class DeliveryNotConfirmable(LastMileError):
    """Raised when a delivery is confirmed before reaching the drop-off."""


class InvalidCoordinates(LastMileError, ValueError):
    """Raised when a coordinate pair is malformed or out of range."""


class OfferNotFound(LastMileError, LookupError):
    """Raised when an offer cannot be found."""


class TrackingSessionNotFound(LastMileError, LookupError):
    """Raised when an offer has no tracking session."""


class NotAuthorized(LastMileError, PermissionError):
    """Raised when an actor is neither the business owner nor the assigned rider."""


class InvalidOffer(LastMileError, ValueError):
    """Raised when a new offer fails field validation."""

    def __init__(self, errors: Sequence):
        self.errors = list(errors)
        super().__init__("; ".join(f"{e.field}: {e.message}" for e in self.errors))


class IssueNotFound(LastMileError, LookupError):
    """Raised when an issue index does not exist on the session."""
