"""Actor roles relative to one offer, as a tagged union."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class Business:
    id: int


@dataclass(frozen=True)
class Rider:
    id: int


@dataclass(frozen=True)
class Unknown:
    id: int


Role = Union[Business, Rider, Unknown]


def resolve_role(actor_id: int, business_id: int, rider_id: Optional[int]) -> Role:
    """Identity comparison only: the owner is ``Business``, the assignee ``Rider``."""
    if actor_id == business_id:
        return Business(actor_id)
    if rider_id is not None and actor_id == rider_id:
        return Rider(actor_id)
    return Unknown(actor_id)
