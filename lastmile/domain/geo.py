"""
Geospatial metrics: distance, vehicle capacity and ETA estimation.

Assumption
----------
Distances are great-circle (Haversine) distances, not road distances.  A
routing engine would replace ``distance`` in production; everything that
consumes it only needs meters.

Coordinates are ``(longitude, latitude)`` pairs (GeoJSON order).

Complexity: O(1) per call, except ``cells_within`` which is O(k²) in the
ring count.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any, Optional, Sequence

import h3

from .enums import TimeOfDay, TrafficLevel, VehicleType, WeatherCondition
from .exceptions import InvalidCoordinates

EARTH_RADIUS_M = 6_371_000.0

Coordinates = tuple[float, float]

# Average urban speeds in km/h
BASE_SPEED_KMH: dict[VehicleType, float] = {
    VehicleType.BIKE: 15.0,
    VehicleType.SCOOTER: 25.0,
    VehicleType.CAR: 30.0,
    VehicleType.VAN: 25.0,
}

# Load ceilings: weight in kg, volume in cm³
VEHICLE_CAPACITY: dict[VehicleType, dict[str, float]] = {
    VehicleType.BIKE: {"max_weight": 5, "max_volume": 50_000},
    VehicleType.SCOOTER: {"max_weight": 15, "max_volume": 150_000},
    VehicleType.CAR: {"max_weight": 50, "max_volume": 500_000},
    VehicleType.VAN: {"max_weight": 200, "max_volume": 2_000_000},
}

# Speed multipliers (< 1 slows the rider down)
TRAFFIC_SPEED_FACTOR: dict[TrafficLevel, float] = {
    TrafficLevel.LIGHT: 1.0,
    TrafficLevel.MODERATE: 0.8,
    TrafficLevel.HEAVY: 0.6,
}
WEATHER_SPEED_FACTOR: dict[WeatherCondition, float] = {
    WeatherCondition.CLEAR: 1.0,
    WeatherCondition.RAIN: 0.8,
    WeatherCondition.SNOW: 0.6,
    WeatherCondition.STORM: 0.5,
}
TIME_OF_DAY_SPEED_FACTOR: dict[TimeOfDay, float] = {
    TimeOfDay.NIGHT: 1.1,
    TimeOfDay.OFF_PEAK: 1.0,
    TimeOfDay.RUSH_HOUR: 0.75,
}

# Handover time at pickup / drop-off, in minutes
MIN_BUFFER_MINUTES = 10
MAX_BUFFER_MINUTES = 20
BUFFER_RATIO = 0.3


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Return the great-circle distance in **meters** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def _as_pair(coords: Any) -> Optional[Coordinates]:
    if coords is None or isinstance(coords, (str, bytes, Mapping)):
        return None
    try:
        if len(coords) != 2:
            return None
        lng, lat = float(coords[0]), float(coords[1])
    except (TypeError, ValueError, KeyError, IndexError):
        return None
    if not (math.isfinite(lng) and math.isfinite(lat)):
        return None
    return lng, lat


def distance(a: Any, b: Any) -> Optional[int]:
    """
    Distance in whole meters between two ``(lng, lat)`` pairs.

    Returns ``None`` instead of raising when either side is missing or is
    not a numeric 2-tuple, so callers must null-check before arithmetic.
    """
    pa, pb = _as_pair(a), _as_pair(b)
    if pa is None or pb is None:
        return None
    return round(haversine_m(pa[1], pa[0], pb[1], pb[0]))


def validate_coordinates(coords: Sequence[float]) -> Coordinates:
    """Return a clean ``(lng, lat)`` tuple or raise ``InvalidCoordinates``."""
    pair = _as_pair(coords)
    if pair is None:
        raise InvalidCoordinates("Coordinates must be a [longitude, latitude] pair")
    lng, lat = pair
    if not (-180 <= lng <= 180 and -90 <= lat <= 90):
        raise InvalidCoordinates("Coordinates out of valid range")
    return pair


def package_volume_cm3(length: float, width: float, height: float) -> float:
    return length * width * height


def is_vehicle_compatible(
    vehicle_type: VehicleType | str,
    weight_kg: Optional[float] = None,
    volume_cm3: Optional[float] = None,
) -> bool:
    """True when the package fits the vehicle's weight and volume ceilings."""
    limits = VEHICLE_CAPACITY[VehicleType(vehicle_type)]
    if weight_kg is not None and weight_kg > limits["max_weight"]:
        return False
    if volume_cm3 is not None and volume_cm3 > limits["max_volume"]:
        return False
    return True


def compatible_vehicles(
    weight_kg: Optional[float] = None, volume_cm3: Optional[float] = None
) -> list[VehicleType]:
    return [v for v in VehicleType if is_vehicle_compatible(v, weight_kg, volume_cm3)]


def effective_speed_kmh(
    vehicle_type: VehicleType | str = VehicleType.BIKE,
    traffic: TrafficLevel | str | None = None,
    weather: WeatherCondition | str | None = None,
    time_of_day: TimeOfDay | str | None = None,
) -> float:
    try:
        speed = BASE_SPEED_KMH[VehicleType(vehicle_type)]
    except ValueError:
        speed = BASE_SPEED_KMH[VehicleType.BIKE]
    if traffic is not None:
        speed *= TRAFFIC_SPEED_FACTOR[TrafficLevel(traffic)]
    if weather is not None:
        speed *= WEATHER_SPEED_FACTOR[WeatherCondition(weather)]
    if time_of_day is not None:
        speed *= TIME_OF_DAY_SPEED_FACTOR[TimeOfDay(time_of_day)]
    return speed


def estimate_duration(
    distance_m: Optional[float],
    vehicle_type: VehicleType | str = VehicleType.BIKE,
    traffic: TrafficLevel | str | None = None,
    weather: WeatherCondition | str | None = None,
    time_of_day: TimeOfDay | str | None = None,
) -> Optional[int]:
    """
    Estimated door-to-door minutes for *distance_m*.

    travel = distance / effective_speed, then a handover buffer of
    ``clamp(0.3 x travel, 10, 20)`` minutes is added so short hops never
    yield unrealistically small ETAs.  Unknown vehicle types fall back to
    bike speed.
    """
    if distance_m is None:
        return None
    if distance_m < 0:
        raise ValueError("distance cannot be negative")

    speed = effective_speed_kmh(vehicle_type, traffic, weather, time_of_day)
    travel_minutes = (distance_m / 1000) / speed * 60
    buffer = max(MIN_BUFFER_MINUTES, min(MAX_BUFFER_MINUTES, travel_minutes * BUFFER_RATIO))
    return round(travel_minutes + buffer)


# ── Spatial binning ───────────────────────────────────────────────────


def h3_cell(coords: Sequence[float], resolution: int = 8) -> str:
    """Map a ``(lng, lat)`` point to its H3 hexagonal cell.  O(1)."""
    lng, lat = validate_coordinates(coords)
    return h3.latlng_to_cell(lat, lng, resolution)


def cells_within(
    coords: Sequence[float], radius_m: float, resolution: int = 8
) -> set[str]:
    """
    H3 cells whose hexagons may hold points within *radius_m* of *coords*.

    The disk radius k is derived from the centre-to-centre spacing of
    neighbouring cells (√3 x edge length) plus one ring of slack, so the set
    over-covers the circle and callers filter the exact distance afterwards.
    """
    origin = h3_cell(coords, resolution)
    spacing = math.sqrt(3) * h3.average_hexagon_edge_length(resolution, unit="m")
    k = math.ceil(radius_m / spacing) + 1
    return set(h3.grid_disk(origin, k))
