# mbalit-dispatch/mbalit_dispatch/utils.py
"""
Distance and ETA estimation for the Mbalit dispatch core.

Provides the great-circle distance used to rank collectors, the linear
travel-time model used for ETAs, and their presentation helpers.
Includes optional OSRM integration for road travel times.
"""

from __future__ import annotations

import math
import logging
import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, Optional, Tuple

import requests

from . import config
from .errors import InvalidCoordinates

if TYPE_CHECKING:
    from .models import GeoLocation

logger = logging.getLogger(__name__)

# Module-level cache for OSRM results, keyed by server and rounded coordinates
_osrm_cache: Dict[Tuple[str, float, float, float, float], Tuple[float, float]] = {}
_osrm_cache_lock = threading.Lock()


def utc_now() -> datetime:
    """Timezone-aware current time. The default clock of every component."""
    return datetime.now(timezone.utc)


def validate_coordinates(lat: float, lng: float) -> None:
    """
    Reject coordinates that are not on the globe.

    Raises:
        InvalidCoordinates: If a value is not a finite number or out of range
    """
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise InvalidCoordinates(f"Coordinates must be numbers, got ({lat!r}, {lng!r})")
    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        raise InvalidCoordinates(f"Coordinates must be finite, got ({lat!r}, {lng!r})")
    if not -90.0 <= lat_f <= 90.0:
        raise InvalidCoordinates(f"Latitude {lat_f} outside [-90, 90]")
    if not -180.0 <= lng_f <= 180.0:
        raise InvalidCoordinates(f"Longitude {lng_f} outside [-180, 180]")


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    The two points are put in a canonical order first, so swapping the
    arguments yields bit-for-bit the same result.

    Args:
        lat1: Latitude of point 1 in decimal degrees
        lon1: Longitude of point 1 in decimal degrees
        lat2: Latitude of point 2 in decimal degrees
        lon2: Longitude of point 2 in decimal degrees

    Returns:
        Distance in kilometers between the two points

    Example:
        >>> round(haversine_distance(13.4549, -16.5790, 13.46, -16.58), 3)
        0.577
    """
    if (lat2, lon2) < (lat1, lon1):
        lat1, lon1, lat2, lon2 = lat2, lon2, lat1, lon1

    # Convert decimal degrees to radians
    lon1, lat1, lon2, lat2 = map(math.radians, [lon1, lat1, lon2, lat2])

    # Haversine formula
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = math.sin(dlat / 2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2)**2
    # Rounding can push a a hair above 1 for antipodal points
    c = 2 * math.asin(math.sqrt(min(a, 1.0)))

    return c * config.EARTH_RADIUS_KM


def distance_km(a: GeoLocation, b: GeoLocation) -> float:
    """
    Straight-line distance between two locations, in kilometers.

    Symmetric and zero for identical points.

    Raises:
        InvalidCoordinates: If either location is off the globe
    """
    validate_coordinates(a.lat, a.lng)
    validate_coordinates(b.lat, b.lng)
    return haversine_distance(a.lat, a.lng, b.lat, b.lng)


def round_half_up(value: float) -> int:
    """
    Round x.5 up to the next whole number (not banker's rounding).

    Shared by ETAs, distance labels and price quotes.

    Example:
        >>> round_half_up(2.5)
        3
    """
    return int(math.floor(value + 0.5))


def estimate_minutes(distance: float, avg_speed_kmh: Optional[float] = None) -> int:
    """
    Estimate travel time for a given distance using the linear city model.

    Args:
        distance: Distance in kilometers
        avg_speed_kmh: Override for config.AVG_SPEED_KMH

    Returns:
        Whole minutes, rounded

    Example:
        >>> estimate_minutes(5.0)  # 5km at 30km/h
        10
    """
    speed = config.AVG_SPEED_KMH if avg_speed_kmh is None else avg_speed_kmh
    if speed <= 0:
        raise ValueError(f"Average speed must be positive, got {speed}")
    if distance < 0 or not math.isfinite(distance):
        raise ValueError(f"Distance must be a finite non-negative number, got {distance}")
    return round_half_up(distance / speed * 60)


def format_eta(minutes: float) -> str:
    """
    Format an ETA in minutes as a human-readable string.

    Args:
        minutes: Duration in minutes

    Returns:
        "< 1 min", "45 min" or "1h 23m"
    """
    total = round_half_up(minutes)
    if total < 1:
        return "< 1 min"
    if total < 60:
        return f"{total} min"
    return f"{total // 60}h {total % 60}m"


def format_distance(km: float) -> str:
    """Format a distance as "850 m" under one kilometer, "2.4 km" otherwise."""
    if km < 1:
        return f"{round_half_up(km * 1000)} m"
    return f"{km:.1f} km"


def _get_cache_key(lat1: float, lon1: float, lat2: float, lon2: float) -> Tuple[float, float, float, float]:
    """Create a cache key with rounded coordinates (5 decimal places ~ 1m precision)."""
    return (round(lat1, 5), round(lon1, 5), round(lat2, 5), round(lon2, 5))


def osrm_route(
    lat1: float, lon1: float,
    lat2: float, lon2: float,
    server_url: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Optional[Tuple[float, float]]:
    """
    Get road distance and duration from the OSRM routing service.

    Results are cached per server to minimize API calls. Never raises for
    network problems; a failed lookup is logged and reported as None.

    Args:
        lat1, lon1: Origin
        lat2, lon2: Destination
        server_url: Override for config.OSRM_SERVER_URL
        timeout: Override for config.OSRM_TIMEOUT_SECONDS

    Returns:
        Tuple of (distance_km, duration_minutes) if successful, None if failed

    Note:
        OSRM expects coordinates in lon,lat order (not lat,lon).
    """
    server = (server_url or config.OSRM_SERVER_URL).rstrip("/")
    request_timeout = config.OSRM_TIMEOUT_SECONDS if timeout is None else timeout

    cache_key = (server,) + _get_cache_key(lat1, lon1, lat2, lon2)
    reverse_key = (server,) + _get_cache_key(lat2, lon2, lat1, lon1)
    with _osrm_cache_lock:
        if cache_key in _osrm_cache:
            return _osrm_cache[cache_key]
        if reverse_key in _osrm_cache:
            return _osrm_cache[reverse_key]

    try:
        url = (
            f"{server}/route/v1/driving/"
            f"{lon1},{lat1};{lon2},{lat2}"
            f"?overview=false"
        )

        response = requests.get(url, timeout=request_timeout)
        response.raise_for_status()

        data = response.json()

        if data.get("code") != "Ok" or not data.get("routes"):
            logger.warning(f"OSRM returned no route: {data.get('code')}")
            return None

        route = data["routes"][0]
        result = (route["distance"] / 1000, route["duration"] / 60)

    except requests.exceptions.Timeout:
        logger.warning("OSRM request timed out")
        return None
    except requests.exceptions.RequestException as e:
        logger.warning(f"OSRM request failed: {e}")
        return None
    except (KeyError, ValueError, TypeError) as e:
        logger.warning(f"OSRM response parsing failed: {e}")
        return None

    with _osrm_cache_lock:
        if len(_osrm_cache) >= config.OSRM_CACHE_SIZE:
            # Drop the oldest 10% (dicts keep insertion order)
            for key in list(_osrm_cache.keys())[:max(1, config.OSRM_CACHE_SIZE // 10)]:
                del _osrm_cache[key]
        _osrm_cache[cache_key] = result
    return result


def estimate_travel_minutes(
    origin: GeoLocation,
    destination: GeoLocation,
    use_road_distance: bool = False,
    avg_speed_kmh: Optional[float] = None,
    osrm_server_url: Optional[str] = None,
    osrm_timeout_seconds: Optional[float] = None,
) -> int:
    """
    ETA between two locations in whole minutes.

    With road distance enabled, asks OSRM for the driving duration and falls
    back to the haversine distance times HAVERSINE_FALLBACK_MULTIPLIER when
    OSRM is unavailable. Otherwise uses the linear city model.
    """
    straight = distance_km(origin, destination)
    if not use_road_distance:
        return estimate_minutes(straight, avg_speed_kmh)

    result = osrm_route(
        origin.lat, origin.lng, destination.lat, destination.lng,
        server_url=osrm_server_url, timeout=osrm_timeout_seconds,
    )
    if result is not None:
        return round_half_up(result[1])

    logger.debug("Falling back to haversine distance with multiplier")
    return estimate_minutes(straight * config.HAVERSINE_FALLBACK_MULTIPLIER, avg_speed_kmh)


def clear_osrm_cache() -> int:
    """
    Clear the OSRM route cache.

    Returns:
        Number of cached entries that were cleared
    """
    with _osrm_cache_lock:
        count = len(_osrm_cache)
        _osrm_cache.clear()
    return count
