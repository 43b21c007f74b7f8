"""
Geo-matching: finds compatible users or requests near a point.

Distances are great-circle kilometres (Haversine, Earth radius 6371 km).
The database query narrows candidates with a latitude/longitude bounding box
that always contains the search circle; the exact radius test and the
nearest-first ordering happen in Python, so results do not depend on any
spatial index being present.
"""

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bloodlink.config import get_settings
from bloodlink.errors import ValidationError
from bloodlink.models.user import User, UserRole, BloodGroup
from bloodlink.models.blood_request import BloodRequest, RequestStatus
from bloodlink.services.compatibility import compatible_donors, compatible_recipients
from bloodlink.services.eligibility import is_eligible

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

# (longitude, latitude), matching GeoJSON point order
Coordinates = tuple[float, float]


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

def haversine_km(origin: Coordinates, target: Coordinates) -> float:
    lon1, lat1 = origin
    lon2, lat2 = target
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def validate_coordinates(longitude: Any, latitude: Any) -> Coordinates:
    try:
        lon, lat = float(longitude), float(latitude)
    except (TypeError, ValueError):
        raise ValidationError("Location must be a [longitude, latitude] pair", field="location")
    if not -180.0 <= lon <= 180.0 or not -90.0 <= lat <= 90.0:
        raise ValidationError("Location is out of range", field="location")
    return lon, lat


def resolve_radius(radius_km: float | None) -> float:
    settings = get_settings()
    if radius_km is None:
        return settings.DEFAULT_MATCH_RADIUS_KM
    if radius_km <= 0 or radius_km > settings.MAX_MATCH_RADIUS_KM:
        raise ValidationError(
            f"Radius must be between 0 and {settings.MAX_MATCH_RADIUS_KM} km", field="radius_km",
        )
    return float(radius_km)


def _bounding_box(origin: Coordinates, radius_km: float) -> tuple[float, float, float, float]:
    """(min_lon, max_lon, min_lat, max_lat) enclosing the search circle."""
    lon, lat = origin
    angular = radius_km / EARTH_RADIUS_KM
    d_lat = math.degrees(angular)
    min_lat, max_lat = lat - d_lat, lat + d_lat
    # Near the poles (or when the box would wrap the antimeridian) fall back to all longitudes
    if max_lat >= 90 or min_lat <= -90:
        return -180.0, 180.0, max(min_lat, -90.0), min(max_lat, 90.0)
    ratio = math.sin(angular) / math.cos(math.radians(lat))
    if ratio >= 1:
        return -180.0, 180.0, min_lat, max_lat
    d_lon = math.degrees(math.asin(ratio))
    if lon - d_lon < -180 or lon + d_lon > 180:
        return -180.0, 180.0, min_lat, max_lat
    return lon - d_lon, lon + d_lon, min_lat, max_lat


def rank_by_distance(
    origin: Coordinates,
    items: Iterable[Any],
    radius_km: float,
) -> list[tuple[Any, float]]:
    """Return ``(item, distance_km)`` pairs within *radius_km*, nearest first.

    *items* need ``latitude``/``longitude`` attributes; items without a
    stored location are skipped.
    """
    ranked = []
    for item in items:
        if item.latitude is None or item.longitude is None:
            continue
        distance = haversine_km(origin, (item.longitude, item.latitude))
        if distance <= radius_km:
            ranked.append((item, distance))
    ranked.sort(key=lambda pair: pair[1])
    return ranked


def candidate_to_dict(user: User, distance_km: float) -> dict[str, Any]:
    return {
        "id": str(user.id),
        "name": user.name,
        "blood_group": user.blood_group.value if user.blood_group else None,
        "latitude": user.latitude,
        "longitude": user.longitude,
        "distance_km": round(distance_km, 1),
        "donation_count": user.donation_count or 0,
        "rating_average": user.rating_average,
    }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def find_candidates(
    db: AsyncSession,
    *,
    origin: Coordinates,
    blood_group: str | BloodGroup,
    radius_km: float | None = None,
    role: UserRole = UserRole.DONOR,
    exclude_ids: Sequence[uuid.UUID] = (),
    eligible_only: bool = False,
    now: datetime | None = None,
) -> list[tuple[User, float]]:
    """Active, available users of *role* who can donate to *blood_group*.

    Returns ``(user, distance_km)`` pairs sorted nearest first.  With
    ``eligible_only`` donors still inside their donation cooldown are dropped
    as well.
    """
    radius_km = resolve_radius(radius_km)
    donor_groups = compatible_donors(blood_group)
    min_lon, max_lon, min_lat, max_lat = _bounding_box(origin, radius_km)

    query = select(User).where(
        User.role == role,
        User.is_active.is_(True),
        User.is_available.is_(True),
        User.blood_group.in_(list(donor_groups)),
        User.latitude.isnot(None),
        User.longitude.isnot(None),
        User.latitude.between(min_lat, max_lat),
        User.longitude.between(min_lon, max_lon),
    )
    if exclude_ids:
        query = query.where(User.id.notin_(list(exclude_ids)))

    result = await db.execute(query)
    users = result.scalars().all()
    if eligible_only:
        users = [u for u in users if is_eligible(u, now)]

    ranked = rank_by_distance(origin, users, radius_km)
    logger.debug(
        "Matched %d candidate(s) for %s within %.1f km", len(ranked), blood_group, radius_km,
    )
    return ranked


async def find_nearby_requests(
    db: AsyncSession,
    donor: User,
    *,
    radius_km: float | None = None,
) -> list[tuple[BloodRequest, float]]:
    """Pending public requests *donor* could supply, nearest first."""
    if donor.coordinates is None:
        raise ValidationError("Please update your location to find nearby requests", field="location")
    if donor.blood_group is None:
        raise ValidationError("Donor has no blood group on record", field="blood_group")

    radius_km = resolve_radius(radius_km if radius_km is not None else donor.search_radius_km)
    origin = donor.coordinates
    min_lon, max_lon, min_lat, max_lat = _bounding_box(origin, radius_km)

    result = await db.execute(
        select(BloodRequest).where(
            BloodRequest.status == RequestStatus.PENDING,
            BloodRequest.is_public.is_(True),
            BloodRequest.blood_group.in_(list(compatible_recipients(donor.blood_group))),
            BloodRequest.requester_id != donor.id,
            BloodRequest.latitude.between(min_lat, max_lat),
            BloodRequest.longitude.between(min_lon, max_lon),
        )
    )
    return rank_by_distance(origin, result.scalars().all(), radius_km)
