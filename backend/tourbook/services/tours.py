"""
Read-side aggregates over the visible tour catalog: price/rating stats,
monthly departure plan and great-circle geo search.
"""
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from geopy.distance import great_circle
from sqlalchemy import String, cast, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tourbook.core.errors import ValidationFailed
from tourbook.db.models import Tour, as_utc

logger = structlog.get_logger(__name__)

# spherical earth radii, matching the radian convention of the radius search
EARTH_RADIUS = {"mi": 3963.2, "km": 6378.1}
METERS_TO_UNIT = {"mi": 0.000621371, "km": 0.001}
EARTH_RADIUS_METERS = 6378100

LATLNG_ERROR = "Please provide latitude and longitude in the format lat,lng"

TOP_CHEAP_QUERY = {
    "limit": "5",
    "sort": "price,-ratingsAverage",
    "fields": "name,price,ratingsAverage,difficulty,summary",
}


def _visible(statement):
    return statement.where(Tour.secret_tour.is_(False))


def _stats_columns():
    return (
        func.count(Tour.id).label("numTours"),
        func.coalesce(func.sum(Tour.ratings_quantity), 0).label("numRatings"),
        func.avg(Tour.ratings_average).label("avgRating"),
        func.avg(Tour.price).label("avgPrice"),
        func.min(Tour.price).label("minPrice"),
        func.max(Tour.price).label("maxPrice"),
    )


def _stats_row(row) -> Dict[str, Any]:
    return {
        "numTours": int(row.numTours),
        "numRatings": int(row.numRatings),
        "avgRating": float(row.avgRating) if row.avgRating is not None else None,
        "avgPrice": float(row.avgPrice) if row.avgPrice is not None else None,
        "minPrice": row.minPrice,
        "maxPrice": row.maxPrice,
    }


async def tour_stats(session: AsyncSession) -> List[Dict[str, Any]]:
    result = await session.execute(_visible(select(*_stats_columns())))
    row = result.one()
    if not row.numTours:
        return []
    return [_stats_row(row)]


async def tour_stats_by_difficulty(session: AsyncSession) -> List[Dict[str, Any]]:
    difficulty = func.upper(cast(Tour.difficulty, String)).label("difficulty")
    statement = _visible(select(difficulty, *_stats_columns())).group_by(difficulty).order_by(
        func.avg(Tour.price).asc()
    )
    result = await session.execute(statement)
    return [{"difficulty": row.difficulty, **_stats_row(row)} for row in result]


def _parse_start_date(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


async def monthly_plan(session: AsyncSession, year: int) -> List[Dict[str, Any]]:
    """Departures per month of ``year``, busiest month first."""
    result = await session.execute(_visible(select(Tour.name, Tour.start_dates)))
    months: Dict[int, List[str]] = defaultdict(list)
    for name, start_dates in result:
        for value in start_dates or ():
            start = _parse_start_date(value)
            if start is not None and start.year == year:
                months[start.month].append(name)

    plan = [
        {"month": month, "numToursStart": len(names), "tours": names}
        for month, names in months.items()
    ]
    plan.sort(key=lambda entry: (-entry["numToursStart"], entry["month"]))
    return plan


def parse_latlng(latlng: str) -> Tuple[float, float]:
    parts = [part.strip() for part in latlng.split(",")]
    if len(parts) != 2 or not all(parts):
        raise ValidationFailed(LATLNG_ERROR)
    try:
        lat, lng = float(parts[0]), float(parts[1])
    except ValueError:
        raise ValidationFailed(LATLNG_ERROR)
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise ValidationFailed(LATLNG_ERROR)
    return lat, lng


def check_unit(unit: str) -> str:
    if unit not in EARTH_RADIUS:
        raise ValidationFailed("Please provide the unit as 'mi' or 'km'")
    return unit


def central_angle(origin: Tuple[float, float], coordinates: Sequence[float]) -> float:
    """Angle in radians between (lat, lng) ``origin`` and a GeoJSON [lng, lat] pair."""
    lng, lat = coordinates
    return great_circle(origin, (lat, lng), radius=1).km


async def _located_tours(session: AsyncSession) -> List[Tuple[Tour, List[float]]]:
    result = await session.execute(_visible(select(Tour)))
    return [
        (tour, tour.start_coordinates)
        for tour in result.scalars().all()
        if tour.start_coordinates is not None
    ]


async def tours_within(session: AsyncSession, distance: float, latlng: str, unit: str) -> List[Tour]:
    """Tours whose start location lies within ``distance`` of the centre point."""
    origin = parse_latlng(latlng)
    unit = check_unit(unit)
    if distance < 0:
        raise ValidationFailed("Distance must be a positive number")
    radius = distance / EARTH_RADIUS[unit]

    tours = [
        tour for tour, coordinates in await _located_tours(session)
        if central_angle(origin, coordinates) <= radius
    ]
    logger.info("tours_within_searched", distance=distance, unit=unit, results=len(tours))
    return tours


async def tour_distances(session: AsyncSession, latlng: str, unit: str) -> List[Dict[str, Any]]:
    """Name and distance of every located tour from the point, nearest first."""
    origin = parse_latlng(latlng)
    multiplier = METERS_TO_UNIT[check_unit(unit)]

    distances = [
        {
            "id": str(tour.id),
            "name": tour.name,
            "distance": central_angle(origin, coordinates) * EARTH_RADIUS_METERS * multiplier,
        }
        for tour, coordinates in await _located_tours(session)
    ]
    distances.sort(key=lambda entry: entry["distance"])
    return distances
