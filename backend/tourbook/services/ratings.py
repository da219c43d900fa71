import logging
import math
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tourbook.db.models import DEFAULT_RATINGS_AVERAGE, DEFAULT_RATINGS_QUANTITY, Review, Tour

logger = logging.getLogger(__name__)


def round_rating(value: float) -> float:
    """Round half up to one decimal: 4.666 -> 4.7, 4.25 -> 4.3."""
    return math.floor(value * 10 + 0.5) / 10


async def calc_average_ratings(session: AsyncSession, tour_id: Optional[UUID]) -> Tuple[int, float]:
    """Recompute a tour's rating count and average from its current reviews."""
    if tour_id is None:
        return DEFAULT_RATINGS_QUANTITY, DEFAULT_RATINGS_AVERAGE

    result = await session.execute(
        select(func.count(Review.id), func.avg(Review.rating)).where(Review.tour_id == tour_id)
    )
    count, average = result.one()

    if count:
        quantity, rating = int(count), round_rating(float(average))
    else:
        quantity, rating = DEFAULT_RATINGS_QUANTITY, DEFAULT_RATINGS_AVERAGE

    tour = await session.get(Tour, tour_id)
    if tour is None:
        return quantity, rating

    tour.ratings_quantity = quantity
    tour.ratings_average = rating
    await session.commit()

    logger.info(f"Ratings for tour {tour_id}: {quantity} reviews, average {rating}")
    return quantity, rating
