"""
Load and clear the sample catalog used in development.

The JSON files reference each other by id (tour guides are user ids,
reviews point at a tour and a user), so records keep the ids from the files.
Tour and review rows go through the same request schemas as the API.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, List
from uuid import UUID

from slugify import slugify
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from tourbook.api.schemas import ReviewCreate, TourCreate
from tourbook.db.models import Booking, Review, Role, Tour, TourGuideLink, User
from tourbook.services.ratings import calc_average_ratings

logger = logging.getLogger(__name__)

DEFAULT_PASSWORD = "test1234"


def read_records(data_dir: Path, name: str) -> List[Dict[str, Any]]:
    with open(Path(data_dir) / f"{name}.json", encoding="utf-8") as f:
        records = json.load(f)
    if not isinstance(records, list):
        raise ValueError(f"{name}.json must hold a list of records")
    return records


def _record_id(record: Dict[str, Any]) -> UUID:
    return UUID(str(record.get("id") or record["_id"]))


def build_user(record: Dict[str, Any]) -> User:
    user = User(
        id=_record_id(record),
        name=record["name"],
        email=record["email"].strip().lower(),
        role=Role(record.get("role", Role.USER.value)),
        photo=record.get("photo") or "default.jpg",
        password_hash="",
        active=record.get("active", True),
    )
    user.set_password(record.get("password") or DEFAULT_PASSWORD, is_new=True)
    return user


def build_tour(record: Dict[str, Any]) -> tuple:
    """The tour row plus its ordered guide ids."""
    data = TourCreate.model_validate(record).to_record_data()
    guide_ids = data.pop("guides", [])
    tour = Tour(id=_record_id(record), slug=slugify(data["name"]), **data)
    return tour, guide_ids


def build_review(record: Dict[str, Any]) -> Review:
    data = ReviewCreate.model_validate(record).to_record_data()
    return Review(id=_record_id(record), **data)


async def import_data(session: AsyncSession, data_dir: Path) -> Dict[str, int]:
    """Insert users, tours and reviews from ``data_dir`` and refresh tour ratings."""
    users = [build_user(r) for r in read_records(data_dir, "users")]
    session.add_all(users)
    await session.flush()

    tours = []
    for record in read_records(data_dir, "tours"):
        tour, guide_ids = build_tour(record)
        session.add(tour)
        await session.flush()
        for position, guide_id in enumerate(guide_ids):
            session.add(TourGuideLink(tour_id=tour.id, user_id=guide_id, position=position))
        tours.append(tour)

    reviews = [build_review(r) for r in read_records(data_dir, "reviews")]
    session.add_all(reviews)
    await session.commit()

    for tour in tours:
        await calc_average_ratings(session, tour.id)

    counts = {"users": len(users), "tours": len(tours), "reviews": len(reviews)}
    logger.info(f"Dev data loaded: {counts}")
    return counts


async def delete_data(session: AsyncSession) -> None:
    """Remove every booking, review, tour and user."""
    for model in (Booking, Review, TourGuideLink, Tour, User):
        await session.execute(delete(model))
    await session.commit()
    logger.info("Dev data deleted")
