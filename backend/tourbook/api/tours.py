"""
Tours API: catalog CRUD, aggregates and geospatial search.
"""
from dataclasses import replace
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from tourbook.api.deps import (
    RequestContext,
    get_app_settings,
    get_request_context,
    parse_id,
    read_payload,
    repository_provider,
    restrict_to,
)
from tourbook.api.handler_factory import handler_factory, serialize_many
from tourbook.api.schemas import TourCreate, TourRead, TourUpdate
from tourbook.core.errors import NotFound
from tourbook.db.models import Role
from tourbook.db.repository import TourRepository
from tourbook.db.session import get_session
from tourbook.services import tours as tour_service
from tourbook.services.uploads import MAX_TOUR_IMAGES, collect_uploads, process_tour_images

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/tours", tags=["tours"])

get_tours = repository_provider(TourRepository)
handlers = handler_factory(TourRead, TourCreate, TourUpdate, get_expand=("reviews",))

tour_managers = restrict_to(Role.ADMIN, Role.LEAD_GUIDE)
tour_staff = restrict_to(Role.ADMIN, Role.LEAD_GUIDE, Role.GUIDE)


# Aliases and aggregates
@router.get("/top-5-cheap")
async def get_top_cheap_tours(
    context: RequestContext = Depends(get_request_context),
    tours: TourRepository = Depends(get_tours),
):
    aliased = replace(context, query={**context.query, **tour_service.TOP_CHEAP_QUERY})
    return await handlers.list(tours, aliased)


@router.get("/tours-stats")
async def get_tours_stats(session: AsyncSession = Depends(get_session)):
    stats = await tour_service.tour_stats(session)
    return {"status": "success", "data": {"stats": stats}}


@router.get("/tours-stats-by-difficulty")
async def get_tours_stats_by_difficulty(session: AsyncSession = Depends(get_session)):
    stats = await tour_service.tour_stats_by_difficulty(session)
    return {"status": "success", "data": {"stats": stats}}


@router.get("/monthly-plan/{year}")
async def get_monthly_plan(
    year: int,
    context: RequestContext = Depends(tour_staff),
    session: AsyncSession = Depends(get_session),
):
    plan = await tour_service.monthly_plan(session, year)
    return {"status": "success", "data": {"plan": plan}}


# Geospatial
@router.get("/tours-within/{distance}/center/{latlng}/unit/{unit}")
async def get_tours_within(
    distance: float,
    latlng: str,
    unit: str,
    session: AsyncSession = Depends(get_session),
):
    tours = await tour_service.tours_within(session, distance, latlng, unit)
    documents = serialize_many(tours, TourRead)
    return {"status": "success", "results": len(documents), "data": {"data": documents}}


@router.get("/distances/{latlng}/unit/{unit}")
async def get_distances(
    latlng: str,
    unit: str,
    session: AsyncSession = Depends(get_session),
):
    distances = await tour_service.tour_distances(session, latlng, unit)
    return {"status": "success", "data": {"data": distances}}


# CRUD
@router.get("")
async def get_all_tours(
    context: RequestContext = Depends(get_request_context),
    tours: TourRepository = Depends(get_tours),
):
    return await handlers.list(tours, context)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_tour(
    context: RequestContext = Depends(tour_managers),
    payload: Dict[str, Any] = Depends(read_payload),
    tours: TourRepository = Depends(get_tours),
):
    return await handlers.create(tours, payload)


@router.get("/{id}")
async def get_tour(id: str, tours: TourRepository = Depends(get_tours)):
    return await handlers.get_one(tours, parse_id(id))


@router.patch("/{id}")
async def update_tour(
    id: str,
    request: Request,
    context: RequestContext = Depends(tour_managers),
    payload: Dict[str, Any] = Depends(read_payload),
    tours: TourRepository = Depends(get_tours),
):
    tour_id = parse_id(id)
    covers = await collect_uploads(request, "imageCover", max_count=1)
    images = await collect_uploads(request, "images", max_count=MAX_TOUR_IMAGES)

    payload = dict(payload)
    if covers or images:
        if await tours.find_by_id(tour_id) is None:
            raise NotFound("No document found with that ID")
        uploaded = await process_tour_images(
            tour_id,
            get_app_settings(request).MEDIA_ROOT,
            cover=covers[0] if covers else None,
            images=images,
        )
        if "image_cover" in uploaded:
            payload["imageCover"] = uploaded["image_cover"]
        if "images" in uploaded:
            payload["images"] = uploaded["images"]

    return await handlers.update(tours, tour_id, payload)


@router.delete("/{id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tour(
    id: str,
    context: RequestContext = Depends(tour_managers),
    tours: TourRepository = Depends(get_tours),
):
    return await handlers.delete(tours, parse_id(id))
