"""
Reviews API, served at top level and nested under a tour.

The nested router resolves ``tourId`` from the path and scopes every list
to that tour; the top-level router has no parent.
"""
from typing import Any, Callable, Dict, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, status

from tourbook.api.deps import RequestContext, get_auth_context, parse_id, read_payload, repository_provider, restrict_to
from tourbook.api.handler_factory import handler_factory
from tourbook.api.schemas import ReviewCreate, ReviewRead, ReviewUpdate
from tourbook.core.errors import Forbidden, NotFound
from tourbook.db.models import Role
from tourbook.db.repository import ReviewRepository

logger = structlog.get_logger(__name__)

get_reviews = repository_provider(ReviewRepository)
handlers = handler_factory(ReviewRead, ReviewCreate, ReviewUpdate)

review_authors = restrict_to(Role.USER)
review_editors = restrict_to(Role.USER, Role.ADMIN)


def path_tour_id(tourId: str) -> UUID:
    return parse_id(tourId, "tourId")


def no_tour_id() -> None:
    return None


async def ensure_can_modify(reviews: ReviewRepository, review_id: UUID, context: RequestContext) -> None:
    """Admins may edit any review; users only their own."""
    review = await reviews.find_by_id(review_id)
    if review is None:
        raise NotFound("No document found with that ID")
    if context.user.role == Role.USER and review.user_id != context.user.id:
        raise Forbidden("You can only modify your own reviews")


def build_review_router(prefix: str, tour_scope: Callable) -> APIRouter:
    router = APIRouter(prefix=prefix, tags=["reviews"])

    @router.get("")
    async def get_all_reviews(
        tour_id: Optional[UUID] = Depends(tour_scope),
        context: RequestContext = Depends(get_auth_context),
        reviews: ReviewRepository = Depends(get_reviews),
    ):
        pre_filter = {"tour_id": tour_id} if tour_id else None
        return await handlers.list(reviews, context, pre_filter)

    @router.post("", status_code=status.HTTP_201_CREATED)
    async def create_review(
        context: RequestContext = Depends(review_authors),
        payload: Dict[str, Any] = Depends(read_payload),
        tour_id: Optional[UUID] = Depends(tour_scope),
        reviews: ReviewRepository = Depends(get_reviews),
    ):
        payload = dict(payload)
        if tour_id is not None:
            payload["tour"] = str(tour_id)
        # reviews are always written as the caller
        for key in ("userId", "user_id"):
            payload.pop(key, None)
        payload["user"] = str(context.user.id)
        return await handlers.create(reviews, payload)

    @router.get("/{id}")
    async def get_review(
        id: str,
        tour_id: Optional[UUID] = Depends(tour_scope),
        context: RequestContext = Depends(get_auth_context),
        reviews: ReviewRepository = Depends(get_reviews),
    ):
        return await handlers.get_one(reviews, parse_id(id))

    @router.patch("/{id}")
    async def update_review(
        id: str,
        context: RequestContext = Depends(review_editors),
        payload: Dict[str, Any] = Depends(read_payload),
        tour_id: Optional[UUID] = Depends(tour_scope),
        reviews: ReviewRepository = Depends(get_reviews),
    ):
        review_id = parse_id(id)
        await ensure_can_modify(reviews, review_id, context)
        return await handlers.update(reviews, review_id, payload)

    @router.delete("/{id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_review(
        id: str,
        tour_id: Optional[UUID] = Depends(tour_scope),
        context: RequestContext = Depends(review_editors),
        reviews: ReviewRepository = Depends(get_reviews),
    ):
        review_id = parse_id(id)
        await ensure_can_modify(reviews, review_id, context)
        logger.info("review_deleted_by", user_id=str(context.user.id), review_id=str(review_id))
        return await handlers.delete(reviews, review_id)

    return router


router = build_review_router("/reviews", no_tour_id)
nested_router = build_review_router("/tours/{tourId}/reviews", path_tour_id)
