"""
Server-rendered pages. The caller is resolved from the session cookie when
present; only the account pages require it.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from tourbook.api.deps import (
    RequestContext,
    get_app_settings,
    get_auth_context,
    get_page_context,
    parse_id,
    read_payload,
    repository_provider,
)
from tourbook.api.schemas import UpdateMeRequest
from tourbook.core.errors import NotFound, ValidationFailed
from tourbook.core.templating import templates
from tourbook.db.models import Tour
from tourbook.db.repository import BookingRepository, TourRepository, UserRepository

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["views"], include_in_schema=False)

get_tours = repository_provider(TourRepository)
get_bookings = repository_provider(BookingRepository)
get_users = repository_provider(UserRepository)

ALERTS = {
    "booking": (
        "Your booking was successful! Please check your email for confirmation. "
        "If your booking doesn't show up immediately, please come back later."
    ),
}


def render(request: Request, template: str, context: RequestContext, **values: Any):
    page: Dict[str, Any] = {
        "user": context.user,
        "alert": ALERTS.get(str(context.query.get("alert", ""))),
        "stripe_enabled": bool(get_app_settings(request).STRIPE_SECRET_KEY),
    }
    page.update(values)
    return templates.TemplateResponse(request, template, page)


async def create_unverified_booking(
    request: Request, context: RequestContext, bookings: BookingRepository
) -> Optional[RedirectResponse]:
    """Book straight from success-redirect query params when the legacy path is enabled."""
    if not get_app_settings(request).ALLOW_UNVERIFIED_CHECKOUT_BOOKINGS:
        return None
    tour, user, price = (context.query.get(key) for key in ("tour", "user", "price"))
    if not (tour and user and price):
        return None

    try:
        amount = float(price)
    except ValueError:
        raise ValidationFailed(f"Invalid price: {price}")

    booking = await bookings.create(
        {"tour_id": parse_id(tour, "tour"), "user_id": parse_id(user, "user"), "price": amount}
    )
    logger.warning("booking_created_without_verification", booking_id=str(booking.id))
    return RedirectResponse(request.url.path, status_code=302)


@router.get("/")
async def overview(
    request: Request,
    context: RequestContext = Depends(get_page_context),
    tours: TourRepository = Depends(get_tours),
    bookings: BookingRepository = Depends(get_bookings),
):
    redirect = await create_unverified_booking(request, context, bookings)
    if redirect is not None:
        return redirect

    records = await tours.find_many(tours.base_query().order_by(Tour.created_at.desc()))
    return render(request, "overview.html", context, title="All Tours", tours=records)


@router.get("/tour/{slug}")
async def tour_page(
    slug: str,
    request: Request,
    context: RequestContext = Depends(get_page_context),
    tours: TourRepository = Depends(get_tours),
):
    tour = await tours.find_by_slug(slug)
    if tour is None:
        raise NotFound("There is no tour with that name")
    return render(request, "tour.html", context, title=f"{tour.name} Tour", tour=tour)


@router.get("/login")
async def login_form(request: Request, context: RequestContext = Depends(get_page_context)):
    return render(request, "login.html", context, title="Log into your account")


@router.get("/me")
async def account(request: Request, context: RequestContext = Depends(get_auth_context)):
    return render(request, "account.html", context, title="Your Account")


@router.get("/my-tours")
async def my_tours(
    request: Request,
    context: RequestContext = Depends(get_auth_context),
    tours: TourRepository = Depends(get_tours),
    bookings: BookingRepository = Depends(get_bookings),
):
    booked = await bookings.find_for_user(context.user.id)
    tour_ids = {booking.tour_id for booking in booked}
    records = []
    if tour_ids:
        records = await tours.find_many(tours.base_query().where(Tour.id.in_(tour_ids)))
    return render(request, "overview.html", context, title="My Tours", tours=records)


@router.post("/submit-user-data")
async def submit_user_data(
    request: Request,
    context: RequestContext = Depends(get_auth_context),
    payload: Dict[str, Any] = Depends(read_payload),
    users: UserRepository = Depends(get_users),
):
    data = UpdateMeRequest.model_validate(
        {key: payload.get(key) for key in ("name", "email") if payload.get(key)}
    ).to_record_data()
    user = await users.update_by_id(context.user.id, data)
    logger.info("user_data_submitted", user_id=str(user.id))
    return render(request, "account.html", context, title="Your Account", user=user)
