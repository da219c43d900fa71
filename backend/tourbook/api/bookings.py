"""
Bookings API and the payment-provider webhook.

Bookings are created authoritatively by ``POST /webhook-checkout`` once the
provider reports a completed checkout; the CRUD routes are for staff.
"""
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Request, status

from tourbook.api.deps import (
    RequestContext,
    get_auth_context,
    parse_id,
    read_payload,
    repository_provider,
    restrict_to,
)
from tourbook.api.handler_factory import handler_factory
from tourbook.api.schemas import BookingCreate, BookingRead, BookingUpdate
from tourbook.core.errors import NotFound, ValidationFailed
from tourbook.db.models import Role
from tourbook.db.repository import BookingRepository, TourRepository, UserRepository
from tourbook.services.payments import CHECKOUT_COMPLETED, PaymentGateway, checkout_details, get_payment_gateway

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/bookings", tags=["bookings"])
webhook_router = APIRouter(tags=["webhooks"])

get_bookings = repository_provider(BookingRepository)
get_tours = repository_provider(TourRepository)
get_users = repository_provider(UserRepository)
handlers = handler_factory(BookingRead, BookingCreate, BookingUpdate)

booking_managers = restrict_to(Role.ADMIN, Role.LEAD_GUIDE)


@router.get("/checkout-session/{tourId}")
async def get_checkout_session(
    tourId: str,
    context: RequestContext = Depends(get_auth_context),
    tours: TourRepository = Depends(get_tours),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    tour = await tours.find_by_id(parse_id(tourId, "tourId"))
    if tour is None:
        raise NotFound("No tour found with that ID")

    session = await gateway.create_checkout_session(tour, context.user, context.base_url)
    return {"status": "success", "session": session}


@router.get("")
async def get_all_bookings(
    context: RequestContext = Depends(booking_managers),
    bookings: BookingRepository = Depends(get_bookings),
):
    return await handlers.list(bookings, context)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_booking(
    context: RequestContext = Depends(booking_managers),
    payload: Dict[str, Any] = Depends(read_payload),
    bookings: BookingRepository = Depends(get_bookings),
):
    return await handlers.create(bookings, payload)


@router.get("/{id}")
async def get_booking(
    id: str,
    context: RequestContext = Depends(booking_managers),
    bookings: BookingRepository = Depends(get_bookings),
):
    return await handlers.get_one(bookings, parse_id(id))


@router.patch("/{id}")
async def update_booking(
    id: str,
    context: RequestContext = Depends(booking_managers),
    payload: Dict[str, Any] = Depends(read_payload),
    bookings: BookingRepository = Depends(get_bookings),
):
    return await handlers.update(bookings, parse_id(id), payload)


@router.delete("/{id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_booking(
    id: str,
    context: RequestContext = Depends(booking_managers),
    bookings: BookingRepository = Depends(get_bookings),
):
    return await handlers.delete(bookings, parse_id(id))


async def create_booking_from_checkout(
    session_object: Dict[str, Any],
    bookings: BookingRepository,
    users: UserRepository,
) -> bool:
    """Book the tour for the buyer at the captured amount; False if the session can't be resolved."""
    details = checkout_details(session_object)
    user = await users.find_by_email(details["email"]) if details["email"] else None
    try:
        tour_id = parse_id(details["tour_id"], "client_reference_id") if details["tour_id"] else None
    except ValidationFailed:
        tour_id = None
    if user is None or tour_id is None or details["price"] is None:
        logger.warning("webhook_checkout_unresolved", tour_id=details["tour_id"], has_user=user is not None)
        return False

    try:
        booking = await bookings.create({"tour_id": tour_id, "user_id": user.id, "price": details["price"]})
    except NotFound as e:
        # tour removed between checkout and delivery
        logger.warning("webhook_checkout_unresolved", tour_id=details["tour_id"], reason=e.message)
        return False

    logger.info("booking_created_from_webhook", booking_id=str(booking.id), tour_id=details["tour_id"])
    return True


@webhook_router.post("/webhook-checkout")
async def webhook_checkout(
    request: Request,
    bookings: BookingRepository = Depends(get_bookings),
    users: UserRepository = Depends(get_users),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    payload = await request.body()
    event = gateway.construct_event(payload, request.headers.get("stripe-signature"))

    if event.get("type") == CHECKOUT_COMPLETED:
        await create_booking_from_checkout(event["data"]["object"], bookings, users)
    else:
        logger.info("webhook_event_ignored", event_type=event.get("type"))

    return {"received": True}
