"""
Stripe checkout sessions and webhook verification.

The SDK is synchronous, so session creation runs in the threadpool.
"""
import json
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import stripe
import structlog
from fastapi import Request
from starlette.concurrency import run_in_threadpool

from tourbook.core.errors import ValidationFailed
from tourbook.core.settings import Settings
from tourbook.db.models import Tour, User

logger = structlog.get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
BOOKING_ALERT = "booking"


def success_url(base_url: str, tour: Tour, user: User, settings: Settings) -> str:
    if settings.ALLOW_UNVERIFIED_CHECKOUT_BOOKINGS:
        query = urlencode({"tour": str(tour.id), "user": str(user.id), "price": f"{tour.price:g}"})
        return f"{base_url}/?{query}"
    return f"{base_url}/my-tours?alert={BOOKING_ALERT}"


def line_item_image(tour: Tour, base_url: str, settings: Settings) -> str:
    image_base = (settings.PUBLIC_IMAGE_BASE_URL or base_url).rstrip("/")
    return f"{image_base}/img/tours/{tour.image_cover}"


class PaymentGateway:
    def __init__(self, settings: Settings):
        self.settings = settings

    def build_session_params(self, tour: Tour, user: User, base_url: str) -> Dict[str, Any]:
        return {
            "mode": "payment",
            "payment_method_types": ["card"],
            "success_url": success_url(base_url, tour, user, self.settings),
            "cancel_url": f"{base_url}/tour/{tour.slug}",
            "customer_email": user.email,
            "client_reference_id": str(tour.id),
            "line_items": [
                {
                    "price_data": {
                        "currency": self.settings.STRIPE_CURRENCY,
                        "unit_amount": int(round(tour.price * 100)),
                        "product_data": {
                            "name": f"{tour.name} Tour",
                            "description": tour.summary,
                            "images": [line_item_image(tour, base_url, self.settings)],
                        },
                    },
                    "quantity": 1,
                }
            ],
        }

    async def create_checkout_session(self, tour: Tour, user: User, base_url: str) -> Dict[str, Any]:
        params = self.build_session_params(tour, user, base_url)
        session = await run_in_threadpool(
            stripe.checkout.Session.create, api_key=self.settings.STRIPE_SECRET_KEY, **params
        )
        logger.info("checkout_session_created", tour_id=str(tour.id), user_id=str(user.id))
        return session.to_dict() if hasattr(session, "to_dict") else dict(session)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the provider signature; any mismatch is a 400 with no side effects."""
        try:
            stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature or "",
                secret=self.settings.STRIPE_WEBHOOK_SECRET,
            )
        except ValueError as e:
            logger.warning("webhook_invalid_payload", error=str(e))
            raise ValidationFailed(f"Webhook error: {e}")
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_invalid_signature", error=str(e))
            raise ValidationFailed(f"Webhook error: {e}")
        # signature checked, so the raw body is the event
        return json.loads(payload)


def checkout_details(session_object: Dict[str, Any]) -> Dict[str, Any]:
    """Tour reference, buyer email and captured amount from a completed checkout session."""
    email = session_object.get("customer_email") or (session_object.get("customer_details") or {}).get("email")
    amount = session_object.get("amount_total")
    return {
        "tour_id": session_object.get("client_reference_id"),
        "email": email.lower() if email else None,
        "price": amount / 100 if amount is not None else None,
    }


def get_payment_gateway(request: Request) -> PaymentGateway:
    gateway = getattr(request.app.state, "payment_gateway", None)
    if gateway is None:
        gateway = PaymentGateway(request.app.state.settings)
        request.app.state.payment_gateway = gateway
    return gateway
