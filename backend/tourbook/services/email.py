"""
Transactional email: welcome and password-reset messages rendered from
the templates under ``templates/email``.
"""
from pathlib import Path
from typing import Any, Dict

import structlog
from fastapi import Request
from fastapi_mail import ConnectionConfig, FastMail, MessageSchema, MessageType

from tourbook.core.settings import Settings
from tourbook.db.models import User

logger = structlog.get_logger(__name__)

TEMPLATE_FOLDER = Path(__file__).resolve().parents[1] / "templates" / "email"


def build_mail_config(settings: Settings) -> ConnectionConfig:
    return ConnectionConfig(
        MAIL_USERNAME=settings.MAIL_USERNAME,
        MAIL_PASSWORD=settings.MAIL_PASSWORD,
        MAIL_FROM=settings.MAIL_FROM,
        MAIL_FROM_NAME=settings.MAIL_FROM_NAME,
        MAIL_PORT=settings.MAIL_PORT,
        MAIL_SERVER=settings.MAIL_SERVER,
        MAIL_STARTTLS=settings.MAIL_STARTTLS,
        MAIL_SSL_TLS=settings.MAIL_SSL_TLS,
        USE_CREDENTIALS=bool(settings.MAIL_USERNAME),
        SUPPRESS_SEND=int(settings.MAIL_SUPPRESS_SEND),
        TEMPLATE_FOLDER=TEMPLATE_FOLDER,
    )


class Mailer:
    """Sends one templated message per call to a single user."""

    def __init__(self, settings: Settings):
        self.app_name = settings.APP_NAME
        self.fast_mail = FastMail(build_mail_config(settings))

    async def send(self, user: User, template: str, subject: str, url: str) -> None:
        body: Dict[str, Any] = {
            "first_name": user.first_name,
            "url": url,
            "subject": subject,
            "app_name": self.app_name,
        }
        message = MessageSchema(
            subject=subject,
            recipients=[user.email],
            template_body=body,
            subtype=MessageType.html,
        )
        await self.fast_mail.send_message(message, template_name=f"{template}.html")
        logger.info("email_sent", template=template, user_id=str(user.id))

    async def send_welcome(self, user: User, url: str) -> None:
        await self.send(user, "welcome", f"Welcome to the {self.app_name} Family!", url)

    async def send_password_reset(self, user: User, url: str) -> None:
        await self.send(user, "password_reset", "Your password reset token (valid for only 10 mins)", url)


def get_mailer(request: Request) -> Mailer:
    mailer = getattr(request.app.state, "mailer", None)
    if mailer is None:
        mailer = Mailer(request.app.state.settings)
        request.app.state.mailer = mailer
    return mailer
