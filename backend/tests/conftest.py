"""
Shared fixtures: an in-memory database per test, the app with its outside
collaborators (mail, payments) replaced, and small record factories.
"""
import os

# must be set before tourbook reads its settings
os.environ["ENVIRONMENT"] = "development"
os.environ["DB_URL"] = "sqlite:///:memory:"
os.environ["DB_CREATE_ALL"] = "false"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-secret-that-is-long-enough"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["MAIL_SUPPRESS_SEND"] = "true"
os.environ["LOG_FILE"] = ""

import itertools
from typing import Any, Dict, List
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from slugify import slugify
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from tourbook.core.security import sign_token
from tourbook.core.settings import Settings
from tourbook.db import models  # noqa: F401
from tourbook.db.models import Difficulty, Role, Tour, User
from tourbook.db.session import get_session, make_session_factory
from tourbook.main import create_app
from tourbook.services.email import get_mailer
from tourbook.services.payments import PaymentGateway, get_payment_gateway

_tour_numbers = itertools.count(1)


class RecordingMailer:
    """Stands in for the SMTP mailer and remembers what would have been sent."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail = False

    async def _record(self, kind: str, user: User, url: str) -> None:
        if self.fail:
            raise ConnectionError("mail transport unavailable")
        self.sent.append({"kind": kind, "email": user.email, "url": url})

    async def send_welcome(self, user: User, url: str) -> None:
        await self._record("welcome", user, url)

    async def send_password_reset(self, user: User, url: str) -> None:
        await self._record("password_reset", user, url)


class RecordingGateway(PaymentGateway):
    """Real webhook verification, no outbound checkout calls."""

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.sessions: List[Dict[str, Any]] = []

    async def create_checkout_session(self, tour, user, base_url):
        params = self.build_session_params(tour, user, base_url)
        self.sessions.append(params)
        return {"id": "cs_test_123", "object": "checkout.session", **params}


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(MEDIA_ROOT=str(tmp_path / "public"))


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def gateway(settings) -> RecordingGateway:
    return RecordingGateway(settings)


@pytest.fixture
def app(settings, session_factory, mailer, gateway):
    app = create_app(settings)

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    return app


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def make_user(session_factory):
    async def factory(
        name: str = "Ann Traveller",
        email: str = None,
        role: Role = Role.USER,
        password: str = "secret123",
        active: bool = True,
    ) -> User:
        user = User(
            name=name,
            email=email or f"user-{uuid4().hex[:8]}@example.com",
            role=role,
            password_hash="",
            active=active,
        )
        user.set_password(password, is_new=True)
        async with session_factory() as session:
            session.add(user)
            await session.commit()
        return user

    return factory


@pytest.fixture
def make_tour(session_factory):
    async def factory(**overrides: Any) -> Tour:
        number = next(_tour_numbers)
        fields: Dict[str, Any] = {
            "name": f"The Test Tour Number {number}",
            "duration": 7,
            "max_group_size": 10,
            "difficulty": Difficulty.EASY,
            "price": 500.0,
            "summary": "A pleasant walk in the hills",
            "image_cover": "tour-cover.jpg",
            "start_location": {
                "type": "Point",
                "coordinates": [-118.24, 34.05],
                "description": "Los Angeles, USA",
            },
        }
        fields.update(overrides)
        fields.setdefault("slug", slugify(fields["name"]))
        tour = Tour(**fields)
        async with session_factory() as session:
            session.add(tour)
            await session.commit()
        return tour

    return factory


@pytest.fixture
def auth_headers():
    def headers(user: User) -> Dict[str, str]:
        return {"Authorization": f"Bearer {sign_token(user.id)}"}

    return headers
