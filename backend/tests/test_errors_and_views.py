"""
Error envelopes per environment, request guards, and the rendered pages.
"""
import pytest
from httpx import ASGITransport, AsyncClient

from tourbook.core.security import sign_token
from tourbook.core.settings import Settings
from tourbook.db.models import Booking
from tourbook.db.session import get_session
from tourbook.main import create_app


def _client(app):
    return AsyncClient(transport=ASGITransport(app=app, raise_app_exceptions=False), base_url="http://test")


def _app(environment, tmp_path, session_factory=None, broken_database=False):
    app = create_app(Settings(ENVIRONMENT=environment, MEDIA_ROOT=str(tmp_path / "public")))

    async def override_get_session():
        if broken_database:
            raise RuntimeError("database exploded")
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    return app


class TestErrorEnvelope:
    @pytest.mark.asyncio
    async def test_unknown_api_route(self, client):
        response = await client.get("/api/v1/nowhere")
        assert response.status_code == 404
        assert response.json()["message"] == "Can't find /api/v1/nowhere on this server!"

    @pytest.mark.asyncio
    async def test_development_includes_details(self, client):
        response = await client.get("/api/v1/tours/not-a-uuid")
        body = response.json()
        assert body["status"] == "fail"
        assert body["error"]["statusCode"] == 400
        assert body["error"]["isOperational"] is True
        assert "stack" in body

    @pytest.mark.asyncio
    async def test_production_shows_only_operational_message(self, tmp_path, session_factory):
        async with _client(_app("production", tmp_path, session_factory)) as client:
            response = await client.get("/api/v1/tours/not-a-uuid")
        assert response.status_code == 400
        assert response.json() == {"status": "fail", "message": "Invalid id: not-a-uuid"}

    @pytest.mark.asyncio
    async def test_production_hides_programming_errors(self, tmp_path):
        async with _client(_app("production", tmp_path, broken_database=True)) as client:
            response = await client.get("/api/v1/tours")
        assert response.status_code == 500
        assert response.json() == {"status": "error", "message": "Something went wrong!"}

    @pytest.mark.asyncio
    async def test_development_shows_programming_errors(self, tmp_path):
        async with _client(_app("development", tmp_path, broken_database=True)) as client:
            response = await client.get("/api/v1/tours")
        assert response.status_code == 500
        assert response.json()["message"] == "database exploded"

    @pytest.mark.asyncio
    async def test_production_pages_hide_programming_errors(self, tmp_path):
        async with _client(_app("production", tmp_path, broken_database=True)) as client:
            response = await client.get("/")
        assert response.status_code == 500
        assert "Please try again later!" in response.text
        assert "database exploded" not in response.text


class TestRequestGuards:
    @pytest.mark.asyncio
    async def test_oversized_json_body(self, client):
        response = await client.post(
            "/api/v1/users/login",
            content='{"email": "' + "a" * 20_000 + '"}',
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 413

    @pytest.mark.asyncio
    async def test_security_headers_and_request_id(self, client):
        response = await client.get("/api/v1/tours")
        assert response.headers["X-Frame-Options"] == "SAMEORIGIN"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_request_id_is_propagated(self, client):
        response = await client.get("/api/v1/tours", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_operator_keys_are_stripped_from_login(self, client, make_user):
        await make_user()
        response = await client.post(
            "/api/v1/users/login", json={"email": {"$gt": ""}, "password": "secret123"}
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Please provide email and password"


class TestPages:
    @pytest.mark.asyncio
    async def test_overview_lists_visible_tours(self, client, make_tour):
        visible = await make_tour(name="The Sunny Coast Walk")
        await make_tour(name="The Hidden Secret Walk", secret_tour=True)

        response = await client.get("/")

        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]
        assert visible.name in response.text
        assert "The Hidden Secret Walk" not in response.text
        assert "Log in" in response.text

    @pytest.mark.asyncio
    async def test_tour_page(self, client, make_tour):
        tour = await make_tour(name="The Snow Adventurer")
        response = await client.get(f"/tour/{tour.slug}")
        assert response.status_code == 200
        assert "Tourbook | The Snow Adventurer Tour" in response.text
        assert "Log in to book tour" in response.text

    @pytest.mark.asyncio
    async def test_tour_page_for_logged_in_user(self, client, make_tour, make_user):
        tour = await make_tour(name="The Snow Adventurer")
        user = await make_user(name="Ann Traveller")
        response = await client.get(f"/tour/{tour.slug}", headers={"Cookie": f"jwt={sign_token(user.id)}"})
        assert f'data-tour-id="{tour.id}"' in response.text
        assert "Ann" in response.text

    @pytest.mark.asyncio
    async def test_unknown_tour_page(self, client):
        response = await client.get("/tour/no-such-tour")
        assert response.status_code == 404
        assert "There is no tour with that name" in response.text

    @pytest.mark.asyncio
    async def test_account_page_requires_login(self, client):
        response = await client.get("/me")
        assert response.status_code == 401
        assert "You are not logged in!" in response.text

    @pytest.mark.asyncio
    async def test_my_tours_shows_booked_tours(self, client, make_tour, make_user, session_factory):
        booked = await make_tour(name="The Booked Trip Of A Lifetime")
        await make_tour(name="The Unbooked Trip")
        user = await make_user()
        async with session_factory() as session:
            session.add(Booking(tour_id=booked.id, user_id=user.id, price=500))
            await session.commit()

        response = await client.get(
            "/my-tours", params={"alert": "booking"}, headers={"Cookie": f"jwt={sign_token(user.id)}"}
        )

        assert response.status_code == 200
        assert booked.name in response.text
        assert "The Unbooked Trip" not in response.text
        assert "Your booking was successful!" in response.text

    @pytest.mark.asyncio
    async def test_submit_user_data(self, client, make_user):
        user = await make_user(name="Ann Traveller")
        response = await client.post(
            "/submit-user-data",
            data={"name": "Ann Explorer", "email": user.email},
            headers={"Cookie": f"jwt={sign_token(user.id)}"},
        )
        assert response.status_code == 200
        assert "Ann Explorer" in response.text
