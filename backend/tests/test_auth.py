"""
Signup, login, token protection, password flows and account self-service.
"""
import time

import pytest

from tourbook.core.errors import Conflict
from tourbook.core.security import sign_token
from tourbook.db.models import Role, User, utcnow
from tourbook.db.repository import UserRepository

API = "/api/v1/users"

SIGNUP = {
    "name": "Ann Traveller",
    "email": "Ann@Example.com",
    "password": "secret123",
    "passwordConfirm": "secret123",
}


async def _stored_user(session_factory, user_id) -> User:
    async with session_factory() as session:
        return await session.get(User, user_id)


class TestSignup:
    @pytest.mark.asyncio
    async def test_signup_returns_token_and_public_user(self, client, mailer):
        response = await client.post(f"{API}/signup", json=SIGNUP)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "success"
        assert body["token"]
        user = body["data"]["user"]
        assert user["email"] == "ann@example.com"
        assert user["role"] == "user"
        assert user["photo"] == "default.jpg"
        assert "password" not in user
        assert "passwordHash" not in user
        assert response.cookies.get("jwt") == body["token"]

        assert mailer.sent == [{"kind": "welcome", "email": "ann@example.com", "url": "http://test/me"}]

    @pytest.mark.asyncio
    async def test_signup_ignores_requested_role(self, client):
        response = await client.post(f"{API}/signup", json={**SIGNUP, "role": "admin"})
        assert response.status_code == 201
        assert response.json()["data"]["user"]["role"] == "user"

    @pytest.mark.asyncio
    async def test_signup_rejects_mismatched_passwords(self, client):
        response = await client.post(f"{API}/signup", json={**SIGNUP, "passwordConfirm": "secret124"})
        assert response.status_code == 400
        assert "Passwords are not the same!" in response.json()["message"]

    @pytest.mark.asyncio
    async def test_signup_rejects_short_password(self, client):
        response = await client.post(f"{API}/signup", json={**SIGNUP, "password": "short12", "passwordConfirm": "short12"})
        assert response.status_code == 400
        assert "password" in response.json()["message"]

    @pytest.mark.asyncio
    async def test_signup_rejects_duplicate_email(self, client, make_user):
        await make_user(email="ann@example.com")
        response = await client.post(f"{API}/signup", json=SIGNUP)
        assert response.status_code == 400
        assert response.json()["message"].startswith("Duplicate field value")

    @pytest.mark.asyncio
    async def test_duplicate_email_conflict_names_the_field(self, session, make_user):
        await make_user(email="ann@example.com")
        with pytest.raises(Conflict) as excinfo:
            await UserRepository(session).create(
                {"name": "Ann Again", "email": "ann@example.com", "password": "secret123"}
            )
        assert excinfo.value.fields == ["email"]
        assert excinfo.value.values == {"email": "ann@example.com"}

    @pytest.mark.asyncio
    async def test_welcome_mail_failure_does_not_block_signup(self, client, mailer):
        mailer.fail = True
        response = await client.post(f"{API}/signup", json=SIGNUP)
        assert response.status_code == 201


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_requires_both_fields(self, client):
        response = await client.post(f"{API}/login", json={"email": "ann@example.com"})
        assert response.status_code == 400
        assert response.json()["message"] == "Please provide email and password"

    @pytest.mark.asyncio
    async def test_wrong_password(self, client, make_user):
        user = await make_user()
        response = await client.post(f"{API}/login", json={"email": user.email, "password": "nope-nope"})
        assert response.status_code == 401
        assert response.json()["message"] == "Incorrect Email or Password"

    @pytest.mark.asyncio
    async def test_unknown_email_gets_the_same_message(self, client):
        response = await client.post(f"{API}/login", json={"email": "ghost@example.com", "password": "secret123"})
        assert response.status_code == 401
        assert response.json()["message"] == "Incorrect Email or Password"

    @pytest.mark.asyncio
    async def test_successful_login(self, client, make_user):
        user = await make_user()
        response = await client.post(f"{API}/login", json={"email": user.email.upper(), "password": "secret123"})
        assert response.status_code == 200
        assert response.json()["data"]["user"]["id"] == str(user.id)

    @pytest.mark.asyncio
    async def test_logout_overwrites_cookie(self, client):
        response = await client.get(f"{API}/logout")
        assert response.status_code == 200
        assert response.cookies.get("jwt") == "loggedout"


class TestProtect:
    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get(f"{API}/me")
        assert response.status_code == 401
        assert response.json()["message"] == "You are not logged in! Please login to get access."

    @pytest.mark.asyncio
    async def test_bearer_token(self, client, make_user, auth_headers):
        user = await make_user()
        response = await client.get(f"{API}/me", headers=auth_headers(user))
        assert response.status_code == 200
        assert response.json()["data"]["data"]["email"] == user.email

    @pytest.mark.asyncio
    async def test_cookie_token(self, client, make_user):
        user = await make_user()
        response = await client.get(f"{API}/me", headers={"Cookie": f"jwt={sign_token(user.id)}"})
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_logged_out_cookie_is_not_a_session(self, client):
        response = await client.get(f"{API}/me", headers={"Cookie": "jwt=loggedout"})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid token. Please login again!"

    @pytest.mark.asyncio
    async def test_token_of_inactive_user(self, client, make_user, auth_headers):
        user = await make_user(active=False)
        response = await client.get(f"{API}/me", headers=auth_headers(user))
        assert response.status_code == 401
        assert response.json()["message"] == "The user belonging to the token no longer exist."

    @pytest.mark.asyncio
    async def test_token_older_than_password_change(self, client, make_user, session_factory):
        user = await make_user()
        stale = sign_token(user.id, issued_at=int(time.time()) - 60)

        async with session_factory() as session:
            stored = await session.get(User, user.id)
            stored.set_password("another123")
            await session.commit()

        response = await client.get(f"{API}/me", headers={"Authorization": f"Bearer {stale}"})
        assert response.status_code == 401
        assert response.json()["message"] == "The user recently changed password! Please login again."

        fresh = await client.get(f"{API}/me", headers={"Authorization": f"Bearer {sign_token(user.id)}"})
        assert fresh.status_code == 200


class TestPasswordReset:
    @pytest.mark.asyncio
    async def test_unknown_email(self, client):
        response = await client.post(f"{API}/forgotPassword", json={"email": "ghost@example.com"})
        assert response.status_code == 404
        assert response.json()["message"] == "There is no user with that email address."

    @pytest.mark.asyncio
    async def test_reset_token_is_single_use(self, client, make_user, mailer):
        user = await make_user()
        response = await client.post(f"{API}/forgotPassword", json={"email": user.email})
        assert response.status_code == 200
        assert response.json()["message"] == "Token sent to your email!"

        reset_url = mailer.sent[-1]["url"]
        assert reset_url.startswith("http://test/api/v1/users/resetPassword/")
        token = reset_url.rsplit("/", 1)[-1]

        body = {"password": "brandnew123", "passwordConfirm": "brandnew123"}
        response = await client.patch(f"{API}/resetPassword/{token}", json=body)
        assert response.status_code == 200
        assert response.json()["token"]

        again = await client.patch(f"{API}/resetPassword/{token}", json=body)
        assert again.status_code == 400
        assert again.json()["message"] == "Token is invalid or has expired!"

        login = await client.post(f"{API}/login", json={"email": user.email, "password": "brandnew123"})
        assert login.status_code == 200

    @pytest.mark.asyncio
    async def test_expired_reset_token(self, client, make_user, mailer, session_factory):
        user = await make_user()
        await client.post(f"{API}/forgotPassword", json={"email": user.email})
        token = mailer.sent[-1]["url"].rsplit("/", 1)[-1]

        async with session_factory() as session:
            stored = await session.get(User, user.id)
            stored.password_reset_expires = utcnow()
            await session.commit()

        response = await client.patch(
            f"{API}/resetPassword/{token}", json={"password": "brandnew123", "passwordConfirm": "brandnew123"}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_mail_failure_clears_reset_token(self, client, make_user, mailer, session_factory):
        user = await make_user()
        mailer.fail = True

        response = await client.post(f"{API}/forgotPassword", json={"email": user.email})
        assert response.status_code == 500
        assert response.json()["message"] == "There was an error sending the email. Try again later!"

        stored = await _stored_user(session_factory, user.id)
        assert stored.password_reset_token is None
        assert stored.password_reset_expires is None


class TestOwnAccount:
    @pytest.mark.asyncio
    async def test_update_my_password_checks_current(self, client, make_user, auth_headers):
        user = await make_user()
        response = await client.patch(
            f"{API}/updateMyPassword",
            json={"passwordCurrent": "wrong-one", "password": "another123", "passwordConfirm": "another123"},
            headers=auth_headers(user),
        )
        assert response.status_code == 401
        assert response.json()["message"] == "Your current password is wrong"

    @pytest.mark.asyncio
    async def test_update_my_password(self, client, make_user, auth_headers):
        user = await make_user()
        response = await client.patch(
            f"{API}/updateMyPassword",
            json={"passwordCurrent": "secret123", "password": "another123", "passwordConfirm": "another123"},
            headers=auth_headers(user),
        )
        assert response.status_code == 200
        new_token = response.json()["token"]

        me = await client.get(f"{API}/me", headers={"Authorization": f"Bearer {new_token}"})
        assert me.status_code == 200

    @pytest.mark.asyncio
    async def test_update_me_rejects_passwords(self, client, make_user, auth_headers):
        user = await make_user()
        response = await client.patch(
            f"{API}/updateMe", json={"password": "another123"}, headers=auth_headers(user)
        )
        assert response.status_code == 400
        assert "/updateMyPassword" in response.json()["message"]

    @pytest.mark.asyncio
    async def test_update_me_only_touches_name_and_email(self, client, make_user, auth_headers):
        user = await make_user()
        response = await client.patch(
            f"{API}/updateMe",
            json={"name": "Ann Explorer", "role": "admin"},
            headers=auth_headers(user),
        )
        assert response.status_code == 200
        updated = response.json()["data"]["user"]
        assert updated["name"] == "Ann Explorer"
        assert updated["role"] == "user"

    @pytest.mark.asyncio
    async def test_delete_me_deactivates(self, client, make_user, auth_headers, session_factory):
        user = await make_user()
        headers = auth_headers(user)

        response = await client.delete(f"{API}/deleteMe", headers=headers)
        assert response.status_code == 204

        assert (await client.get(f"{API}/me", headers=headers)).status_code == 401
        login = await client.post(f"{API}/login", json={"email": user.email, "password": "secret123"})
        assert login.status_code == 401

        stored = await _stored_user(session_factory, user.id)
        assert stored is not None
        assert stored.active is False


class TestAdministration:
    @pytest.mark.asyncio
    async def test_users_list_is_admin_only(self, client, make_user, auth_headers):
        user = await make_user()
        response = await client.get(API, headers=auth_headers(user))
        assert response.status_code == 403
        assert response.json()["message"] == "You do not have permission to perform this action!"

    @pytest.mark.asyncio
    async def test_admin_lists_active_users(self, client, make_user, auth_headers):
        admin = await make_user(role=Role.ADMIN)
        await make_user()
        await make_user(active=False)

        response = await client.get(API, headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.json()["results"] == 2

    @pytest.mark.asyncio
    async def test_create_user_points_to_signup(self, client, make_user, auth_headers):
        admin = await make_user(role=Role.ADMIN)
        response = await client.post(API, json={}, headers=auth_headers(admin))
        assert response.status_code == 400
        assert response.json()["message"] == "This route is not defined! Please use /signup instead."

    @pytest.mark.asyncio
    async def test_admin_changes_role(self, client, make_user, auth_headers):
        admin = await make_user(role=Role.ADMIN)
        user = await make_user()
        response = await client.patch(f"{API}/{user.id}", json={"role": "guide"}, headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.json()["data"]["data"]["role"] == "guide"

    @pytest.mark.asyncio
    async def test_admin_deletes_user(self, client, make_user, auth_headers):
        admin = await make_user(role=Role.ADMIN)
        user = await make_user()
        headers = auth_headers(admin)

        assert (await client.delete(f"{API}/{user.id}", headers=headers)).status_code == 204
        assert (await client.get(f"{API}/{user.id}", headers=headers)).status_code == 404
