"""
Password hashing, session tokens and the account helpers built on them.
"""
import time
from datetime import timedelta

import pytest

from tourbook.core.errors import Unauthorized
from tourbook.core.security import decode_token, get_password_hash, sign_token, verify_password
from tourbook.db.models import Role, Tour, User, duration_weeks, hash_reset_token, utcnow
from tourbook.services.ratings import round_rating


def _user(password="secret123", is_new=True):
    user = User(name="Ann Traveller", email="ann@example.com", role=Role.USER, password_hash="")
    user.set_password(password, is_new=is_new)
    return user


def test_password_is_never_stored_in_plaintext():
    hashed = get_password_hash("secret123")
    assert hashed != "secret123"
    assert verify_password("secret123", hashed)
    assert not verify_password("wrong-one", hashed)


def test_verify_password_handles_empty_input():
    assert verify_password("", get_password_hash("secret123")) is False
    assert verify_password("secret123", "") is False


def test_correct_password_on_user():
    user = _user()
    assert user.correct_password("secret123")
    assert not user.correct_password("secret124")


def test_token_round_trip():
    user = _user()
    payload = decode_token(sign_token(user.id))
    assert payload["id"] == str(user.id)
    assert payload["exp"] > payload["iat"]


def test_expired_token_is_rejected():
    issued_at = int(time.time()) - int(timedelta(days=91).total_seconds())
    with pytest.raises(Unauthorized) as exc_info:
        decode_token(sign_token(_user().id, issued_at=issued_at))
    assert exc_info.value.message == "Your token has expired. Please login again!"


def test_tampered_token_is_rejected():
    token = sign_token(_user().id)
    with pytest.raises(Unauthorized) as exc_info:
        decode_token(token[:-2] + ("aa" if not token.endswith("aa") else "bb"))
    assert exc_info.value.message == "Invalid token. Please login again!"


def test_new_account_never_changed_password():
    user = _user(is_new=True)
    assert user.password_changed_at is None
    assert user.changed_password_after(0) is False


def test_password_change_invalidates_older_tokens():
    user = _user()
    user.set_password("another123")
    now = int(time.time())
    assert user.changed_password_after(now - 60) is True
    # tokens issued right after the change stay valid
    assert user.changed_password_after(now) is False


def test_reset_token_stores_only_its_hash():
    user = _user()
    token = user.create_password_reset_token()
    assert len(token) == 64
    assert user.password_reset_token == hash_reset_token(token)
    assert user.password_reset_token != token

    remaining = user.password_reset_expires - utcnow()
    assert timedelta(minutes=9) < remaining <= timedelta(minutes=10)

    user.clear_password_reset()
    assert user.password_reset_token is None
    assert user.password_reset_expires is None


def test_first_name():
    assert _user().first_name == "Ann"


def test_duration_weeks_is_derived():
    assert Tour(duration=14).duration_weeks == 2
    assert duration_weeks(None) is None


@pytest.mark.parametrize("value, expected", [(4.666, 4.7), (4.25, 4.3), (3.0, 3.0), (4.94, 4.9)])
def test_round_rating(value, expected):
    assert round_rating(value) == expected
