import logging
import time
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import UUID

from jose import JWTError, jwt
from passlib.context import CryptContext

from tourbook.core.errors import token_error
from tourbook.core.settings import get_settings

logger = logging.getLogger(__name__)

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=get_settings().BCRYPT_ROUNDS,
)


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a password against its hash"""
    if not plain or not hashed:
        return False
    try:
        return pwd_context.verify(plain, hashed)
    except (ValueError, TypeError) as e:
        logger.error(f"Password verification error: {e}")
        return False


def get_password_hash(password: str) -> str:
    """Generate a salted bcrypt hash"""
    return pwd_context.hash(password)


def sign_token(user_id: UUID, issued_at: Optional[int] = None) -> str:
    """Sign a session token whose subject is ``user_id``."""
    settings = get_settings()
    iat = int(time.time()) if issued_at is None else issued_at
    expires = iat + int(timedelta(days=settings.JWT_EXPIRES_IN_DAYS).total_seconds())
    payload = {"id": str(user_id), "iat": iat, "exp": expires}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Verify signature and expiry; raise Unauthorized with the matching message otherwise."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"Token rejected: {type(e).__name__}")
        raise token_error(e) from e
    if "id" not in payload or "iat" not in payload:
        raise token_error(JWTError("missing claims"))
    return payload
