"""
Request-scoped dependencies shared by the routers.

A ``RequestContext`` is built once per request and passed explicitly to the
handlers that need the request time, the parsed query, or the caller.
"""
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Type
from uuid import UUID

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tourbook.core.api_features import parse_query_params
from tourbook.core.errors import AppError, Forbidden, Unauthorized, ValidationFailed, invalid_identifier
from tourbook.core.sanitize import sanitize_payload
from tourbook.core.security import decode_token
from tourbook.core.settings import Settings, get_settings
from tourbook.db.models import Role, User
from tourbook.db.repository import UserRepository
from tourbook.db.session import get_session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    requested_at: datetime
    query: Dict[str, Any] = field(default_factory=dict)
    base_url: str = ""
    user: Optional[User] = None


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def get_request_context(request: Request) -> RequestContext:
    settings = get_app_settings(request)
    base_url = settings.PUBLIC_BASE_URL or str(request.base_url)
    return RequestContext(
        requested_at=datetime.now(timezone.utc),
        query=parse_query_params(request.query_params.multi_items()),
        base_url=base_url.rstrip("/"),
    )


async def read_payload(request: Request) -> Dict[str, Any]:
    """Decode a JSON, urlencoded or multipart body into a sanitized dict of fields."""
    content_type = request.headers.get("content-type", "").lower()

    if content_type.startswith("application/json"):
        body = await request.body()
        if not body:
            return {}
        try:
            data = json.loads(body)
        except ValueError:
            raise ValidationFailed("Invalid JSON body")
        if not isinstance(data, dict):
            raise ValidationFailed("Request body must be a JSON object")
    elif content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        # files are read by the upload dependencies
        data = {key: value for key, value in form.multi_items() if isinstance(value, str)}
    else:
        data = {}

    return sanitize_payload(data)


def parse_id(value: str, name: str = "id") -> UUID:
    try:
        return UUID(str(value))
    except ValueError:
        raise invalid_identifier(name, value)


def repository_provider(repository_cls: Type) -> Callable:
    """Dependency factory yielding ``repository_cls`` bound to the request session."""

    def provide(session: AsyncSession = Depends(get_session)):
        return repository_cls(session)

    provide.__name__ = f"get_{repository_cls.__name__}"
    return provide


def extract_token(request: Request, settings: Settings, allow_header: bool = True) -> Optional[str]:
    if allow_header:
        authorization = request.headers.get("authorization", "")
        if authorization.startswith("Bearer"):
            parts = authorization.split(" ", 1)
            if len(parts) == 2 and parts[1].strip():
                return parts[1].strip()
    return request.cookies.get(settings.JWT_COOKIE_NAME) or None


async def authenticate(token: str, users: UserRepository) -> User:
    """Token-present -> token-valid -> user-resolved, or Unauthorized."""
    payload = decode_token(token)
    try:
        user_id = UUID(str(payload["id"]))
    except ValueError:
        raise Unauthorized("Invalid token. Please login again!")

    user = await users.find_by_id(user_id)
    if user is None:
        raise Unauthorized("The user belonging to the token no longer exist.")

    if user.changed_password_after(int(payload["iat"])):
        raise Unauthorized("The user recently changed password! Please login again.")

    return user


async def get_current_user(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> User:
    token = extract_token(request, get_app_settings(request))
    if not token:
        raise Unauthorized("You are not logged in! Please login to get access.")
    return await authenticate(token, UserRepository(session))


async def get_optional_user(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> Optional[User]:
    """Cookie-based personalization for pages; any auth failure means anonymous."""
    token = extract_token(request, get_app_settings(request), allow_header=False)
    if not token:
        return None
    try:
        return await authenticate(token, UserRepository(session))
    except AppError:
        return None


def get_auth_context(
    context: RequestContext = Depends(get_request_context),
    user: User = Depends(get_current_user),
) -> RequestContext:
    return replace(context, user=user)


def get_page_context(
    context: RequestContext = Depends(get_request_context),
    user: Optional[User] = Depends(get_optional_user),
) -> RequestContext:
    return replace(context, user=user)


def restrict_to(*roles: Role) -> Callable:
    """Authorization gate: the resolved user's role must be one of ``roles``."""
    allowed = frozenset(roles)

    def check_role(context: RequestContext = Depends(get_auth_context)) -> RequestContext:
        if context.user.role not in allowed:
            logger.warning(f"User {context.user.id} with role {context.user.role.value} denied")
            raise Forbidden("You do not have permission to perform this action!")
        return context

    return check_role
