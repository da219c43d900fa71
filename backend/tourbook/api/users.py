"""
Users API: authentication flows, the caller's own account, and admin CRUD.
"""
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from tourbook.api.deps import (
    RequestContext,
    get_app_settings,
    get_auth_context,
    get_request_context,
    parse_id,
    read_payload,
    repository_provider,
    restrict_to,
)
from tourbook.api.handler_factory import handler_factory, serialize
from tourbook.api.schemas import (
    PasswordChange,
    SignupRequest,
    UpdateMeRequest,
    UpdatePasswordRequest,
    UserAdminUpdate,
    UserRead,
)
from tourbook.core.errors import AppError, NotFound, Unauthorized, ValidationFailed
from tourbook.core.security import sign_token
from tourbook.core.settings import Settings
from tourbook.db.models import Role, User, as_utc, hash_reset_token, utcnow
from tourbook.db.repository import UserRepository
from tourbook.services.email import Mailer, get_mailer
from tourbook.services.uploads import collect_uploads, process_user_photo

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/users", tags=["users"])

get_users = repository_provider(UserRepository)
handlers = handler_factory(UserRead, SignupRequest, UserAdminUpdate)

LOGGED_OUT = "loggedout"


def send_token(user: User, status_code: int, settings: Settings) -> JSONResponse:
    """Issue a session token in both the body and the httpOnly cookie."""
    token = sign_token(user.id)
    response = JSONResponse(
        {"status": "success", "token": token, "data": {"user": serialize(user, UserRead)}},
        status_code=status_code,
    )
    max_age = settings.JWT_COOKIE_EXPIRES_IN_DAYS * 24 * 60 * 60
    response.set_cookie(
        settings.JWT_COOKIE_NAME,
        token,
        max_age=max_age,
        expires=max_age,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )
    return response


# Authentication
@router.post("/signup")
async def signup(
    request: Request,
    payload: Dict[str, Any] = Depends(read_payload),
    context: RequestContext = Depends(get_request_context),
    users: UserRepository = Depends(get_users),
    mailer: Mailer = Depends(get_mailer),
):
    data = SignupRequest.model_validate(payload).to_record_data()
    user = await users.create(data)
    logger.info("user_signed_up", user_id=str(user.id))

    try:
        await mailer.send_welcome(user, f"{context.base_url}/me")
    except Exception as e:
        # the account exists either way
        logger.error("welcome_email_failed", user_id=str(user.id), error=str(e))

    return send_token(user, status.HTTP_201_CREATED, get_app_settings(request))


@router.post("/login")
async def login(
    request: Request,
    payload: Dict[str, Any] = Depends(read_payload),
    users: UserRepository = Depends(get_users),
):
    email, password = payload.get("email"), payload.get("password")
    if not email or not password:
        raise ValidationFailed("Please provide email and password")

    user = await users.find_by_email(str(email))
    if user is None or not user.correct_password(str(password)):
        logger.warning("login_failed")
        raise Unauthorized("Incorrect Email or Password")

    logger.info("user_logged_in", user_id=str(user.id))
    return send_token(user, status.HTTP_200_OK, get_app_settings(request))


@router.get("/logout")
async def logout(request: Request):
    settings = get_app_settings(request)
    response = JSONResponse({"status": "success"})
    response.set_cookie(settings.JWT_COOKIE_NAME, LOGGED_OUT, max_age=10, expires=10, httponly=True)
    return response


@router.post("/forgotPassword")
async def forgot_password(
    payload: Dict[str, Any] = Depends(read_payload),
    context: RequestContext = Depends(get_request_context),
    users: UserRepository = Depends(get_users),
    mailer: Mailer = Depends(get_mailer),
):
    user = await users.find_by_email(str(payload.get("email") or ""))
    if user is None:
        raise NotFound("There is no user with that email address.")

    reset_token = user.create_password_reset_token()
    await users.save(user)

    try:
        await mailer.send_password_reset(user, f"{context.base_url}/api/v1/users/resetPassword/{reset_token}")
    except Exception as e:
        logger.error("password_reset_email_failed", user_id=str(user.id), error=str(e))
        user.clear_password_reset()
        await users.save(user)
        raise AppError("There was an error sending the email. Try again later!", 500)

    return {"status": "success", "message": "Token sent to your email!"}


@router.patch("/resetPassword/{token}")
async def reset_password(
    token: str,
    request: Request,
    payload: Dict[str, Any] = Depends(read_payload),
    users: UserRepository = Depends(get_users),
):
    user = await users.find_by_reset_token(hash_reset_token(token))
    expires = as_utc(user.password_reset_expires) if user else None
    if user is None or expires is None or expires <= utcnow():
        raise ValidationFailed("Token is invalid or has expired!")

    change = PasswordChange.model_validate(payload)
    user.set_password(change.password)
    user.clear_password_reset()
    await users.save(user)
    logger.info("password_reset", user_id=str(user.id))

    return send_token(user, status.HTTP_200_OK, get_app_settings(request))


# The caller's own account
@router.patch("/updateMyPassword")
async def update_my_password(
    request: Request,
    context: RequestContext = Depends(get_auth_context),
    payload: Dict[str, Any] = Depends(read_payload),
    users: UserRepository = Depends(get_users),
):
    change = UpdatePasswordRequest.model_validate(payload)
    user = context.user
    if not user.correct_password(change.password_current):
        raise Unauthorized("Your current password is wrong")

    user.set_password(change.password)
    await users.save(user)
    logger.info("password_updated", user_id=str(user.id))

    return send_token(user, status.HTTP_200_OK, get_app_settings(request))


@router.get("/me")
async def get_me(
    context: RequestContext = Depends(get_auth_context),
    users: UserRepository = Depends(get_users),
):
    return await handlers.get_one(users, context.user.id)


@router.patch("/updateMe")
async def update_me(
    request: Request,
    context: RequestContext = Depends(get_auth_context),
    payload: Dict[str, Any] = Depends(read_payload),
    users: UserRepository = Depends(get_users),
):
    if "password" in payload or "passwordConfirm" in payload:
        raise ValidationFailed("This route is not for password updates. Please use /updateMyPassword")

    data = UpdateMeRequest.model_validate(payload).to_record_data()
    photos = await collect_uploads(request, "photo", max_count=1)
    if photos:
        settings = get_app_settings(request)
        data["photo"] = await process_user_photo(photos[0], context.user.id, settings.MEDIA_ROOT)

    user = await users.update_by_id(context.user.id, data)
    return {"status": "success", "data": {"user": serialize(user, UserRead)}}


@router.delete("/deleteMe", status_code=status.HTTP_204_NO_CONTENT)
async def delete_me(
    context: RequestContext = Depends(get_auth_context),
    users: UserRepository = Depends(get_users),
):
    await users.update_by_id(context.user.id, {"active": False})
    logger.info("user_deactivated", user_id=str(context.user.id))
    return None


# Administration
admin_only = restrict_to(Role.ADMIN)


@router.get("")
async def get_all_users(
    context: RequestContext = Depends(admin_only),
    users: UserRepository = Depends(get_users),
):
    return await handlers.list(users, context)


@router.post("")
async def create_user(context: RequestContext = Depends(admin_only)):
    raise ValidationFailed("This route is not defined! Please use /signup instead.")


@router.get("/{id}")
async def get_user(
    id: str,
    context: RequestContext = Depends(admin_only),
    users: UserRepository = Depends(get_users),
):
    return await handlers.get_one(users, parse_id(id))


@router.patch("/{id}")
async def update_user(
    id: str,
    context: RequestContext = Depends(admin_only),
    payload: Dict[str, Any] = Depends(read_payload),
    users: UserRepository = Depends(get_users),
):
    return await handlers.update(users, parse_id(id), payload)


@router.delete("/{id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    id: str,
    context: RequestContext = Depends(admin_only),
    users: UserRepository = Depends(get_users),
):
    return await handlers.delete(users, parse_id(id))
