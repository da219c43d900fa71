"""
Operational error taxonomy and the handlers that turn errors into responses.

Anything raised as an ``AppError`` is safe to show to the client verbatim.
Everything else is logged in full and answered with a generic message
unless the app runs in development mode.
"""
import json
import traceback
from typing import Any, Dict, Optional, Union

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from jose import ExpiredSignatureError, JWTError
from pydantic import ValidationError
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from tourbook.core.templating import templates

logger = structlog.get_logger(__name__)

GENERIC_API_MESSAGE = "Something went wrong!"
GENERIC_PAGE_MESSAGE = "Please try again later!"

# errors on these paths are answered as JSON, everything else renders a page
JSON_PATH_PREFIXES = ("/api", "/webhook")


class AppError(Exception):
    """An anticipated failure whose message can be shown to the client."""

    default_status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code or self.default_status_code
        self.status = "fail" if str(self.status_code).startswith("4") else "error"
        self.is_operational = True


class ValidationFailed(AppError):
    default_status_code = 400


class Unauthorized(AppError):
    default_status_code = 401


class Forbidden(AppError):
    default_status_code = 403


class NotFound(AppError):
    default_status_code = 404


class Conflict(AppError):
    """A unique field already holds the submitted value."""

    default_status_code = 400

    def __init__(self, values: Dict[str, Any]):
        self.fields = list(values)
        self.values = values
        super().__init__(
            f"Duplicate field value: {json.dumps(values, default=str)}. Please use another value"
        )


class RateLimited(AppError):
    default_status_code = 429


def _describe_validation_issue(issue: Dict[str, Any]) -> str:
    msg = issue.get("msg", "")
    # custom validators report their own sentence
    if msg.startswith("Value error, "):
        return msg[len("Value error, "):]
    loc = [str(part) for part in issue.get("loc", ()) if part not in ("body", "query", "path")]
    return f"{'.'.join(loc)}: {msg}" if loc else msg


def validation_error(exc: Union[ValidationError, RequestValidationError]) -> ValidationFailed:
    """Collapse pydantic errors into a single 400 with one sentence per issue."""
    messages = [_describe_validation_issue(issue) for issue in exc.errors()]
    return ValidationFailed(f"Invalid input data. {'. '.join(messages)}")


def token_error(exc: JWTError) -> Unauthorized:
    if isinstance(exc, ExpiredSignatureError):
        return Unauthorized("Your token has expired. Please login again!")
    return Unauthorized("Invalid token. Please login again!")


def invalid_identifier(path: str, value: Any) -> ValidationFailed:
    return ValidationFailed(f"Invalid {path}: {value}")


def _is_api_request(request: Request) -> bool:
    return request.url.path.startswith(JSON_PATH_PREFIXES)


def _is_development(request: Request) -> bool:
    settings = getattr(request.app.state, "settings", None)
    return settings is None or not settings.is_production


def _error_detail(exc: Exception, status_code: int) -> Dict[str, Any]:
    detail: Dict[str, Any] = {"name": type(exc).__name__, "statusCode": status_code}
    if isinstance(exc, AppError):
        detail.update(status=exc.status, isOperational=exc.is_operational)
    return detail


def render_error(request: Request, exc: Exception) -> Any:
    """Build the JSON or page response for ``exc``."""
    operational = isinstance(exc, AppError)
    status_code = exc.status_code if operational else 500
    status = exc.status if operational else "error"
    message = exc.message if operational else str(exc) or type(exc).__name__
    development = _is_development(request)

    if _is_api_request(request):
        if development:
            content = {
                "status": status,
                "message": message,
                "error": _error_detail(exc, status_code),
                "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            }
        elif operational:
            content = {"status": status, "message": message}
        else:
            content = {"status": "error", "message": GENERIC_API_MESSAGE}
        return JSONResponse(status_code=status_code, content=content)

    msg = message if (operational or development) else GENERIC_PAGE_MESSAGE
    return templates.TemplateResponse(
        request,
        "error.html",
        {"title": "Something went wrong!", "msg": msg},
        status_code=status_code,
    )


async def app_error_handler(request: Request, exc: AppError):
    logger.info(
        "operational_error",
        status_code=exc.status_code,
        error_type=type(exc).__name__,
        message=exc.message,
    )
    return render_error(request, exc)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    return await app_error_handler(request, validation_error(exc))


async def pydantic_validation_handler(request: Request, exc: ValidationError):
    return await app_error_handler(request, validation_error(exc))


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        error = NotFound(f"Can't find {request.url.path} on this server!")
    else:
        error = AppError(str(exc.detail), exc.status_code)
    return await app_error_handler(request, error)


def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    # SlowAPIMiddleware calls this synchronously
    logger.warning("rate_limit_exceeded", limit=str(exc.detail))
    return render_error(request, RateLimited("Too many requests from an IP. Please try again in an hour."))


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=exc,
    )
    return render_error(request, exc)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(ValidationError, pydantic_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
