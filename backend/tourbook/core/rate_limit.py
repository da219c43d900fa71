from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from tourbook.core.settings import Settings, get_settings

API_SCOPE = "api"

_current = {"limit": get_settings().RATE_LIMIT}


def current_rate_limit() -> str:
    return _current["limit"]


limiter = Limiter(
    key_func=get_remote_address,
    strategy=get_settings().RATE_LIMIT_STRATEGY,
    enabled=get_settings().RATE_LIMIT_ENABLED,
)


def configure_rate_limit(settings: Settings) -> Limiter:
    """Apply the app's limit settings and start from empty counters."""
    _current["limit"] = settings.RATE_LIMIT
    limiter.enabled = settings.RATE_LIMIT_ENABLED
    limiter.reset()
    return limiter


# One bucket per client address shared by every /api route
@limiter.shared_limit(current_rate_limit, scope=API_SCOPE)
async def limit_api_requests(request: Request) -> None:
    return None
