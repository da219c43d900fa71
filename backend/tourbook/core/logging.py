import logging
import re

import structlog

from tourbook.core.settings import Settings

SENSITIVE_KEYS = re.compile(r"(password|token|secret|authorization|cookie|signature)", re.IGNORECASE)
JWT_PATTERN = re.compile(r"eyJ[0-9A-Za-z_-]+\.[0-9A-Za-z_-]+\.[0-9A-Za-z_-]+")
STRIPE_KEY_PATTERN = re.compile(r"\b(sk|rk|whsec)_(live|test)?_?[0-9A-Za-z]{8,}")
BEARER_PATTERN = re.compile(r"(Bearer\s+)\S+", re.IGNORECASE)


def redact_secrets(logger, method_name, event_dict):
    """Scrub credentials from every value before it is rendered."""

    def scrub(v, key=None):
        if key is not None and isinstance(key, str) and SENSITIVE_KEYS.search(key) and v not in (None, ""):
            if not isinstance(v, (dict, list)):
                return "REDACTED"
        if isinstance(v, str):
            v = JWT_PATTERN.sub("REDACTED", v)
            v = STRIPE_KEY_PATTERN.sub("REDACTED", v)
            v = BEARER_PATTERN.sub(r"\1REDACTED", v)
            return v
        if isinstance(v, list):
            return [scrub(x) for x in v]
        if isinstance(v, dict):
            return {k: scrub(vv, k) for k, vv in v.items()}
        return v

    for k, v in list(event_dict.items()):
        if k == "event":
            event_dict[k] = scrub(v)
        else:
            event_dict[k] = scrub(v, k)
    return event_dict


def configure_logging(settings: Settings) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers = [logging.StreamHandler()]
    if settings.LOG_FILE:
        handlers.append(logging.FileHandler(settings.LOG_FILE))

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format='%(message)s',  # structlog handles formatting
        handlers=handlers,
    )
