"""structlog configuration module."""

import logging
import sys

import structlog

from studio.constants import API_TITLE, API_VERSION

# Third-party loggers that log every HTTP round-trip at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "stripe", "hpack")

# Event keys whose values must never reach the log sink
SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "api_key",
        "secret_key",
        "stripe_signature",
        "webhook_secret",
        "access_token",
    }
)
REDACTED = "[redacted]"


def add_service_info(_logger, _method_name: str, event_dict: dict) -> dict:
    """Stamp every entry with the service name and version."""
    event_dict.setdefault("service", API_TITLE)
    event_dict.setdefault("version", API_VERSION)
    return event_dict


def redact_sensitive(_logger, _method_name: str, event_dict: dict) -> dict:
    for key in event_dict.keys() & SENSITIVE_KEYS:
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def setup_logging(debug: bool = False) -> None:
    """
    Configure structlog and stdlib logging.

    In debug mode: colored, human-readable console output.
    In production mode: JSON output tagged with the service name, for log
    aggregation across the API and the Stripe webhook worker.

    Credentials that end up in an event (Stripe signatures, bearer tokens,
    API keys) are replaced before rendering in both modes.
    """
    level = logging.DEBUG if debug else logging.INFO

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,  # request_id, stripe_event_id, user_id
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if debug:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        shared_processors.append(add_service_info)
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.WARNING)
