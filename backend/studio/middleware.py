"""Request context middleware for structured logging."""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
STRIPE_SIGNATURE_HEADER = "Stripe-Signature"

# Polled constantly by the load balancer
QUIET_PATHS = frozenset({"/health"})


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Per-request logging context and access log.

    Reuses the caller's X-Request-ID when sent, binds it with the method,
    path and whether the request came from Stripe, then logs one
    ``request_completed`` entry with the status and duration. Stripe's
    deliveries are told apart by their signature header so webhook retries
    can be followed in the logs.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        if STRIPE_SIGNATURE_HEADER in request.headers:
            structlog.contextvars.bind_contextvars(source="stripe")

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_failed", duration_ms=_elapsed_ms(started))
            structlog.contextvars.clear_contextvars()
            raise

        response.headers[REQUEST_ID_HEADER] = request_id
        if request.url.path not in QUIET_PATHS:
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_ms=_elapsed_ms(started),
            )

        structlog.contextvars.clear_contextvars()
        return response


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)
