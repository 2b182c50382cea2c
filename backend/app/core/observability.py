"""
Observability: logging setup and request middleware.

Adds correlation IDs and structured logging context to requests.
"""

import time
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.config import settings

logger = logging.getLogger("trainer_billing.http")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = None) -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format=LOG_FORMAT,
    )
    # Stripe's SDK logs every request at INFO
    logging.getLogger("stripe").setLevel(logging.WARNING)


CORRELATION_HEADER = "X-Correlation-ID"
QUIET_PATHS = {"/health"}


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with a correlation id and logs one line per request.

    Stripe retries carry no correlation header, so webhook deliveries get a
    fresh id each time; the Stripe event id in the reconciler logs ties
    retries together.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        start_time = time.perf_counter()

        response = await call_next(request)

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers["X-Process-Time"] = str(duration_ms)

        log_data = {
            "correlation_id": correlation_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
            "ip": request.client.host if request.client else "unknown",
        }
        message = "%s %s -> %s (%sms) [%s]"
        args = (request.method, request.url.path, response.status_code, duration_ms, correlation_id)

        if response.status_code >= 500:
            logger.error(message, *args, extra=log_data)
        elif response.status_code >= 400:
            logger.warning(message, *args, extra=log_data)
        elif request.url.path not in QUIET_PATHS:
            logger.info(message, *args, extra=log_data)

        return response
