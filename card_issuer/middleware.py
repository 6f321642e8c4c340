"""
Request logging middleware.

Logs one line per request with method, path, status and duration. The level
follows the outcome: info for success, warning for 4xx, error for 5xx.
Health probes are not logged. Request ids come from asgi-correlation-id's
CorrelationIdMiddleware, which must wrap this middleware.
"""

import re
import time
from typing import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger("card_issuer.access")

QUIET_PATHS = ("/healthz", "/readyz")

# card numbers appear in /api/v1/cards/{pan} paths, possibly grouped by
# spaces, dashes or %20
_PAN_IN_PATH = re.compile(r"\d(?:(?: |-|%20)?\d){12,}")


def _mask_digits(match: re.Match) -> str:
    digits = re.sub(r"\D", "", match.group().replace("%20", ""))
    return "*" * (len(digits) - 4) + digits[-4:]


def mask_path(path: str) -> str:
    return _PAN_IN_PATH.sub(_mask_digits, path)


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.endswith(QUIET_PATHS):
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)

        if response.status_code >= 500:
            log = logger.error
        elif response.status_code >= 400:
            log = logger.warning
        else:
            log = logger.info
        log(
            "request_completed",
            method=request.method,
            path=mask_path(request.url.path),
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        return response
