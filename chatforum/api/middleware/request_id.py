"""
Request ID middleware for request correlation.

- Generates or accepts X-Request-ID header
- Stores in request.state and response headers
- Sets context var so request_id is available in logs throughout the request
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from chatforum.logging_config import get_logger, request_id_var

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 64
SLOW_REQUEST_MS = 1000


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Assign a unique request ID to each HTTP request.

    - Accepts X-Request-ID from a proxy or client, truncated
    - Otherwise generates a fresh hex UUID
    - Echoes it in the response and in 503/500 error bodies

    WebSocket connections bypass this middleware; they get a
    connection_id from the chat endpoint instead.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Client-supplied ids are untrusted; cap their length
        incoming = request.headers.get(REQUEST_ID_HEADER)
        request_id = incoming[:MAX_REQUEST_ID_LENGTH] if incoming else uuid.uuid4().hex

        # Exception handlers read it from here
        request.state.request_id = request_id

        # Log records pick it up through CorrelationFilter
        token = request_id_var.set(request_id)

        try:
            start = time.perf_counter()
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start) * 1000

            response.headers[REQUEST_ID_HEADER] = request_id

            # Admin actions hold a store transaction; flag the slow ones
            if duration_ms > SLOW_REQUEST_MS:
                logger.warning(
                    "Slow request",
                    extra={
                        "path": request.url.path,
                        "method": request.method,
                        "status_code": response.status_code,
                        "duration_ms": round(duration_ms, 1),
                    },
                )

            return response
        finally:
            request_id_var.reset(token)
