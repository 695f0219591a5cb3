"""HTTP middleware for request ID propagation and correlation.

Every request/response pair carries a request ID so throttling decisions
logged deep inside dependencies can be tied back to the request that caused
them.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response

from throttle.core.config import settings
from throttle.core.logging import clear_request_id, set_request_id


async def request_id_middleware(request: Request, call_next) -> Response:
    """Attach a correlation id and timing header to every response.

    The incoming ``X-Request-ID`` (header name configurable via
    ``LOG_REQUEST_ID_HEADER``) is reused when present, otherwise a UUID is
    generated. The id lives in a context variable for the duration of the
    request and is echoed back with an ``X-Request-Duration-ms`` header.
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
