"""HTTP middleware for request correlation.

Every request gets a request id (taken from the configured header or
generated) and the hashed rate limit identifier of its caller. Both live in
contextvars for the duration of the request, so limiter, backend and handler
logs can be joined per request and per client without logging the raw
address.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response

from admission_gate.core.config import settings
from admission_gate.core.logging import (
    clear_client_hash,
    clear_request_id,
    hash_identifier,
    set_client_hash,
    set_request_id,
)
from admission_gate.core.rate_limit import client_identifier


async def request_id_middleware(request: Request, call_next) -> Response:
    """Bind request id and client hash to the log context.

    The header name comes from the settings the app was built with
    (``LOG_REQUEST_ID_HEADER``). The response echoes the request id and the
    total handling time in ``X-Request-Duration-ms``.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The downstream response with request id and duration headers.
    """

    app_settings = getattr(request.app.state, "settings", settings)
    header_name = app_settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())

    set_request_id(request_id)
    set_client_hash(hash_identifier(client_identifier(request)))
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()
        clear_client_hash()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
