# ============================================================================
# File: api/middleware.py
# ============================================================================

import logging
import time
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger(__name__)

# Operator actions worth an audit line; status polls are too chatty
AUDITED_METHODS = {"POST", "PUT", "DELETE"}


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with an id and its latency.

    Headers set on the response:
    - X-Request-ID (echoes an incoming X-Request-ID so a client can correlate
      its start/cancel/resume call with the run it produced)
    - X-API-Latency-ms

    Mutating calls under /sync are logged with the request id, because they
    change run state that other operators see.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        started = time.perf_counter()
        request.state.request_id = request_id

        response: Response = await call_next(request)

        latency_ms = int((time.perf_counter() - started) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)

        path = request.url.path
        if response.status_code >= 500:
            logger.warning(
                f"[{request_id}] {request.method} {path} -> {response.status_code} ({latency_ms} ms)"
            )
        elif request.method in AUDITED_METHODS and path.startswith("/sync"):
            logger.info(
                f"[{request_id}] {request.method} {path} -> {response.status_code} ({latency_ms} ms)"
            )

        return response
