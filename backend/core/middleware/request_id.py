import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from backend.core.logging import LOGGER_NAME, request_id_ctx_var, latency_bucket_ms

# Liveness probes
_UNLOGGED_PATHS = ("/healthz",)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of a request.

    Reuses an incoming ``x-request-id`` when the caller supplies one, sets it
    on ``request.state`` and the logging context var, echoes it on the
    response and logs one ``request.complete`` line per request.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name
        self.logger = logging.getLogger(LOGGER_NAME)

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = rid
        finally:
            request_id_ctx_var.reset(token)

        if request.url.path not in _UNLOGGED_PATHS:
            duration_ms = (time.perf_counter() - start) * 1000
            self.logger.info(
                "request.complete",
                extra={
                    "request_id": rid,
                    "path": request.url.path,
                    "method": request.method,
                    "status": response.status_code,
                    "latency_bucket": latency_bucket_ms(duration_ms),
                },
            )
        return response
