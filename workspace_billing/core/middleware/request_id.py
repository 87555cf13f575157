"""Request correlation: bind an id per request and log one completion line."""
import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from workspace_billing.core.logging import LOGGER_NAME, latency_bucket_ms, request_id_ctx_var

REQUEST_ID_HEADER = "x-request-id"
MAX_INCOMING_ID_LENGTH = 128

logger = logging.getLogger(LOGGER_NAME)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's x-request-id (within reason) or mint a uuid4."""

    async def dispatch(self, request, call_next):
        incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
        rid = incoming if 0 < len(incoming) <= MAX_INCOMING_ID_LENGTH else str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)

        response.headers[REQUEST_ID_HEADER] = rid
        logger.info(
            "request.complete",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
            },
        )
        return response
