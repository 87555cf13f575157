from starlette.middleware.base import BaseHTTPMiddleware

from workspace_billing.core.metrics import http_requests_total, normalize_path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count requests per method, normalized path and status."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        http_requests_total.inc({
            "method": request.method,
            "path": normalize_path(request.url.path),
            "status": str(response.status_code),
        })
        return response
