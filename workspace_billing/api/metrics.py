from fastapi import APIRouter, Response

from workspace_billing.core.metrics import METRICS

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def metrics_endpoint():
    """Billing and HTTP counters in Prometheus text format."""
    return Response(content=METRICS.export_prometheus(), media_type=PROMETHEUS_CONTENT_TYPE)
