"""
Health endpoints.

/healthz is a liveness probe with no dependencies. /readyz checks the
database, the billing tables and the plan document.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from workspace_billing.api.deps import get_services
from workspace_billing.core.errors import ConfigurationError
from workspace_billing.core.logging import LOGGER_NAME
from workspace_billing.services import BillingServices

logger = logging.getLogger(LOGGER_NAME)

router = APIRouter(tags=["health"])

REQUIRED_TABLES = ("app_users", "workspaces", "subscriptions", "billing_events")


def _not_ready(detail: str) -> JSONResponse:
    logger.warning("readyz.failed", extra={"error_message": detail})
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@router.get("/healthz")
def healthz():
    return {"status": "ok"}


@router.get("/readyz")
def readyz(services: BillingServices = Depends(get_services)):
    if not services.db.check_connection():
        return _not_ready("database unreachable")

    inspector = inspect(services.db.engine)
    missing = [table for table in REQUIRED_TABLES if not inspector.has_table(table)]
    if missing:
        return _not_ready(f"missing tables: {', '.join(missing)}")

    try:
        services.catalog.get_active_plans()
    except ConfigurationError as e:
        logger.error("readyz.plan_catalog_invalid", extra={"error_message": e.message})
        return _not_ready("plan catalog invalid")

    return {"status": "ok", "billing_enabled": services.billing_enabled}
