"""
Workspace billing service entrypoint.

    uvicorn workspace_billing.main:app

create_app() takes optional settings and prebuilt services so tests can run
the full HTTP stack against an in-memory database and a fake gateway.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from workspace_billing.api import billing, health, metrics, subscriptions, workspaces
from workspace_billing.core.config import Settings, settings, validate_config
from workspace_billing.core.errors import (
    AppError,
    app_error_handler,
    gateway_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from workspace_billing.core.logging import LOGGER_NAME, configure_logging
from workspace_billing.core.middleware.metrics import MetricsMiddleware
from workspace_billing.core.middleware.request_id import RequestIdMiddleware
from workspace_billing.core.validation import validate_env
from workspace_billing.features.billing.provider import BillingProviderError
from workspace_billing.services import BillingServices, build_services


def create_app(settings_obj: Optional[Settings] = None, services: Optional[BillingServices] = None) -> FastAPI:
    cfg = settings_obj or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger(LOGGER_NAME)
        logger.info("Starting workspace billing service...")
        validate_env(settings_obj=cfg)
        validate_config(settings_obj=cfg)
        app.state.services = (services or build_services(cfg)).open()
        try:
            yield
        finally:
            app.state.services.close()
            logging.getLogger(LOGGER_NAME).info("Stopping workspace billing service...")

    app = FastAPI(title="Workspace Billing", lifespan=lifespan)

    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[cfg.APP_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(BillingProviderError, gateway_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(metrics.router)
    app.include_router(subscriptions.router)
    app.include_router(billing.router)
    app.include_router(billing.trial_router)
    app.include_router(workspaces.router)
    return app


# Limit and price-handle variables are read from os.environ at request time
load_dotenv()
configure_logging(settings.ENV)
app = create_app()
