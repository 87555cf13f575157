import logging
import os

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

DEFAULT_PLANS_CONFIG_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config", "plans.json"
)


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # App URLs (checkout redirects)
    APP_URL: str = "http://localhost:3000"

    # Plan catalog
    PLANS_CONFIG_PATH: str = DEFAULT_PLANS_CONFIG_PATH
    HOME_COUNTRY_CODE: str = "US"

    # Access gate
    ACCESS_CACHE_TTL_SECONDS: float = 60.0

    # Gateway reads only; mutations are never retried
    GATEWAY_READ_MAX_ATTEMPTS: int = 3
    GATEWAY_READ_BACKOFF_SECONDS: float = 0.5

    # Lifecycle
    TRIAL_LENGTH_DAYS: int = 14
    FREE_PLAN_PERIOD_DAYS: int = 365
    INCOMPLETE_CLEANUP_HOURS: int = 24

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


# Billing runs without these, but checkout, sync and webhooks are disabled
RECOMMENDED_KEYS = ("DATABASE_URL", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Report missing keys and a missing plan document.

    Strict mode (argument or CONFIG_STRICT) raises RuntimeError with every
    problem joined; otherwise each one is logged as a warning. Values are
    never logged, only key names.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("workspace_billing")
    strict_mode = cfg.CONFIG_STRICT if strict is None else strict

    problems = []
    missing = [key for key in RECOMMENDED_KEYS if not getattr(cfg, key, None)]
    if missing:
        problems.append(f"Missing required configuration: {', '.join(missing)}")
    if cfg.PLANS_CONFIG_PATH and not os.path.isfile(cfg.PLANS_CONFIG_PATH):
        problems.append(f"Plan configuration not found at {cfg.PLANS_CONFIG_PATH}")

    if problems and strict_mode:
        raise RuntimeError("; ".join(problems))
    for problem in problems:
        log.warning(problem)
    return not problems
