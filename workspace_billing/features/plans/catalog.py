"""
Plan catalog backed by a JSON configuration document.

Loaded lazily on first use and cached. Outside production the file's mtime is
checked on every access and a changed file is reloaded; in production the
document is read once per process. A malformed document raises
ConfigurationError at load time.
"""
import json
import logging
import os
import threading
from typing import Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from workspace_billing.core.errors import ConfigurationError
from workspace_billing.core.logging import LOGGER_NAME
from workspace_billing.models.plan import BillingInterval, PlanCatalogDocument, PlanConfig

logger = logging.getLogger(LOGGER_NAME)


def _format_validation_error(exc: PydanticValidationError) -> str:
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        problems.append(f"{location}: {err.get('msg')}")
    return "; ".join(problems)


class PlanCatalog:
    def __init__(
        self,
        config_path: str,
        *,
        hot_reload: bool = False,
        mtime_fn: Callable[[str], float] = os.path.getmtime,
    ):
        self.config_path = config_path
        self.hot_reload = hot_reload
        self._mtime_fn = mtime_fn
        self._document: Optional[PlanCatalogDocument] = None
        self._loaded_mtime: Optional[float] = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings_obj) -> "PlanCatalog":
        env = (getattr(settings_obj, "ENV", "development") or "development").lower()
        return cls(settings_obj.PLANS_CONFIG_PATH, hot_reload=env != "production")

    def load(self) -> PlanCatalogDocument:
        """Read and validate the backing document, replacing the cache."""
        with self._lock:
            return self._load_locked()

    def _load_locked(self) -> PlanCatalogDocument:
        try:
            mtime = self._mtime_fn(self.config_path)
            with open(self.config_path, "r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except FileNotFoundError:
            raise ConfigurationError(f"Plan configuration not found: {self.config_path}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Plan configuration is not valid JSON: {e}")

        document = self.validate(raw)
        self._document = document
        self._loaded_mtime = mtime
        logger.info(
            "plans.loaded",
            extra={"event_type": "plans.loaded", "plan_count": len(document.plans), "version": document.version},
        )
        return document

    @staticmethod
    def validate(raw: object) -> PlanCatalogDocument:
        if not isinstance(raw, dict) or not isinstance(raw.get("plans"), list):
            raise ConfigurationError("Invalid plan configuration: missing plans array")
        try:
            document = PlanCatalogDocument.model_validate(raw)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid plan configuration: {_format_validation_error(e)}")

        seen_ids = set()
        for plan in document.plans:
            if plan.id in seen_ids:
                raise ConfigurationError(f"Invalid plan configuration: duplicate plan id {plan.id}")
            seen_ids.add(plan.id)
            if plan.is_free and any(
                pricing.stripe_price_env is not None for pricing in (plan.pricing.monthly, plan.pricing.yearly)
            ):
                raise ConfigurationError(f"Invalid plan configuration: free plan {plan.id} must not have a price handle")
        return document

    def _current(self) -> PlanCatalogDocument:
        with self._lock:
            if self._document is None:
                return self._load_locked()
            if self.hot_reload and self._source_changed():
                logger.info("plans.reload", extra={"event_type": "plans.reload"})
                return self._load_locked()
            return self._document

    def _source_changed(self) -> bool:
        try:
            return self._mtime_fn(self.config_path) != self._loaded_mtime
        except OSError:
            # Keep serving the last good document while the file is being replaced
            return False

    @property
    def version(self) -> str:
        return self._current().version

    def get_plan_by_id(self, plan_id: str) -> Optional[PlanConfig]:
        for plan in self._current().plans:
            if plan.id == plan_id:
                return plan
        return None

    def get_plan_by_name(self, name: str) -> Optional[PlanConfig]:
        for plan in self._current().plans:
            if plan.name == name:
                return plan
        return None

    def get_active_plans(self) -> List[PlanConfig]:
        active = [plan for plan in self._current().plans if plan.is_active]
        return sorted(active, key=lambda plan: plan.sort_order)

    def get_plans_by_billing_interval(self, interval: BillingInterval) -> List[PlanConfig]:
        """Active plans purchasable for the interval: free, or with a price handle for it."""
        return [
            plan for plan in self.get_active_plans()
            if plan.is_free or plan.pricing.for_interval(interval).stripe_price_env is not None
        ]
