"""
Gateway price handle resolution.

resolve() runs a short pipeline of stages (country-specific handle, then the
default handle); each stage returns an env var name or None and the first hit
wins. The env var holds the gateway price id.
"""
import logging
import os
from dataclasses import dataclass
from typing import Callable, List, Mapping, NamedTuple, Optional

from workspace_billing.core.errors import ConfigurationError
from workspace_billing.core.logging import LOGGER_NAME
from workspace_billing.features.plans.catalog import PlanCatalog
from workspace_billing.features.plans.country import normalize_country_code
from workspace_billing.models.plan import BillingInterval, CountryPriceEnv, PlanConfig

logger = logging.getLogger(LOGGER_NAME)

DEFAULT_COUNTRY_CODE = "US"


@dataclass(frozen=True)
class PriceResolution:
    price_handle: str
    product_handle: Optional[str]
    used_fallback: bool
    country_code: str
    country_specific: bool = False

    @property
    def is_free(self) -> bool:
        return not self.price_handle


class PriceMatch(NamedTuple):
    plan_name: str
    interval: BillingInterval
    country_code: str


@dataclass(frozen=True)
class _StageHit:
    env_name: str
    country_specific: bool


Stage = Callable[[CountryPriceEnv, str], Optional[_StageHit]]


def _country_stage(ref: CountryPriceEnv, country_code: str) -> Optional[_StageHit]:
    env_name = ref.countries.get(country_code)
    if env_name:
        return _StageHit(env_name, country_specific=True)
    return None


def _default_stage(ref: CountryPriceEnv, country_code: str) -> Optional[_StageHit]:
    if ref.default:
        return _StageHit(ref.default, country_specific=False)
    return None


DEFAULT_STAGES: List[Stage] = [_country_stage, _default_stage]


class PriceResolver:
    def __init__(
        self,
        catalog: PlanCatalog,
        *,
        home_country: str = DEFAULT_COUNTRY_CODE,
        env: Optional[Mapping[str, str]] = None,
        stages: Optional[List[Stage]] = None,
    ):
        self.catalog = catalog
        self.home_country = home_country.upper()
        self._env = env if env is not None else os.environ
        self._stages = stages or DEFAULT_STAGES

    def _read_handle(self, env_name: str) -> str:
        value = (self._env.get(env_name) or "").strip()
        if not value:
            raise ConfigurationError(f"Price handle variable {env_name} is not set")
        return value

    def resolve(self, plan: PlanConfig, interval: BillingInterval, country_code: Optional[str] = None) -> PriceResolution:
        country = normalize_country_code(country_code, self.home_country)
        pricing = plan.pricing.for_interval(interval)

        if pricing.price == 0 or pricing.stripe_price_env is None:
            return PriceResolution(price_handle="", product_handle=None, used_fallback=False, country_code=country)

        hit = None
        for stage in self._stages:
            hit = stage(pricing.stripe_price_env, country)
            if hit is not None:
                break
        if hit is None:
            raise ConfigurationError(f"No price handle configured for plan {plan.id} ({interval.value})")

        # Optional; an unset variable yields no product handle
        product_handle = None
        if pricing.stripe_product_env:
            product_handle = (self._env.get(pricing.stripe_product_env) or "").strip() or None

        used_fallback = not hit.country_specific and country != self.home_country
        if used_fallback:
            logger.info(
                "price.fallback",
                extra={"event_type": "price.fallback", "plan_id": plan.id, "country": country},
            )

        return PriceResolution(
            price_handle=self._read_handle(hit.env_name),
            product_handle=product_handle,
            used_fallback=used_fallback,
            country_code=country,
            country_specific=hit.country_specific,
        )

    def find_plan_by_price_handle(self, price_handle: str) -> Optional[PriceMatch]:
        """Map a gateway price id back to (plan name, interval, country)."""
        if not price_handle:
            return None
        for plan in self.catalog.get_active_plans():
            for interval in (BillingInterval.MONTHLY, BillingInterval.YEARLY):
                ref = plan.pricing.for_interval(interval).stripe_price_env
                if ref is None:
                    continue
                if self._env.get(ref.default) == price_handle:
                    return PriceMatch(plan.name, interval, self.home_country)
                for country, env_name in ref.countries.items():
                    if self._env.get(env_name) == price_handle:
                        return PriceMatch(plan.name, interval, country)
        return None
