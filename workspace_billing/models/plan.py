"""
workspace_billing/models/plan.py

Plan catalog models.

PlanConfig mirrors one entry of the plan configuration document and is
immutable once loaded. SubscriptionPlan is the request-scoped projection of a
PlanConfig for one billing interval and one country.
"""

from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from workspace_billing.models.limits import FeatureLimits

ANNUAL_SUFFIX = "_annual"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class CountryPriceEnv(BaseModel):
    """Price handle reference: env var names for the default and per-country handles."""
    model_config = ConfigDict(frozen=True)

    default: str
    countries: Dict[str, str] = Field(default_factory=dict)

    @field_validator("countries")
    @classmethod
    def _upper_country_codes(cls, value: Dict[str, str]) -> Dict[str, str]:
        return {code.upper(): env_name for code, env_name in value.items()}


class PlanPricing(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: float = Field(ge=0)
    currency: str = "USD"
    stripe_price_env: Optional[CountryPriceEnv] = None
    stripe_product_env: Optional[str] = None
    original_price: Optional[float] = Field(default=None, ge=0)
    savings: Optional[str] = None

    @field_validator("stripe_price_env", mode="before")
    @classmethod
    def _single_handle_is_default(cls, value: Union[None, str, dict]):
        # "STRIPE_PRO_PRICE" is shorthand for {"default": "STRIPE_PRO_PRICE"}
        if isinstance(value, str):
            return {"default": value}
        return value

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_free(self) -> bool:
        return self.price == 0 or self.stripe_price_env is None


class PlanPricingSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    monthly: PlanPricing
    yearly: PlanPricing

    def for_interval(self, interval: BillingInterval) -> PlanPricing:
        return self.monthly if interval == BillingInterval.MONTHLY else self.yearly


class PlanConfig(BaseModel):
    """One plan from the configuration document."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    display_name: str = Field(min_length=1)
    description: str = ""
    pricing: PlanPricingSet
    is_active: bool = True
    sort_order: int = 0
    badges: List[str] = Field(default_factory=list)
    is_popular: bool = False

    @property
    def is_free(self) -> bool:
        return self.pricing.monthly.price == 0


class PlanCatalogDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: str = "1"
    plans: List[PlanConfig]


class SubscriptionPlan(BaseModel):
    """A plan priced for one interval and one country, with its limits."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    display_name: str
    description: str
    price: float
    currency: str
    interval: BillingInterval
    stripe_price_id: str
    stripe_product_id: Optional[str] = None
    used_fallback: bool = False
    country_code: str
    is_popular: bool = False
    badges: List[str] = Field(default_factory=list)
    original_price: Optional[float] = None
    savings: Optional[str] = None
    limits: FeatureLimits

    @property
    def base_id(self) -> str:
        return strip_annual_suffix(self.id)

    @property
    def is_free(self) -> bool:
        return self.price == 0

    @property
    def is_purchasable(self) -> bool:
        return not self.is_free and bool(self.stripe_price_id)


def strip_annual_suffix(value: str) -> str:
    if value.endswith(ANNUAL_SUFFIX):
        return value[: -len(ANNUAL_SUFFIX)]
    return value
