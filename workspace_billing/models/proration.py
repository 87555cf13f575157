"""
workspace_billing/models/proration.py

Plan-change proration models.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

ProrationBehavior = Literal["create_prorations", "none", "always_invoice"]


class ProrationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    behavior: ProrationBehavior = "create_prorations"
    apply_immediately: bool = True

    @property
    def effective_behavior(self) -> str:
        return self.behavior if self.apply_immediately else "none"


class ProrationPreview(BaseModel):
    """Amounts in major currency units."""
    model_config = ConfigDict(frozen=True)

    current_plan_cost: float
    new_plan_cost: float
    proration_amount: float
    next_invoice_amount: float
    immediate_charge: float
    currency: str
    period_end: datetime


class PlanChangeValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    reason: Optional[str] = None
    days_remaining: Optional[int] = None
