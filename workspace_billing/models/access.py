"""
workspace_billing/models/access.py

Derived workspace access status. Never persisted.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class LockReason(str, Enum):
    TRIAL_EXPIRED = "trial_expired"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"


class AccessDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_locked: bool
    reason: Optional[LockReason] = None
    rule: str


class WorkspaceAccessStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_locked: bool
    reason: Optional[LockReason] = None
    owner_id: str
