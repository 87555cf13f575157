"""
Feature limits resolved from environment variables.

Limits are keyed by plan *name* and read from variables such as
FREE_PLAN_MAX_WORKSPACES / FREE_PLAN_WORKSPACES_UNLIMITED, never from the plan
catalog, so editing the catalog alone cannot widen what a plan allows.
"""
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from workspace_billing.core.errors import ConfigurationError
from workspace_billing.models.limits import Capped, FeatureLimits, Limit, Unlimited
from workspace_billing.models.plan import strip_annual_suffix

# dimension -> (env name fragment for MAX_*, env name fragment for *_UNLIMITED)
_ENV_KEYS: Dict[str, Tuple[str, str]] = {
    "workspaces": ("WORKSPACES", "WORKSPACES"),
    "projects_per_workspace": ("PROJECTS_PER_WORKSPACE", "PROJECTS"),
    "files_per_project": ("FILES_PER_PROJECT", "FILES"),
    "storage_gb": ("STORAGE_GB", "STORAGE"),
    "file_size_mb": ("FILE_SIZE_MB", "FILE_SIZE"),
}

# plan name -> dimension -> (max, unlimited) used when the variable is absent
DEFAULT_LIMITS: Dict[str, Dict[str, Tuple[int, bool]]] = {
    "free": {
        "workspaces": (1, False),
        "projects_per_workspace": (1, False),
        "files_per_project": (10, False),
        "storage_gb": (1, False),
        "file_size_mb": (20, False),
    },
    "pro": {
        "workspaces": (5, False),
        "projects_per_workspace": (0, True),
        "files_per_project": (1000, False),
        "storage_gb": (50, False),
        "file_size_mb": (100, False),
    },
}

FALLBACK_PLAN_NAME = "free"


def normalize_plan_name(plan_name: str) -> str:
    return strip_annual_suffix((plan_name or "").strip().lower())


def _parse_int(raw: Optional[str], default: int, var_name: str) -> int:
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigurationError(f"{var_name} must be an integer (got {raw!r})")


def _parse_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() == "true"


class LimitResolver:
    def __init__(self, env: Optional[Mapping[str, str]] = None):
        self._env = env if env is not None else os.environ

    def limits_for(self, plan_name: str) -> FeatureLimits:
        name = normalize_plan_name(plan_name)
        # Unknown plans get the free plan's limits
        key = name if name in DEFAULT_LIMITS else FALLBACK_PLAN_NAME
        prefix = key.upper()

        resolved = {
            dimension: self._resolve_dimension(prefix, dimension, DEFAULT_LIMITS[key][dimension])
            for dimension in _ENV_KEYS
        }
        return FeatureLimits(plan_name=key, **resolved)

    def _resolve_dimension(self, prefix: str, dimension: str, default: Tuple[int, bool]) -> Limit:
        max_key, unlimited_key = _ENV_KEYS[dimension]
        max_var = f"{prefix}_PLAN_MAX_{max_key}"
        unlimited_var = f"{prefix}_PLAN_{unlimited_key}_UNLIMITED"

        maximum = _parse_int(self._env.get(max_var), default[0], max_var)
        if maximum < 0:
            raise ConfigurationError(f"{max_var} must not be negative (got {maximum})")

        if _parse_bool(self._env.get(unlimited_var), default[1]):
            return Unlimited()
        return Capped(maximum)


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    limit: int  # -1 when unlimited
    usage: int
    message: Optional[str] = None


def check_limit(limit: Limit, usage: int, feature: str = "feature") -> LimitCheck:
    """Compare a usage count against one limit dimension."""
    if isinstance(limit, Unlimited):
        return LimitCheck(allowed=True, limit=-1, usage=usage)
    if isinstance(limit, Capped):
        if usage >= limit.maximum:
            return LimitCheck(
                allowed=False,
                limit=limit.maximum,
                usage=usage,
                message=f"You have reached your plan's {feature} limit ({limit.maximum}). Upgrade to add more.",
            )
        return LimitCheck(allowed=True, limit=limit.maximum, usage=usage)
    raise TypeError(f"unknown limit type: {type(limit).__name__}")
