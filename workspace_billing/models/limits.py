"""
workspace_billing/models/limits.py

Feature limits per plan name.

Each dimension is either Unlimited or Capped(n); code that needs to compare a
usage against a limit goes through check_limit (features/plans/limits.py)
instead of inspecting flags.
"""

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class Unlimited:
    def as_number(self) -> int:
        return -1


@dataclass(frozen=True)
class Capped:
    maximum: int

    def __post_init__(self):
        if self.maximum < 0:
            raise ValueError(f"limit must not be negative (got {self.maximum})")

    def as_number(self) -> int:
        return self.maximum


Limit = Union[Unlimited, Capped]


@dataclass(frozen=True)
class FeatureLimits:
    plan_name: str
    workspaces: Limit
    projects_per_workspace: Limit
    files_per_project: Limit
    storage_gb: Limit
    file_size_mb: Limit

    def dimension(self, feature: str) -> Limit:
        if feature not in FEATURE_DIMENSIONS:
            raise KeyError(feature)
        return getattr(self, feature)

    def as_dict(self) -> dict:
        """Wire form: -1 means unlimited."""
        return {feature: self.dimension(feature).as_number() for feature in FEATURE_DIMENSIONS}


FEATURE_DIMENSIONS = (
    "workspaces",
    "projects_per_workspace",
    "files_per_project",
    "storage_gb",
    "file_size_mb",
)
