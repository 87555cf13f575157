"""
Workspace access gate.

Answers "is this workspace allowed to operate, and if not, why?" from the
owner's local subscription rows and trial window only. The gateway is never
called from here.

The answer comes from DECISION_TABLE: rules are tried in order and the first
one that applies decides. Keep the order; it is the precedence.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from workspace_billing.core.database import utcnow
from workspace_billing.core.errors import NotFoundError
from workspace_billing.core.metrics import access_decisions_total
from workspace_billing.features.access.cache import AccessStatusCache
from workspace_billing.features.billing.store import SubscriptionStore
from workspace_billing.models.access import AccessDecision, LockReason, WorkspaceAccessStatus
from workspace_billing.models.subscription import Subscription, SubscriptionStatus

S = SubscriptionStatus

# Statuses that make a row the owner's "current" subscription
CURRENT_STATUSES = (S.ACTIVE, S.TRIALING, S.PAST_DUE, S.UNPAID, S.CANCELED)


@dataclass(frozen=True)
class AccessFacts:
    status: Optional[SubscriptionStatus]  # None: no current subscription row
    period_end: Optional[datetime]
    trial_end: Optional[datetime]
    ever_subscribed: bool
    now: datetime


@dataclass(frozen=True)
class AccessRule:
    name: str
    applies: Callable[[AccessFacts], bool]
    is_locked: bool
    reason: Optional[LockReason] = None


DECISION_TABLE: Tuple[AccessRule, ...] = (
    AccessRule(
        "active_or_trialing",
        lambda f: f.status in (S.ACTIVE, S.TRIALING),
        is_locked=False,
    ),
    AccessRule(
        "canceled_paid_through",
        lambda f: f.status == S.CANCELED and f.period_end is not None and f.period_end > f.now,
        is_locked=False,
    ),
    AccessRule(
        "canceled_expired",
        lambda f: f.status == S.CANCELED,
        is_locked=True,
        reason=LockReason.SUBSCRIPTION_INACTIVE,
    ),
    AccessRule(
        "payment_failed",
        lambda f: f.status in (S.PAST_DUE, S.UNPAID),
        is_locked=True,
        reason=LockReason.PAYMENT_FAILED,
    ),
    AccessRule(
        "previously_subscribed",
        lambda f: f.status is None and f.ever_subscribed,
        is_locked=True,
        reason=LockReason.SUBSCRIPTION_INACTIVE,
    ),
    AccessRule(
        "trial_active",
        lambda f: f.status is None and f.trial_end is not None and f.now < f.trial_end,
        is_locked=False,
    ),
    AccessRule(
        "trial_expired",
        lambda f: f.status is None and f.trial_end is not None,
        is_locked=True,
        reason=LockReason.TRIAL_EXPIRED,
    ),
    AccessRule(
        "no_trial_no_subscription",
        lambda f: True,
        is_locked=True,
        reason=LockReason.SUBSCRIPTION_INACTIVE,
    ),
)


def decide(facts: AccessFacts, table: Sequence[AccessRule] = DECISION_TABLE) -> AccessDecision:
    for rule in table:
        if rule.applies(facts):
            return AccessDecision(is_locked=rule.is_locked, reason=rule.reason, rule=rule.name)
    raise RuntimeError("access decision table has no catch-all rule")


def current_subscription(rows: Sequence[Subscription]) -> Optional[Subscription]:
    """ACTIVE/TRIALING wins; otherwise the newest PAST_DUE/UNPAID/CANCELED row. Rows are newest first."""
    for row in rows:
        if row.status in (S.ACTIVE, S.TRIALING):
            return row
    for row in rows:
        if row.status in CURRENT_STATUSES:
            return row
    return None


def facts_from_rows(
    rows: Sequence[Subscription],
    trial_end: Optional[datetime],
    now: datetime,
) -> AccessFacts:
    current = current_subscription(rows)
    # Any row, whatever its status, counts as having subscribed
    ever = bool(rows)
    return AccessFacts(
        status=current.status if current else None,
        period_end=current.current_period_end if current else None,
        trial_end=trial_end,
        ever_subscribed=ever,
        now=now,
    )


class WorkspaceAccessGate:
    def __init__(
        self,
        store: SubscriptionStore,
        cache: Optional[AccessStatusCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cache = cache if cache is not None else AccessStatusCache()
        self.clock = clock

    def evaluate(self, owner_id: str) -> AccessDecision:
        """Uncached decision for an owner."""
        user = self.store.get_user(owner_id)
        trial_end = user.trial_end_date if user else None
        facts = facts_from_rows(self.store.list_for_user(owner_id), trial_end, self.clock())
        decision = decide(facts)
        access_decisions_total.inc(labels={"rule": decision.rule})
        return decision

    def status_for_owner(self, owner_id: str) -> WorkspaceAccessStatus:
        cached = self.cache.get(owner_id)
        if cached is not None:
            return cached
        decision = self.evaluate(owner_id)
        status = WorkspaceAccessStatus(is_locked=decision.is_locked, reason=decision.reason, owner_id=owner_id)
        self.cache.set(owner_id, status)
        return status

    def is_locked(self, owner_id: str) -> bool:
        return self.status_for_owner(owner_id).is_locked

    def status_for(self, workspace_id: str) -> WorkspaceAccessStatus:
        workspace = self.store.get_workspace(workspace_id)
        if workspace is None:
            raise NotFoundError(f"Workspace not found: {workspace_id}")
        return self.status_for_owner(workspace.owner_id)

    def locked_workspaces_for(self, owner_id: str) -> List[str]:
        if not self.is_locked(owner_id):
            return []
        return [workspace.id for workspace in self.store.list_workspaces(owner_id)]
