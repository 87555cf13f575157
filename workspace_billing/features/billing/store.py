"""
Subscription store.

The only code that writes `subscriptions` rows (plus the billing fields on
users and workspaces). Activating a subscription cancels any other ACTIVE row
for the user in the same transaction, so at most one ACTIVE row exists per
user. Updates write only the columns whose values changed; a write with no
changes leaves the row (including updated_at) untouched.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import and_, delete, insert, select, update

from workspace_billing.core.database import (
    Database,
    app_users,
    ensure_utc,
    subscriptions,
    utcnow,
    workspaces,
)
from workspace_billing.core.errors import ConflictError
from workspace_billing.core.logging import log_event
from workspace_billing.models.subscription import Subscription, SubscriptionStatus, WorkspaceTier


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    email: Optional[str]
    display_name: Optional[str]
    stripe_customer_id: Optional[str]
    trial_start_date: Optional[datetime]
    trial_end_date: Optional[datetime]

    @classmethod
    def from_row(cls, row) -> "UserRecord":
        return cls(
            user_id=row.user_id,
            email=row.email,
            display_name=row.display_name,
            stripe_customer_id=row.stripe_customer_id,
            trial_start_date=ensure_utc(row.trial_start_date),
            trial_end_date=ensure_utc(row.trial_end_date),
        )


@dataclass(frozen=True)
class WorkspaceRecord:
    id: str
    owner_id: str
    name: str
    subscription_tier: WorkspaceTier


def _normalize(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, SubscriptionStatus):
        return value.value
    return value


class SubscriptionStore:
    def __init__(self, db: Database):
        self.db = db

    # -- users ---------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self.db.session() as session:
            row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).fetchone()
        return UserRecord.from_row(row) if row else None

    def get_user_by_customer(self, customer_id: str) -> Optional[UserRecord]:
        with self.db.session() as session:
            row = session.execute(
                select(app_users).where(app_users.c.stripe_customer_id == customer_id)
            ).fetchone()
        return UserRecord.from_row(row) if row else None

    def upsert_user(self, user_id: str, email: Optional[str] = None, display_name: Optional[str] = None) -> UserRecord:
        with self.db.session() as session:
            existing = session.execute(select(app_users.c.user_id).where(app_users.c.user_id == user_id)).fetchone()
            if existing:
                values = {k: v for k, v in {"email": email, "display_name": display_name}.items() if v is not None}
                if values:
                    session.execute(update(app_users).where(app_users.c.user_id == user_id).values(**values))
            else:
                session.execute(insert(app_users).values(user_id=user_id, email=email, display_name=display_name))
        return self.get_user(user_id)

    def set_customer_id(self, user_id: str, customer_id: Optional[str]) -> None:
        with self.db.session() as session:
            session.execute(
                update(app_users).where(app_users.c.user_id == user_id).values(stripe_customer_id=customer_id)
            )

    def start_trial(self, user_id: str, start: datetime, end: datetime) -> bool:
        """Set the trial window once. Returns False if the user already had one."""
        with self.db.session() as session:
            result = session.execute(
                update(app_users)
                .where(and_(app_users.c.user_id == user_id, app_users.c.trial_end_date.is_(None)))
                .values(trial_start_date=start, trial_end_date=end)
            )
            return result.rowcount > 0

    def users_with_customer(self, limit: Optional[int] = None) -> List[str]:
        query = (
            select(app_users.c.user_id)
            .where(app_users.c.stripe_customer_id.is_not(None))
            .order_by(app_users.c.user_id)
        )
        if limit:
            query = query.limit(limit)
        with self.db.session() as session:
            return [row.user_id for row in session.execute(query).fetchall()]

    # -- workspaces ----------------------------------------------------------

    def get_workspace(self, workspace_id: str) -> Optional[WorkspaceRecord]:
        with self.db.session() as session:
            row = session.execute(select(workspaces).where(workspaces.c.id == workspace_id)).fetchone()
        if not row:
            return None
        return WorkspaceRecord(row.id, row.owner_id, row.name, WorkspaceTier(row.subscription_tier))

    def list_workspaces(self, owner_id: str) -> List[WorkspaceRecord]:
        with self.db.session() as session:
            rows = session.execute(
                select(workspaces).where(workspaces.c.owner_id == owner_id).order_by(workspaces.c.created_at)
            ).fetchall()
        return [WorkspaceRecord(r.id, r.owner_id, r.name, WorkspaceTier(r.subscription_tier)) for r in rows]

    def create_workspace(self, workspace_id: str, owner_id: str, name: str, tier: WorkspaceTier) -> WorkspaceRecord:
        """Insert the workspace, or rename it when the same owner registers it again."""
        with self.db.session() as session:
            row = session.execute(select(workspaces).where(workspaces.c.id == workspace_id)).fetchone()
            if row is None:
                session.execute(insert(workspaces).values(
                    id=workspace_id, owner_id=owner_id, name=name, subscription_tier=tier.value,
                ))
                created = True
            elif row.owner_id != owner_id:
                raise ConflictError(f"Workspace {workspace_id} belongs to another user")
            else:
                if row.name != name:
                    session.execute(update(workspaces).where(workspaces.c.id == workspace_id).values(name=name))
                created = False
        if created:
            log_event("info", "workspace.registered", user_id=owner_id, workspace_id=workspace_id,
                      extra={"tier": tier.value})
        return self.get_workspace(workspace_id)

    def set_workspace_tier(self, owner_id: str, tier: WorkspaceTier) -> int:
        with self.db.session() as session:
            result = session.execute(
                update(workspaces)
                .where(and_(workspaces.c.owner_id == owner_id, workspaces.c.subscription_tier != tier.value))
                .values(subscription_tier=tier.value)
            )
            changed = result.rowcount
        if changed:
            log_event("info", "workspace.tier_updated", user_id=owner_id, extra={"tier": tier.value, "workspaces": changed})
        return changed

    # -- subscriptions: reads ----------------------------------------------

    def get(self, subscription_id: str) -> Optional[Subscription]:
        with self.db.session() as session:
            row = session.execute(select(subscriptions).where(subscriptions.c.id == subscription_id)).fetchone()
        return Subscription.from_row(row) if row else None

    def get_by_gateway_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        with self.db.session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.stripe_subscription_id == stripe_subscription_id)
            ).fetchone()
        return Subscription.from_row(row) if row else None

    def list_for_user(self, user_id: str) -> List[Subscription]:
        """All rows for the user, newest first."""
        with self.db.session() as session:
            rows = session.execute(
                select(subscriptions)
                .where(subscriptions.c.user_id == user_id)
                .order_by(subscriptions.c.created_at.desc(), subscriptions.c.id)
            ).fetchall()
        return [Subscription.from_row(r) for r in rows]

    def get_active(self, user_id: str) -> Optional[Subscription]:
        for sub in self.list_for_user(user_id):
            if sub.status == SubscriptionStatus.ACTIVE:
                return sub
        return None

    def get_active_paid(self, user_id: str) -> Optional[Subscription]:
        sub = self.get_active(user_id)
        if sub is not None and sub.is_paid:
            return sub
        return None

    # -- subscriptions: writes ---------------------------------------------

    def _cancel_other_active(self, session, user_id: str, keep_id: Optional[str], now: datetime) -> int:
        conditions = [subscriptions.c.user_id == user_id, subscriptions.c.status == SubscriptionStatus.ACTIVE.value]
        if keep_id is not None:
            conditions.append(subscriptions.c.id != keep_id)
        result = session.execute(
            update(subscriptions)
            .where(and_(*conditions))
            .values(status=SubscriptionStatus.CANCELED.value, canceled_at=now, updated_at=now)
        )
        return result.rowcount

    def _update_if_changed(self, session, current: Subscription, values: Dict[str, Any], now: datetime) -> bool:
        changed = {
            key: value for key, value in values.items()
            if _normalize(getattr(current, key)) != _normalize(value)
        }
        if not changed:
            return False
        changed["updated_at"] = now
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.id == current.id)
            .values(**{k: _normalize(v) for k, v in changed.items()})
        )
        return True

    def activate(
        self,
        user_id: str,
        plan_id: str,
        *,
        period_start: datetime,
        period_end: datetime,
        stripe_subscription_id: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        trial_start: Optional[datetime] = None,
        trial_end: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Insert a new current subscription, canceling any other ACTIVE row first."""
        ts = now or utcnow()
        new_id = str(uuid4())
        with self.db.session() as session:
            if status == SubscriptionStatus.ACTIVE:
                self._cancel_other_active(session, user_id, keep_id=None, now=ts)
            session.execute(
                insert(subscriptions).values(
                    id=new_id,
                    user_id=user_id,
                    plan_id=plan_id,
                    stripe_subscription_id=stripe_subscription_id,
                    stripe_customer_id=stripe_customer_id,
                    status=status.value,
                    current_period_start=period_start,
                    current_period_end=period_end,
                    cancel_at_period_end=False,
                    trial_start=trial_start,
                    trial_end=trial_end,
                    created_at=ts,
                    updated_at=ts,
                )
            )
        log_event("info", "subscription.activated", user_id=user_id, subscription_id=new_id,
                  extra={"plan_id": plan_id, "status": status.value})
        return self.get(new_id)

    def upsert_from_gateway(
        self,
        user_id: str,
        stripe_subscription_id: str,
        values: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Create or update the row for a gateway subscription from gateway-derived values.

        `values` holds plan_id, status, stripe_customer_id and the period/cancel/trial fields.
        """
        ts = now or utcnow()
        existing = self.get_by_gateway_id(stripe_subscription_id)
        with self.db.session() as session:
            if existing is None:
                row_id = str(uuid4())
                if values.get("status") == SubscriptionStatus.ACTIVE:
                    self._cancel_other_active(session, user_id, keep_id=None, now=ts)
                session.execute(
                    insert(subscriptions).values(
                        id=row_id,
                        user_id=user_id,
                        stripe_subscription_id=stripe_subscription_id,
                        created_at=ts,
                        updated_at=ts,
                        **{k: _normalize(v) for k, v in values.items()},
                    )
                )
            else:
                row_id = existing.id
                if values.get("status") == SubscriptionStatus.ACTIVE:
                    self._cancel_other_active(session, user_id, keep_id=row_id, now=ts)
                self._update_if_changed(session, existing, values, ts)
        return self.get(row_id)

    def update_fields(self, subscription_id: str, values: Dict[str, Any], now: Optional[datetime] = None) -> Subscription:
        current = self.get(subscription_id)
        if current is None:
            raise LookupError(subscription_id)
        with self.db.session() as session:
            if values.get("status") == SubscriptionStatus.ACTIVE:
                self._cancel_other_active(session, current.user_id, keep_id=subscription_id, now=now or utcnow())
            self._update_if_changed(session, current, values, now or utcnow())
        return self.get(subscription_id)

    def mark_canceled(self, subscription_id: str, now: Optional[datetime] = None, *, clear_gateway_id: bool = False) -> Subscription:
        current = self.get(subscription_id)
        if current is None:
            raise LookupError(subscription_id)
        values: Dict[str, Any] = {"status": SubscriptionStatus.CANCELED}
        if current.status != SubscriptionStatus.CANCELED:
            values["canceled_at"] = now or utcnow()
        if clear_gateway_id:
            values["stripe_subscription_id"] = None
        return self.update_fields(subscription_id, values, now)

    def cancel_all(self, user_id: str, now: Optional[datetime] = None) -> int:
        """Mark every non-canceled row for the user CANCELED."""
        ts = now or utcnow()
        with self.db.session() as session:
            result = session.execute(
                update(subscriptions)
                .where(and_(
                    subscriptions.c.user_id == user_id,
                    subscriptions.c.status != SubscriptionStatus.CANCELED.value,
                ))
                .values(status=SubscriptionStatus.CANCELED.value, canceled_at=ts, updated_at=ts)
            )
            return result.rowcount

    def delete_incomplete_before(self, cutoff: datetime) -> int:
        with self.db.session() as session:
            result = session.execute(
                delete(subscriptions).where(and_(
                    subscriptions.c.status == SubscriptionStatus.INCOMPLETE.value,
                    subscriptions.c.created_at < cutoff,
                ))
            )
            return result.rowcount
