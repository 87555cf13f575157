"""
Scheduled reconciliation job.

Runs SubscriptionLifecycle.sync for every user with a gateway customer, then
removes stale INCOMPLETE rows, and records a billing_job_runs row. One user's
failure is counted and logged; the job continues with the next user.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import insert

from workspace_billing.core.database import billing_job_runs, utcnow
from workspace_billing.core.errors import AppError
from workspace_billing.core.logging import log_event
from workspace_billing.features.billing.lifecycle import SubscriptionLifecycle
from workspace_billing.features.billing.provider import BillingProviderError

JOB_NAME = "billing.reconcile"


def run_reconcile_job(
    lifecycle: SubscriptionLifecycle,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
    cleanup: bool = True,
) -> Dict[str, Any]:
    started = now or utcnow()
    stats = {"users_checked": 0, "synced": 0, "no_subscription": 0, "errors": 0, "incomplete_removed": 0}
    failures = []

    for user_id in lifecycle.store.users_with_customer(limit=limit):
        stats["users_checked"] += 1
        try:
            sub = lifecycle.sync(user_id)
        except (AppError, BillingProviderError) as e:
            stats["errors"] += 1
            failures.append({"user_id": user_id, "error": str(e)})
            log_event("error", "reconcile.user_failed", user_id=user_id, error_code="reconcile_failed",
                      extra={"error": e})
            continue
        if sub is None:
            stats["no_subscription"] += 1
        else:
            stats["synced"] += 1

    if cleanup:
        stats["incomplete_removed"] = lifecycle.cleanup_incomplete()

    status = "success" if stats["errors"] == 0 else "partial"
    with lifecycle.store.db.session() as session:
        session.execute(
            insert(billing_job_runs).values(
                job_name=JOB_NAME,
                started_at=started,
                finished_at=utcnow(),
                status=status,
                stats_json=json.dumps({**stats, "failures": failures[:20]}),
            )
        )

    log_event("info", "reconcile.complete", event_type=JOB_NAME, extra=stats)
    return {**stats, "status": status, "timestamp": started.isoformat()}
