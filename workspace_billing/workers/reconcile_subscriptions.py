"""Scheduled subscription reconciliation against Stripe.

    python -m workspace_billing.workers.reconcile_subscriptions [--limit N] [--no-cleanup]
"""
import argparse
import json
import logging
from typing import Optional, Sequence

from dotenv import load_dotenv

from workspace_billing.core.config import Settings
from workspace_billing.core.logging import configure_logging
from workspace_billing.core.validation import validate_env
from workspace_billing.features.billing.reconcile_job import run_reconcile_job
from workspace_billing.services import build_services

logger = logging.getLogger("workspace_billing.workers.reconcile")


def reconcile_subscriptions(
    *,
    limit: Optional[int] = None,
    cleanup: bool = True,
    settings_obj: Optional[Settings] = None,
) -> dict:
    cfg = settings_obj or Settings()
    services = build_services(cfg).open()
    try:
        if not services.billing_enabled:
            logger.warning("[reconcile] billing disabled; nothing to do")
            return {"status": "skipped", "reason": "billing_disabled"}
        return run_reconcile_job(services.lifecycle, limit=limit, cleanup=cleanup)
    finally:
        services.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile local subscriptions with Stripe")
    parser.add_argument("--limit", type=int, default=None, help="maximum number of users to sync")
    parser.add_argument("--no-cleanup", action="store_true", help="keep stale INCOMPLETE subscriptions")
    args = parser.parse_args(argv)

    load_dotenv()
    cfg = Settings()
    configure_logging(cfg.ENV)
    validate_env(settings_obj=cfg)
    result = reconcile_subscriptions(limit=args.limit, cleanup=not args.no_cleanup, settings_obj=cfg)
    print(json.dumps(result, default=str))
    return 0 if result.get("status") in ("success", "skipped") else 1


if __name__ == "__main__":
    raise SystemExit(main())
