"""Expiry sweep - reconciles subscriptions whose recorded period end has passed.

Catches up on missed or delayed Stripe events: every non-expired subscription
past its period end is re-checked against Stripe and either expired (FREE
tier, baseline credits) or moved forward to its renewed period. Runs daily
from the app lifespan, or once from the command line:

    python -m pixelbill.tasks.expiry_sweep
"""
import asyncio
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from pixelbill.core.config import settings
from pixelbill.core.logging import setup_logging
from pixelbill.core.metrics import expiry_sweep_rows_counter, expiry_sweep_runs_counter
from pixelbill.db.session import SessionLocal
from pixelbill.models.enums import SubscriptionStatus
from pixelbill.models.subscription import Subscription
from pixelbill.schemas.events import as_utc
from pixelbill.services.billing_gateway import get_billing_gateway
from pixelbill.services.subscription_service import (
    downgrade_to_free,
    mark_cancellation_pending,
    update_user_subscription,
)
from pixelbill.services.user_service import get_user_by_id

sweep_logger = logging.getLogger("sweep")


@dataclass
class SweepReport:
    examined: int = 0
    expired: int = 0
    renewed: int = 0
    unchanged: int = 0
    failed: int = 0
    failed_subscription_ids: List[str] = field(default_factory=list)


def _sweep_one(stripe_subscription_id: str, user_id: int, period_end: datetime, gateway, db: Session, now: datetime) -> str:
    snapshot = gateway.retrieve_subscription(stripe_subscription_id)

    if snapshot is None or not snapshot.is_active:
        status = "missing" if snapshot is None else snapshot.status
        sweep_logger.info(f"Subscription {stripe_subscription_id} is {status} in Stripe, expiring user {user_id}")
        downgrade_to_free(user_id, db, canceled_at=now)
        return "expired"

    live_end = as_utc(snapshot.current_period_end)
    if snapshot.cancel_at_period_end and live_end <= now:
        sweep_logger.info(f"Subscription {stripe_subscription_id} cancelled at period end, expiring user {user_id}")
        downgrade_to_free(user_id, db, canceled_at=now)
        return "expired"

    if snapshot.period_end_is_fallback or live_end <= as_utc(period_end):
        sweep_logger.warning(
            f"Subscription {stripe_subscription_id} is active in Stripe but its period end has not moved, leaving as is"
        )
        return "unchanged"

    user = get_user_by_id(user_id, db)
    if snapshot.cancel_at_period_end:
        mark_cancellation_pending(user, snapshot.id, snapshot.price_id, snapshot.current_period_end, db,
                                  canceled_at=snapshot.canceled_at)
    else:
        update_user_subscription(user.clerk_id, snapshot.price_id, snapshot.id, snapshot.current_period_end, db)
    sweep_logger.info(f"Subscription {stripe_subscription_id} renewed until {live_end.isoformat()}")
    return "renewed"


def run_expiry_sweep(gateway, db: Session, now: Optional[datetime] = None) -> SweepReport:
    """Process every subscription past its period end that is not yet EXPIRED.

    Rows are handled independently: a failure is rolled back, logged and
    counted, and the sweep moves on. Re-running is a no-op for rows already
    expired.
    """
    now = now or datetime.now(timezone.utc)
    report = SweepReport()

    # Plain tuples, so a rollback on one row cannot expire the rest
    due = [
        (row.stripe_subscription_id, row.user_id, row.current_period_end)
        for row in db.query(Subscription).filter(
            Subscription.current_period_end < now,
            Subscription.status != SubscriptionStatus.EXPIRED
        ).order_by(Subscription.current_period_end).all()
    ]
    sweep_logger.info(f"Expiry sweep: {len(due)} subscription(s) past period end")

    for stripe_subscription_id, user_id, period_end in due:
        report.examined += 1
        try:
            action = _sweep_one(stripe_subscription_id, user_id, period_end, gateway, db, now)
        except Exception as e:
            db.rollback()
            sweep_logger.error(f"Expiry sweep failed for subscription {stripe_subscription_id}: {e}", exc_info=True)
            report.failed += 1
            report.failed_subscription_ids.append(stripe_subscription_id)
            expiry_sweep_rows_counter.labels(action="failed").inc()
            continue
        setattr(report, action, getattr(report, action) + 1)
        expiry_sweep_rows_counter.labels(action=action).inc()

    expiry_sweep_runs_counter.labels(status="success" if report.failed == 0 else "partial").inc()
    sweep_logger.info(
        f"Expiry sweep done: examined={report.examined} expired={report.expired} "
        f"renewed={report.renewed} unchanged={report.unchanged} failed={report.failed}"
    )
    return report


def run_expiry_sweep_once() -> SweepReport:
    """One sweep in its own session"""
    db = SessionLocal()
    try:
        return run_expiry_sweep(get_billing_gateway(), db)
    finally:
        db.close()


async def expiry_sweep_task():
    """Background task running the expiry sweep every EXPIRY_SWEEP_INTERVAL seconds"""
    while True:
        try:
            await asyncio.sleep(settings.EXPIRY_SWEEP_INTERVAL)
            # Database and Stripe calls block, keep them off the event loop
            await asyncio.to_thread(run_expiry_sweep_once)

        except asyncio.CancelledError:
            sweep_logger.info("Expiry sweep task cancelled")
            raise
        except Exception as e:
            sweep_logger.error(f"Error in expiry sweep task: {e}", exc_info=True)
            expiry_sweep_runs_counter.labels(status="failure").inc()


def main() -> int:
    setup_logging()
    report = run_expiry_sweep_once()
    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(main())
