"""Expiry sweep tests"""
import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest
import stripe

from pixelbill.core.config import settings
from pixelbill.models.enums import EntitlementTier, SubscriptionStatus
from pixelbill.models.subscription import Subscription
from pixelbill.models.user import User
from pixelbill.schemas.events import as_utc
from pixelbill.tasks import expiry_sweep
from pixelbill.tasks.expiry_sweep import run_expiry_sweep

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _paid_user(db_session, clerk_id, subscription_id, period_end, status=SubscriptionStatus.ACTIVE):
    user = User(clerk_id=clerk_id, email=f"{clerk_id}@x.com", stripe_customer_id=f"cus_{clerk_id}",
                tier=EntitlementTier.PRO, credits=40)
    db_session.add(user)
    db_session.commit()
    db_session.add(Subscription(
        user_id=user.id,
        stripe_subscription_id=subscription_id,
        stripe_price_id=settings.STRIPE_PRICE_PRO,
        current_period_end=period_end,
        status=status,
    ))
    db_session.commit()
    return user


def _state(db_session, clerk_id):
    db_session.expire_all()
    user = db_session.query(User).filter(User.clerk_id == clerk_id).one()
    return user, user.subscription


@pytest.mark.critical
@pytest.mark.usefixtures("mock_redis")
class TestExpirySweep:
    def test_subscription_gone_from_stripe_expires(self, db_session, fake_gateway):
        _paid_user(db_session, "user_a", "sub_a", NOW - timedelta(days=1))

        report = run_expiry_sweep(fake_gateway, db_session, now=NOW)

        assert (report.examined, report.expired) == (1, 1)
        user, sub = _state(db_session, "user_a")
        assert (user.tier, user.credits) == (EntitlementTier.FREE, settings.FREE_TIER_CREDITS)
        assert sub.status == SubscriptionStatus.EXPIRED

    @pytest.mark.parametrize("stripe_status", ["canceled", "unpaid", "incomplete_expired"])
    def test_inactive_in_stripe_expires(self, db_session, fake_gateway, stripe_status):
        _paid_user(db_session, "user_a", "sub_a", NOW - timedelta(days=1))
        fake_gateway.add_subscription("sub_a", settings.STRIPE_PRICE_PRO, NOW - timedelta(days=1), status=stripe_status)

        assert run_expiry_sweep(fake_gateway, db_session, now=NOW).expired == 1

        user, sub = _state(db_session, "user_a")
        assert user.tier == EntitlementTier.FREE
        assert sub.status == SubscriptionStatus.EXPIRED

    def test_second_run_is_a_no_op(self, db_session, fake_gateway):
        _paid_user(db_session, "user_a", "sub_a", NOW - timedelta(days=1))
        run_expiry_sweep(fake_gateway, db_session, now=NOW)
        user, _ = _state(db_session, "user_a")
        user.credits = 2
        db_session.commit()

        report = run_expiry_sweep(fake_gateway, db_session, now=NOW)

        assert report.examined == 0
        user, _ = _state(db_session, "user_a")
        assert user.credits == 2

    def test_renewed_subscription_moves_forward(self, db_session, fake_gateway):
        _paid_user(db_session, "user_a", "sub_a", NOW - timedelta(days=1))
        renewed_end = NOW + timedelta(days=29)
        fake_gateway.add_subscription("sub_a", settings.STRIPE_PRICE_PRO, renewed_end)

        report = run_expiry_sweep(fake_gateway, db_session, now=NOW)

        assert report.renewed == 1
        user, sub = _state(db_session, "user_a")
        assert user.tier == EntitlementTier.PRO
        assert user.credits == 120
        assert sub.status == SubscriptionStatus.ACTIVE
        assert as_utc(sub.current_period_end) == renewed_end
        assert run_expiry_sweep(fake_gateway, db_session, now=NOW).examined == 0

    def test_pending_cancellation_past_period_expires(self, db_session, fake_gateway):
        _paid_user(db_session, "user_a", "sub_a", NOW - timedelta(hours=2),
                   status=SubscriptionStatus.CANCELED_AT_PERIOD_END)
        fake_gateway.add_subscription("sub_a", settings.STRIPE_PRICE_PRO, NOW - timedelta(hours=2),
                                      cancel_at_period_end=True)

        assert run_expiry_sweep(fake_gateway, db_session, now=NOW).expired == 1

        user, sub = _state(db_session, "user_a")
        assert (user.tier, user.credits) == (EntitlementTier.FREE, settings.FREE_TIER_CREDITS)
        assert sub.status == SubscriptionStatus.EXPIRED

    def test_pending_cancellation_with_later_period_stays_pending(self, db_session, fake_gateway):
        _paid_user(db_session, "user_a", "sub_a", NOW - timedelta(hours=2))
        fake_gateway.add_subscription("sub_a", settings.STRIPE_PRICE_PRO, NOW + timedelta(days=5),
                                      cancel_at_period_end=True)

        assert run_expiry_sweep(fake_gateway, db_session, now=NOW).renewed == 1

        user, sub = _state(db_session, "user_a")
        assert (user.tier, user.credits) == (EntitlementTier.PRO, 40)
        assert sub.status == SubscriptionStatus.CANCELED_AT_PERIOD_END

    def test_active_with_stale_period_is_left_alone(self, db_session, fake_gateway):
        period_end = NOW - timedelta(days=1)
        _paid_user(db_session, "user_a", "sub_a", period_end)
        fake_gateway.add_subscription("sub_a", settings.STRIPE_PRICE_PRO, period_end)

        report = run_expiry_sweep(fake_gateway, db_session, now=NOW)

        assert report.unchanged == 1
        user, sub = _state(db_session, "user_a")
        assert (user.tier, user.credits) == (EntitlementTier.PRO, 40)
        assert sub.status == SubscriptionStatus.ACTIVE

    def test_one_failure_does_not_stop_the_sweep(self, db_session, fake_gateway):
        _paid_user(db_session, "user_a", "sub_a", NOW - timedelta(days=2))
        _paid_user(db_session, "user_b", "sub_b", NOW - timedelta(days=1))
        fake_gateway.retrieve_errors["sub_a"] = stripe.APIConnectionError("network down")

        report = run_expiry_sweep(fake_gateway, db_session, now=NOW)

        assert (report.examined, report.failed, report.expired) == (2, 1, 1)
        assert report.failed_subscription_ids == ["sub_a"]
        user_a, _ = _state(db_session, "user_a")
        user_b, _ = _state(db_session, "user_b")
        assert user_a.tier == EntitlementTier.PRO
        assert user_b.tier == EntitlementTier.FREE

    def test_rows_not_due_are_skipped(self, db_session, fake_gateway):
        _paid_user(db_session, "user_a", "sub_a", NOW + timedelta(days=3))
        _paid_user(db_session, "user_b", "sub_b", NOW - timedelta(days=3), status=SubscriptionStatus.EXPIRED)
        fake_gateway.retrieve_errors["sub_a"] = AssertionError("should not be called")
        fake_gateway.retrieve_errors["sub_b"] = AssertionError("should not be called")

        report = run_expiry_sweep(fake_gateway, db_session, now=NOW)

        assert report.examined == 0
        assert report.failed == 0


class TestExpirySweepTask:
    def test_sweep_runs_in_worker_thread(self, monkeypatch):
        calls = []
        monkeypatch.setattr(settings, "EXPIRY_SWEEP_INTERVAL", 0)
        monkeypatch.setattr(expiry_sweep, "run_expiry_sweep_once", lambda: calls.append(threading.get_ident()))

        async def one_cycle():
            task = asyncio.create_task(expiry_sweep.expiry_sweep_task())
            while not calls:
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(one_cycle())

        assert calls[0] != threading.get_ident()
