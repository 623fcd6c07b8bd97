#!/usr/bin/env python3
"""
Compare a user's local entitlement with what Stripe reports, optionally repairing it.

Usage:
    # Show local vs Stripe state for a user
    python check_subscription_status.py user_2abc...

    # Re-apply Stripe's first active subscription to the user
    python check_subscription_status.py user_2abc... --fix

    # Show the configured price ids and their plans
    python check_subscription_status.py plans

    # Run the expiry sweep once
    python check_subscription_status.py check-expired
"""

import argparse
import sys

from pixelbill.core.logging import setup_logging
from pixelbill.db.session import SessionLocal
from pixelbill.services.billing_gateway import get_billing_gateway
from pixelbill.services.plan_catalog import list_plans
from pixelbill.services.subscription_service import update_user_subscription
from pixelbill.services.user_service import get_user_by_external_id
from pixelbill.tasks.expiry_sweep import run_expiry_sweep_once


def check_user(clerk_id: str, fix: bool = False) -> bool:
    """Print local and Stripe state for one user"""
    gateway = get_billing_gateway()
    db = SessionLocal()
    try:
        user = get_user_by_external_id(clerk_id, db)
        if not user:
            print(f"❌ User not found: {clerk_id}")
            return False

        print(f"User {user.id} <{user.email}>")
        print(f"  tier:     {user.tier.value}")
        print(f"  credits:  {user.credits}")
        print(f"  customer: {user.stripe_customer_id or '-'}")

        sub = user.subscription
        if sub:
            print(f"  subscription: {sub.stripe_subscription_id} ({sub.status.value})")
            print(f"    price:      {sub.stripe_price_id}")
            print(f"    period end: {sub.current_period_end}")
            print(f"    canceled:   {sub.canceled_at or '-'}")
        else:
            print("  subscription: none")

        if not user.stripe_customer_id:
            print("ℹ️  No Stripe customer bound, nothing to compare")
            return True

        active_ids = gateway.list_active_subscription_ids(user.stripe_customer_id)
        if not active_ids:
            print("Stripe: no active subscriptions")
            return True

        snapshots = [gateway.retrieve_subscription(sub_id) for sub_id in active_ids]
        snapshots = [s for s in snapshots if s is not None]
        for snapshot in snapshots:
            print(f"Stripe: {snapshot.id} status={snapshot.status} price={snapshot.price_id} "
                  f"period_end={snapshot.current_period_end.isoformat()} "
                  f"cancel_at_period_end={snapshot.cancel_at_period_end}")
        if len(snapshots) > 1:
            print(f"⚠️  {len(snapshots)} active subscriptions for one customer")

        if fix and snapshots:
            first = snapshots[0]
            user = update_user_subscription(user.clerk_id, first.price_id, first.id, first.current_period_end, db)
            print(f"✅ Re-applied {first.id}: tier={user.tier.value} credits={user.credits}")
        return True
    finally:
        db.close()


def check_expired() -> bool:
    """Run the expiry sweep once and print its report"""
    report = run_expiry_sweep_once()

    print(f"Examined {report.examined}: expired={report.expired} renewed={report.renewed} "
          f"unchanged={report.unchanged} failed={report.failed}")
    for sub_id in report.failed_subscription_ids:
        print(f"❌ {sub_id}")
    return report.failed == 0


def show_plans() -> bool:
    """Print the price id to plan mapping from the environment"""
    plans = list_plans()
    if not plans:
        print("❌ No Stripe price ids configured")
        return False
    for plan in plans:
        print(f"{plan['tier']:<11} {plan['credits']:>4} credits  {plan['price_id']}")
    return True


def main():
    parser = argparse.ArgumentParser(
        description='Check (and optionally repair) subscription state against Stripe',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('target', help="Clerk user id, 'plans', or 'check-expired' to run the expiry sweep")
    parser.add_argument('--fix', action='store_true', help="Re-apply Stripe's active subscription to the user")
    args = parser.parse_args()

    setup_logging()
    if args.target == 'check-expired':
        ok = check_expired()
    elif args.target == 'plans':
        ok = show_plans()
    else:
        ok = check_user(args.target, fix=args.fix)
    sys.exit(0 if ok else 1)


if __name__ == '__main__':
    main()
