"""Subscription service - reconciles local entitlements with Stripe subscription state.

Webhooks, dashboard polling, the expiry sweep and the diagnostics script all
funnel into the functions here; none of them change tier, credits or
subscription rows on their own.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from pixelbill.core.config import settings
from pixelbill.core.errors import CheckoutSessionError, NoBillingProfileError, UserNotFoundError
from pixelbill.core.metrics import subscription_transitions_counter
from pixelbill.db.redis import invalidate_dashboard_cache
from pixelbill.models.enums import EntitlementTier, SubscriptionStatus
from pixelbill.models.subscription import Subscription
from pixelbill.models.user import User
from pixelbill.services.plan_catalog import baseline_plan, is_known_price, plan_details
from pixelbill.services.user_service import get_user_by_external_id, get_user_by_id

logger = logging.getLogger(__name__)
billing_logger = logging.getLogger("billing")


def update_user_subscription(
    clerk_id: str,
    price_id: Optional[str],
    subscription_id: str,
    period_end: datetime,
    db: Session
) -> User:
    """Apply a confirmed, non-cancelled Stripe subscription state to a user.

    Tier and credits come from the plan catalog. The user's single
    subscription row is created or refreshed in the same commit, so replaying
    the same arguments leaves the same state and never adds a second row.

    Raises:
        ValueError: period_end is not a datetime
        UserNotFoundError: no user for ``clerk_id``
    """
    if not isinstance(period_end, datetime):
        raise ValueError(f"period_end must be a datetime, got {type(period_end).__name__}")
    if not subscription_id:
        raise ValueError("subscription_id is required")

    user = get_user_by_external_id(clerk_id, db)
    if not user:
        raise UserNotFoundError(f"No user for Clerk id {clerk_id}")

    plan = plan_details(price_id)
    try:
        user.tier = plan.tier
        user.credits = plan.credits

        sub = db.query(Subscription).filter(Subscription.user_id == user.id).first()
        if sub is None:
            sub = Subscription(
                user_id=user.id,
                stripe_subscription_id=subscription_id,
                stripe_price_id=price_id or "",
                current_period_end=period_end,
                status=SubscriptionStatus.ACTIVE,
            )
            db.add(sub)
            transition = "created"
        else:
            if sub.stripe_subscription_id != subscription_id:
                billing_logger.info(
                    f"User {user.id} subscription row moves from {sub.stripe_subscription_id} to {subscription_id}"
                )
                sub.stripe_subscription_id = subscription_id
            sub.stripe_price_id = price_id or sub.stripe_price_id
            sub.current_period_end = period_end
            sub.status = SubscriptionStatus.ACTIVE
            sub.canceled_at = None
            transition = "updated"

        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(user)
    invalidate_dashboard_cache(user.clerk_id)
    subscription_transitions_counter.labels(transition=transition).inc()
    billing_logger.info(
        f"User {user.id} reconciled to {plan.tier.value} ({plan.credits} credits), "
        f"subscription {subscription_id} until {period_end.isoformat()}"
    )
    return user


def mark_cancellation_pending(
    user: User,
    subscription_id: str,
    price_id: Optional[str],
    period_end: datetime,
    db: Session,
    canceled_at: Optional[datetime] = None
) -> User:
    """Record cancel-at-period-end while leaving the user's paid tier and credits alone"""
    if not isinstance(period_end, datetime):
        raise ValueError(f"period_end must be a datetime, got {type(period_end).__name__}")

    sub = db.query(Subscription).filter(Subscription.user_id == user.id).first()
    if sub is None:
        # Cancellation arrived before any other event for this subscription
        user = update_user_subscription(user.clerk_id, price_id, subscription_id, period_end, db)
        sub = db.query(Subscription).filter(Subscription.user_id == user.id).first()

    try:
        sub.stripe_subscription_id = subscription_id
        if price_id:
            sub.stripe_price_id = price_id
        sub.current_period_end = period_end
        sub.status = SubscriptionStatus.CANCELED_AT_PERIOD_END
        if sub.canceled_at is None or canceled_at is not None:
            sub.canceled_at = canceled_at or datetime.now(timezone.utc)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(user)
    invalidate_dashboard_cache(user.clerk_id)
    subscription_transitions_counter.labels(transition="cancel_pending").inc()
    billing_logger.info(f"User {user.id} subscription {subscription_id} will cancel at {period_end.isoformat()}")
    return user


def downgrade_to_free(user_id: int, db: Session, canceled_at: Optional[datetime] = None) -> User:
    """Expire every subscription row of a user and reset them to FREE with the baseline grant, in one commit"""
    user = get_user_by_id(user_id, db)
    if not user:
        raise UserNotFoundError(f"No user with id {user_id}")

    baseline = baseline_plan()
    when = canceled_at or datetime.now(timezone.utc)
    try:
        user.tier = baseline.tier
        user.credits = baseline.credits
        for sub in db.query(Subscription).filter(Subscription.user_id == user.id).all():
            if sub.status != SubscriptionStatus.EXPIRED:
                sub.status = SubscriptionStatus.EXPIRED
            if sub.canceled_at is None:
                sub.canceled_at = when
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(user)
    invalidate_dashboard_cache(user.clerk_id)
    subscription_transitions_counter.labels(transition="expired").inc()
    billing_logger.info(f"User {user.id} downgraded to {EntitlementTier.FREE.value} ({baseline.credits} credits)")
    return user


def find_user_by_subscription(
    subscription_id: Optional[str],
    db: Session,
    customer_id: Optional[str] = None
) -> Optional[User]:
    """Owner of a Stripe subscription: via the local subscription row, else via the bound customer id"""
    if subscription_id:
        sub = db.query(Subscription).filter(Subscription.stripe_subscription_id == subscription_id).first()
        if sub and sub.user:
            return sub.user

    if customer_id:
        user = db.query(User).filter(User.stripe_customer_id == customer_id).first()
        if user:
            logger.info(f"Resolved subscription {subscription_id} to user {user.id} via customer {customer_id}")
            return user

    logger.warning(f"No user found for subscription {subscription_id} (customer {customer_id})")
    return None


def create_checkout_session(
    price_id: str,
    user: User,
    gateway,
    db: Session,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None
) -> str:
    """Create a Stripe Checkout session for ``user`` and return its hosted URL.

    Binds a Stripe customer to the user first if none exists. Existing
    active subscriptions are recorded in the session metadata for auditing
    and do not block the purchase.

    Raises:
        ValueError: price_id is not a known plan
        CheckoutSessionError: Stripe returned no session URL
    """
    if not is_known_price(price_id):
        raise ValueError(f"Unknown price id: {price_id}")

    if not user.stripe_customer_id:
        user.stripe_customer_id = gateway.create_customer(user.email, user.id)
        db.commit()
        db.refresh(user)
        logger.info(f"Bound Stripe customer {user.stripe_customer_id} to user {user.id}")

    existing = gateway.list_active_subscription_ids(user.stripe_customer_id)
    if existing:
        logger.warning(
            f"User {user.id} starting checkout with {len(existing)} active subscription(s): {', '.join(existing)}"
        )

    metadata = {
        "userId": str(user.id),
        "clerkId": user.clerk_id,
        "previous_subscription_ids": ",".join(existing),
    }
    url = gateway.create_checkout_session(
        customer_id=user.stripe_customer_id,
        price_id=price_id,
        metadata=metadata,
        success_url=success_url or f"{settings.BASE_URL}/dashboard?success=true",
        cancel_url=cancel_url or f"{settings.BASE_URL}/dashboard?canceled=true",
    )
    if not url:
        raise CheckoutSessionError("Stripe did not return a checkout URL")
    return url


def create_portal_session(customer_id: Optional[str], gateway, return_url: Optional[str] = None) -> str:
    """Stripe billing portal URL for a bound customer"""
    if not customer_id:
        raise NoBillingProfileError("No Stripe customer bound to this user")
    return gateway.create_portal_session(customer_id, return_url or f"{settings.BASE_URL}/dashboard/settings")
