"""User service - identity reconciliation between Clerk and the local store"""
import logging
import time
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from pixelbill.core.config import settings
from pixelbill.core.errors import InsufficientCreditsError, RetryExhaustedError, UserNotFoundError
from pixelbill.core.metrics import credits_consumed_counter, user_resolution_counter
from pixelbill.core.retry import retry_with_backoff
from pixelbill.db.redis import invalidate_dashboard_cache
from pixelbill.models.enums import EntitlementTier
from pixelbill.models.user import User

logger = logging.getLogger(__name__)


def get_user_by_id(user_id: int, db: Session) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_external_id(external_id: str, db: Session) -> Optional[User]:
    return db.query(User).filter(User.clerk_id == external_id).first()


def get_user_by_email(email: str, db: Session) -> Optional[User]:
    return db.query(User).filter(User.email == email).first()


def _find_by_external_id_or_email(external_id: str, email: str, db: Session) -> Optional[User]:
    return db.query(User).filter(
        or_(User.clerk_id == external_id, User.email == email)
    ).order_by(User.id).first()


def ensure_user_exists(
    external_id: str,
    email: str,
    db: Session,
    sleep: Callable[[float], None] = time.sleep,
) -> User:
    """Find or create the local user for a Clerk identity.

    Resolution order, each step short-circuiting:
    1. by Clerk id
    2. by email, re-binding the row to the new Clerk id (id rotation)
    3. create with FREE tier and the baseline credit grant

    Safe to call concurrently for the same identity (webhook, checkout and
    dashboard refresh all call it). The unique constraints on clerk_id and
    email let at most one insert win; a loser rolls back, waits briefly and
    re-reads the winner's row. Only an unrecoverable store error propagates.
    """
    user = get_user_by_external_id(external_id, db)
    if user:
        user_resolution_counter.labels(path="existing").inc()
        return user

    try:
        user = get_user_by_email(email, db)
        if user:
            logger.info(f"Re-binding user {user.id} ({email}) from Clerk id {user.clerk_id} to {external_id}")
            user.clerk_id = external_id
            db.commit()
            db.refresh(user)
            user_resolution_counter.labels(path="relinked").inc()
            return user

        user = User(
            clerk_id=external_id,
            email=email,
            tier=EntitlementTier.FREE,
            credits=settings.FREE_TIER_CREDITS,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info(f"Created user {user.id} for Clerk id {external_id}")
        user_resolution_counter.labels(path="created").inc()
        return user
    except IntegrityError:
        # Lost a race with a concurrent creator
        db.rollback()
        logger.info(f"Unique constraint hit while resolving Clerk id {external_id}, re-reading")
        sleep(settings.USER_RACE_RETRY_DELAY)
        found = _find_by_external_id_or_email(external_id, email, db)
        if found:
            user_resolution_counter.labels(path="race_recovered").inc()
            return found
        raise


def find_user_by_external_id(
    external_id: str,
    db: Session,
    retries: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[User]:
    """Look up a user by Clerk id, retrying briefly while the row may still be in flight"""
    try:
        return retry_with_backoff(
            lambda: get_user_by_external_id(external_id, db),
            max_attempts=retries,
            base_delay=settings.USER_RACE_RETRY_DELAY,
            max_delay=settings.USER_RACE_RETRY_DELAY,
            retry_on=(OperationalError,),
            retry_if=lambda found: found is None,
            sleep=sleep,
            label=f"lookup of Clerk id {external_id}",
        )
    except RetryExhaustedError:
        return None


def delete_user_by_external_id(external_id: str, db: Session) -> bool:
    """Hard-delete a user (and, by cascade, its subscription). Returns False if absent."""
    user = get_user_by_external_id(external_id, db)
    if not user:
        return False
    user_id = user.id
    db.delete(user)
    db.commit()
    invalidate_dashboard_cache(external_id)
    logger.info(f"Deleted user {user_id} (Clerk id {external_id})")
    return True


def consume_credits(external_id: str, db: Session, amount: int = 1) -> int:
    """Atomically take ``amount`` credits from a user; returns the remaining balance.

    The decrement is a single conditional UPDATE so concurrent tool runs can
    never drive the balance below zero.
    """
    if amount < 1:
        raise ValueError("amount must be positive")

    updated = db.query(User).filter(
        User.clerk_id == external_id,
        User.credits >= amount
    ).update({User.credits: User.credits - amount}, synchronize_session=False)
    db.commit()

    user = get_user_by_external_id(external_id, db)
    if not user:
        raise UserNotFoundError(f"No user for Clerk id {external_id}")
    if not updated:
        raise InsufficientCreditsError(f"User {user.id} has {user.credits} credits, {amount} required")

    credits_consumed_counter.inc(amount)
    invalidate_dashboard_cache(external_id)
    logger.info(f"User {user.id} consumed {amount} credit(s), {user.credits} remaining")
    return user.credits
