"""Dashboard service - credit/tier view for the signed-in user, with polling refresh"""
import logging
import time
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pixelbill.core.config import settings
from pixelbill.core.errors import UserNotFoundError
from pixelbill.core.retry import retry_with_backoff
from pixelbill.core.security import Identity
from pixelbill.db.redis import get_cached_dashboard, invalidate_dashboard_cache, set_cached_dashboard
from pixelbill.models.user import User
from pixelbill.schemas.billing import DashboardView
from pixelbill.services.user_service import ensure_user_exists, get_user_by_external_id

logger = logging.getLogger(__name__)


def build_dashboard_view(user: User) -> DashboardView:
    return DashboardView(user_id=user.id, credits=user.credits, plan=user.tier.value)


def refresh_dashboard(
    identity: Identity,
    db: Session,
    sleep: Callable[[float], None] = time.sleep
) -> DashboardView:
    """Re-derive the caller's record and drop any cached view.

    Right after sign-up the Clerk webhook may not have created the user yet,
    so the lookup (or lazy creation, when the session carries an email) is
    retried with exponential backoff. Gives up with ``RetryExhaustedError``.
    """
    def _resolve() -> Optional[User]:
        try:
            user = get_user_by_external_id(identity.external_id, db)
            if user is None and identity.email:
                user = ensure_user_exists(identity.external_id, identity.email, db, sleep=sleep)
            return user
        except SQLAlchemyError:
            db.rollback()
            raise

    user = retry_with_backoff(
        _resolve,
        max_attempts=settings.REFRESH_MAX_ATTEMPTS,
        base_delay=settings.REFRESH_BASE_DELAY,
        max_delay=settings.REFRESH_MAX_DELAY,
        retry_on=(SQLAlchemyError,),
        retry_if=lambda found: found is None,
        sleep=sleep,
        label=f"dashboard refresh for {identity.external_id}",
    )

    invalidate_dashboard_cache(identity.external_id)
    view = build_dashboard_view(user)
    set_cached_dashboard(identity.external_id, view.model_dump())
    logger.info(f"Refreshed dashboard for user {user.id}: {view.plan}, {view.credits} credits")
    return view


def get_dashboard_view(identity: Identity, db: Session) -> DashboardView:
    """Cached credit/tier view; falls back to the store on a cache miss"""
    cached = get_cached_dashboard(identity.external_id)
    if cached:
        return DashboardView.model_validate(cached)

    user = get_user_by_external_id(identity.external_id, db)
    if not user:
        raise UserNotFoundError(f"No user for Clerk id {identity.external_id}")

    view = build_dashboard_view(user)
    set_cached_dashboard(identity.external_id, view.model_dump())
    return view
