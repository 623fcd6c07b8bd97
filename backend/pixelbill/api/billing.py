"""Billing API routes: checkout, customer portal, dashboard refresh"""
import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from pixelbill.core.errors import CheckoutSessionError, NoBillingProfileError, RetryExhaustedError
from pixelbill.core.security import Identity, get_optional_identity, require_identity
from pixelbill.db.session import get_db
from pixelbill.schemas.billing import CheckoutRequest, RedirectResponse, RefreshResponse
from pixelbill.services.billing_gateway import get_billing_gateway
from pixelbill.services.dashboard_service import refresh_dashboard
from pixelbill.services.subscription_service import create_checkout_session, create_portal_session
from pixelbill.services.user_service import ensure_user_exists, get_user_by_external_id

router = APIRouter(prefix="/api", tags=["billing"])
logger = logging.getLogger(__name__)

# Suggested client back-off while a fresh sign-in propagates to the backend
AUTH_RETRY_AFTER_SECONDS = 2


def _auth_pending_response() -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"error": "Authentication is not ready yet, please retry", "retryAfter": AUTH_RETRY_AFTER_SECONDS}
    )


@router.post("/create-checkout-session", response_model=RedirectResponse)
def create_checkout_session_route(
    checkout_request: CheckoutRequest,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
    gateway=Depends(get_billing_gateway)
):
    """Create a Stripe Checkout session for the signed-in user"""
    user = get_user_by_external_id(identity.external_id, db)
    if not user:
        if not identity.email:
            return _auth_pending_response()
        user = ensure_user_exists(identity.external_id, identity.email, db)

    try:
        url = create_checkout_session(checkout_request.price_id, user, gateway, db)
    except ValueError as e:
        raise HTTPException(400, str(e))
    except CheckoutSessionError as e:
        logger.error(f"Checkout session for user {user.id} returned no URL: {e}")
        raise HTTPException(500, "Failed to create checkout session")
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating checkout session for user {user.id}: {e}")
        raise HTTPException(500, "Failed to create checkout session")

    return {"url": url}


@router.post("/create-portal-session", response_model=RedirectResponse)
def create_portal_session_route(
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
    gateway=Depends(get_billing_gateway)
):
    """Get a Stripe customer portal URL"""
    user = get_user_by_external_id(identity.external_id, db)
    if not user:
        raise HTTPException(404, "User not found")

    try:
        url = create_portal_session(user.stripe_customer_id, gateway)
    except NoBillingProfileError:
        raise HTTPException(400, "No billing profile found. Please subscribe to a plan first.")
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating portal session for user {user.id}: {e}")
        raise HTTPException(500, "Failed to create portal session")

    return {"url": url}


@router.post("/refresh-cache")
def refresh_cache(
    identity: Optional[Identity] = Depends(get_optional_identity),
    db: Session = Depends(get_db)
):
    """Re-derive the caller's credits and plan, dropping cached views"""
    if identity is None:
        return _auth_pending_response()

    try:
        view = refresh_dashboard(identity, db)
    except RetryExhaustedError as e:
        logger.warning(f"Dashboard refresh for {identity.external_id} gave up after {e.attempts} attempts")
        return JSONResponse(
            status_code=503,
            content={"error": "Account is still being set up, please retry", "retryAfter": e.retry_after}
        )

    return RefreshResponse(**view.model_dump()).model_dump(by_alias=True)
