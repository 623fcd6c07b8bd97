"""Webhook service - verified ingestion of Stripe and Clerk webhook deliveries.

Both processors return a ``WebhookResult`` that the router sends back as-is.
Status codes follow what the providers retry on:

- 200/201: handled, ignored, or soft not-found (never retried)
- 400: verification failure or malformed event (no state is changed)
- 500: missing configuration or internal failure (provider retries)
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pixelbill.core.config import settings
from pixelbill.core.errors import (
    MalformedEventError,
    WebhookNotConfiguredError,
    WebhookVerificationError,
)
from pixelbill.core.metrics import webhook_events_counter
from pixelbill.models.enums import SubscriptionStatus
from pixelbill.models.stripe_event import StripeEvent
from pixelbill.schemas.events import parse_checkout_session, parse_identity_event, parse_subscription
from pixelbill.services.subscription_service import (
    downgrade_to_free,
    find_user_by_subscription,
    mark_cancellation_pending,
    update_user_subscription,
)
from pixelbill.services.user_service import (
    delete_user_by_external_id,
    ensure_user_exists,
    find_user_by_external_id,
    get_user_by_id,
)

logger = logging.getLogger(__name__)
webhook_logger = logging.getLogger("webhook")
security_logger = logging.getLogger("security")


@dataclass
class WebhookResult:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)
    outcome: str = "ok"


def _soft_not_found(message: str) -> WebhookResult:
    return WebhookResult(200, {"received": True, "status": "user_not_found", "message": message}, "user_not_found")


# ============================================================================
# STRIPE EVENT LOG
# ============================================================================

def log_stripe_event(event_id: str, event_type: str, payload: dict, db: Session) -> StripeEvent:
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if not stripe_event:
        stripe_event = StripeEvent(
            stripe_event_id=event_id,
            event_type=event_type,
            payload=payload,
            processed=False
        )
        db.add(stripe_event)
        try:
            db.commit()
        except IntegrityError:
            # Concurrent delivery of the same event logged it first
            db.rollback()
            return db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).one()
        db.refresh(stripe_event)
    return stripe_event


def record_stripe_event_result(
    event_id: str,
    db: Session,
    outcome: str,
    processed: bool = True,
    error_message: Optional[str] = None
):
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if stripe_event:
        stripe_event.processed = processed
        stripe_event.outcome = outcome
        stripe_event.error_message = error_message
        if processed:
            stripe_event.processed_at = datetime.now(timezone.utc)
        db.commit()


# ============================================================================
# STRIPE HANDLERS
# ============================================================================

def handle_checkout_completed(data: Any, gateway, db: Session) -> WebhookResult:
    checkout = parse_checkout_session(data)
    if not checkout.subscription_id:
        raise MalformedEventError("Checkout session has no subscription")
    if checkout.user_id is None and not checkout.clerk_id:
        raise MalformedEventError("Checkout session metadata has no user reference")

    user = get_user_by_id(checkout.user_id, db) if checkout.user_id is not None else None
    if not user and checkout.clerk_id:
        user = find_user_by_external_id(checkout.clerk_id, db)
    if not user:
        webhook_logger.warning(
            f"Checkout {checkout.session_id}: no user for userId={checkout.user_id} clerkId={checkout.clerk_id}"
        )
        return _soft_not_found("User not found for checkout session")

    if checkout.customer_id and user.stripe_customer_id != checkout.customer_id:
        if user.stripe_customer_id:
            webhook_logger.warning(
                f"User {user.id} customer changes from {user.stripe_customer_id} to {checkout.customer_id}"
            )
        user.stripe_customer_id = checkout.customer_id
        db.commit()

    if checkout.previous_subscription_ids:
        webhook_logger.info(
            f"User {user.id} had active subscriptions at checkout: {', '.join(checkout.previous_subscription_ids)}"
        )

    # The checkout payload carries no price or period, fetch the subscription itself
    snapshot = gateway.retrieve_subscription(checkout.subscription_id)
    if snapshot is None:
        webhook_logger.warning(f"Checkout {checkout.session_id}: subscription {checkout.subscription_id} not in Stripe")
        return WebhookResult(200, {"received": True, "status": "subscription_not_found"}, "subscription_not_found")

    user = update_user_subscription(user.clerk_id, snapshot.price_id, snapshot.id, snapshot.current_period_end, db)
    return WebhookResult(
        200,
        {"received": True, "status": "subscription_updated", "tier": user.tier.value, "credits": user.credits},
        "subscription_updated"
    )


def _superseded(user, snapshot, reason: str) -> WebhookResult:
    recorded = user.subscription.stripe_subscription_id
    webhook_logger.info(
        f"Ignoring subscription {snapshot.id} for user {user.id}: {reason}, recorded subscription is {recorded}"
    )
    return WebhookResult(
        200,
        {"received": True, "status": "superseded",
         "message": f"Subscription {snapshot.id} is not the user's current one"},
        "superseded"
    )


def _tracks_other_subscription(user, subscription_id: str) -> bool:
    """True when the user's row is bound to a different Stripe subscription"""
    row = user.subscription
    return row is not None and row.stripe_subscription_id != subscription_id


def _recorded_subscription_is_live(user, gateway) -> bool:
    row = user.subscription
    if row.status == SubscriptionStatus.EXPIRED:
        return False
    live = gateway.retrieve_subscription(row.stripe_subscription_id)
    return live is not None and live.is_active


def handle_subscription_updated(data: Any, gateway, db: Session) -> WebhookResult:
    snapshot = parse_subscription(data)
    user = find_user_by_subscription(snapshot.id, db, customer_id=snapshot.customer_id)
    if not user:
        return _soft_not_found(f"User not found for subscription {snapshot.id}")

    # Only take over the row once the recorded subscription has ended in Stripe
    if _tracks_other_subscription(user, snapshot.id) and _recorded_subscription_is_live(user, gateway):
        return _superseded(user, snapshot, "recorded subscription is still active")

    if snapshot.cancel_at_period_end:
        user = mark_cancellation_pending(
            user, snapshot.id, snapshot.price_id, snapshot.current_period_end, db,
            canceled_at=snapshot.canceled_at
        )
        return WebhookResult(
            200,
            {"received": True, "status": "cancellation_pending", "tier": user.tier.value, "credits": user.credits},
            "cancellation_pending"
        )

    user = update_user_subscription(user.clerk_id, snapshot.price_id, snapshot.id, snapshot.current_period_end, db)
    return WebhookResult(
        200,
        {"received": True, "status": "subscription_updated", "tier": user.tier.value, "credits": user.credits},
        "subscription_updated"
    )


def handle_subscription_deleted(data: Any, gateway, db: Session) -> WebhookResult:
    snapshot = parse_subscription(data)
    user = find_user_by_subscription(snapshot.id, db, customer_id=snapshot.customer_id)
    if not user:
        return _soft_not_found(f"User not found for subscription {snapshot.id}")

    if _tracks_other_subscription(user, snapshot.id):
        return _superseded(user, snapshot, "deleted subscription is not the recorded one")

    user = downgrade_to_free(user.id, db, canceled_at=snapshot.canceled_at)
    return WebhookResult(
        200,
        {"received": True, "status": "downgraded", "tier": user.tier.value, "credits": user.credits},
        "downgraded"
    )


def handle_subscription_created(data: Any, gateway, db: Session) -> WebhookResult:
    # State is established by checkout.session.completed; acknowledge only
    snapshot = parse_subscription(data)
    user = find_user_by_subscription(snapshot.id, db, customer_id=snapshot.customer_id)
    if user:
        webhook_logger.info(f"Subscription {snapshot.id} created for user {user.id}")
    else:
        webhook_logger.info(f"Subscription {snapshot.id} created for unknown customer {snapshot.customer_id}")
    return WebhookResult(200, {"received": True, "status": "acknowledged"}, "acknowledged")


STRIPE_HANDLERS: Dict[str, Callable[[Any, Any, Session], WebhookResult]] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "customer.subscription.created": handle_subscription_created,
}


def process_stripe_webhook(payload: bytes, signature: Optional[str], gateway, db: Session) -> WebhookResult:
    """Verify a Stripe delivery, dispatch it by type, and record the outcome in the event log.

    Verification happens before anything touches the store. Redelivery of an
    event that was already handled returns 200 without side effects; failed
    attempts are logged but stay unprocessed so Stripe's retry can succeed.
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Stripe webhook secret not configured")
        webhook_events_counter.labels(provider="stripe", event_type="unknown", outcome="not_configured").inc()
        return WebhookResult(500, {"error": "Webhook secret not configured"}, "not_configured")

    if not signature:
        security_logger.warning("Stripe webhook received without signature header")
        webhook_events_counter.labels(provider="stripe", event_type="unknown", outcome="invalid_signature").inc()
        return WebhookResult(400, {"error": "Missing stripe-signature header"}, "invalid_signature")

    try:
        event = gateway.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
    except WebhookVerificationError as e:
        security_logger.warning(f"Stripe webhook verification failed: {e}")
        webhook_events_counter.labels(provider="stripe", event_type="unknown", outcome="invalid_signature").inc()
        return WebhookResult(400, {"error": str(e)}, "invalid_signature")

    event_id = event.get("id") if isinstance(event, dict) else None
    event_type = event.get("type") if isinstance(event, dict) else None
    if not event_id or not event_type:
        webhook_events_counter.labels(provider="stripe", event_type="unknown", outcome="malformed").inc()
        return WebhookResult(400, {"error": "Event has no id or type"}, "malformed")

    stripe_event = log_stripe_event(event_id, event_type, event, db)
    if stripe_event.processed:
        webhook_logger.info(f"Stripe event {event_id} already processed")
        webhook_events_counter.labels(provider="stripe", event_type=event_type, outcome="already_processed").inc()
        return WebhookResult(200, {"received": True, "status": "already_processed"}, "already_processed")

    handler = STRIPE_HANDLERS.get(event_type)
    if handler is None:
        webhook_logger.info(f"Stripe event {event_id} of type {event_type} ignored")
        record_stripe_event_result(event_id, db, outcome="ignored")
        webhook_events_counter.labels(provider="stripe", event_type=event_type, outcome="ignored").inc()
        return WebhookResult(200, {"received": True, "status": "ignored", "message": f"Unhandled event type: {event_type}"}, "ignored")

    data = (event.get("data") or {}).get("object")
    try:
        result = handler(data, gateway, db)
    except MalformedEventError as e:
        db.rollback()
        webhook_logger.warning(f"Stripe event {event_id} ({event_type}) is malformed: {e}")
        record_stripe_event_result(event_id, db, outcome="malformed", processed=False, error_message=str(e))
        webhook_events_counter.labels(provider="stripe", event_type=event_type, outcome="malformed").inc()
        return WebhookResult(400, {"error": str(e)}, "malformed")
    except Exception as e:
        db.rollback()
        webhook_logger.error(f"Error processing Stripe event {event_id} ({event_type}): {e}", exc_info=True)
        record_stripe_event_result(event_id, db, outcome="error", processed=False, error_message=str(e))
        webhook_events_counter.labels(provider="stripe", event_type=event_type, outcome="error").inc()
        return WebhookResult(500, {"error": "Webhook processing failed"}, "error")

    record_stripe_event_result(event_id, db, outcome=result.outcome)
    webhook_events_counter.labels(provider="stripe", event_type=event_type, outcome=result.outcome).inc()
    webhook_logger.info(f"Processed Stripe event {event_id} of type {event_type}: {result.outcome}")
    return result


# ============================================================================
# CLERK (SVIX) WEBHOOKS
# ============================================================================

def _decode_signing_secret(secret: str) -> bytes:
    raw = secret[len("whsec_"):] if secret.startswith("whsec_") else secret
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise WebhookNotConfiguredError("Clerk webhook secret is not valid base64") from e


def verify_svix_signature(
    payload: bytes,
    svix_id: Optional[str],
    svix_timestamp: Optional[str],
    svix_signature: Optional[str],
    secret: str,
    now: Optional[float] = None
) -> None:
    """Verify a Svix-signed delivery, raising ``WebhookVerificationError`` on any mismatch.

    Signed content is ``{id}.{timestamp}.{body}``, HMAC-SHA256 with the
    base64-decoded secret (the part after ``whsec_``). The signature header
    may carry several space-separated ``v1,<base64>`` candidates.
    """
    if not svix_id or not svix_timestamp or not svix_signature:
        raise WebhookVerificationError("Missing svix headers")

    try:
        timestamp = int(svix_timestamp)
    except ValueError as e:
        raise WebhookVerificationError("Invalid svix-timestamp header") from e

    current = time.time() if now is None else now
    if abs(current - timestamp) > settings.WEBHOOK_TOLERANCE_SECONDS:
        raise WebhookVerificationError("Message timestamp outside tolerance")

    key = _decode_signing_secret(secret)
    signed_payload = svix_id.encode("utf-8") + b"." + svix_timestamp.encode("utf-8") + b"." + payload
    expected_signature = base64.b64encode(hmac.new(key, signed_payload, hashlib.sha256).digest()).decode("utf-8")

    for sig_part in svix_signature.split(" "):
        version, _, provided_signature = sig_part.partition(",")
        if version != "v1" or not provided_signature:
            continue
        if hmac.compare_digest(expected_signature, provided_signature):
            return
    raise WebhookVerificationError("No matching signature found")


def process_identity_webhook(payload: bytes, headers: Mapping[str, str], db: Session) -> WebhookResult:
    """Verify a Clerk delivery and apply user.created / user.updated / user.deleted"""
    secret = settings.CLERK_WEBHOOK_SECRET
    if not secret:
        logger.error("Clerk webhook secret not configured")
        webhook_events_counter.labels(provider="clerk", event_type="unknown", outcome="not_configured").inc()
        return WebhookResult(500, {"error": "Webhook secret not configured"}, "not_configured")

    try:
        verify_svix_signature(
            payload,
            headers.get("svix-id"),
            headers.get("svix-timestamp"),
            headers.get("svix-signature"),
            secret
        )
    except WebhookNotConfiguredError as e:
        logger.error(str(e))
        webhook_events_counter.labels(provider="clerk", event_type="unknown", outcome="not_configured").inc()
        return WebhookResult(500, {"error": "Webhook secret not configured"}, "not_configured")
    except WebhookVerificationError as e:
        security_logger.warning(f"Clerk webhook verification failed: {e}")
        webhook_events_counter.labels(provider="clerk", event_type="unknown", outcome="invalid_signature").inc()
        return WebhookResult(400, {"error": str(e)}, "invalid_signature")

    try:
        event = parse_identity_event(json.loads(payload))
    except (ValueError, MalformedEventError) as e:
        webhook_events_counter.labels(provider="clerk", event_type="unknown", outcome="malformed").inc()
        return WebhookResult(400, {"error": f"Invalid event: {e}"}, "malformed")

    try:
        if event.type in ("user.created", "user.updated"):
            if not event.id or not event.email:
                result = WebhookResult(400, {"error": "Event is missing user id or email"}, "malformed")
            else:
                user = ensure_user_exists(event.id, event.email, db)
                status_code = 201 if event.type == "user.created" else 200
                result = WebhookResult(status_code, {"success": True, "userId": user.id}, "synced")
        elif event.type == "user.deleted":
            if not event.id:
                result = WebhookResult(400, {"error": "Event is missing user id"}, "malformed")
            elif delete_user_by_external_id(event.id, db):
                result = WebhookResult(200, {"success": True, "deleted": True}, "deleted")
            else:
                result = WebhookResult(200, {"success": True, "deleted": False}, "user_not_found")
        else:
            result = WebhookResult(200, {"message": f"Unhandled event type: {event.type}"}, "ignored")
    except Exception as e:
        db.rollback()
        webhook_logger.error(f"Error processing Clerk event {event.type} for {event.id}: {e}", exc_info=True)
        webhook_events_counter.labels(provider="clerk", event_type=event.type, outcome="error").inc()
        return WebhookResult(500, {"error": "Webhook processing failed"}, "error")

    webhook_events_counter.labels(provider="clerk", event_type=event.type, outcome=result.outcome).inc()
    webhook_logger.info(f"Clerk event {event.type} for {event.id}: {result.outcome}")
    return result
