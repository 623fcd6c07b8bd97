"""Typed records parsed from provider webhook payloads.

Stripe and Clerk payloads are loosely typed: fields move between API versions
(``current_period_end`` lives on the subscription in older versions and on the
subscription items in newer ones), ids arrive either as strings or as expanded
objects, and metadata is free-form. Everything that probes optional fields
happens here, so handlers only ever see these models with fallbacks applied.
"""
import calendar
import logging
import math
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from pixelbill.core.errors import MalformedEventError

logger = logging.getLogger(__name__)

ACTIVE_STRIPE_STATUSES = ("active",)


def get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from a Stripe object, plain dict, or attribute-style object.

    Dict access comes first: StripeObject subclasses dict, and attribute access
    would resolve keys such as ``items`` to dict methods.
    """
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, default)
    return default if value is None else value


def _object_id(value: Any) -> Optional[str]:
    """Ids arrive as plain strings or as expanded objects carrying an ``id``"""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    found = get_stripe_value(value, "id")
    return found if isinstance(found, str) and found else None


def as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes read back from the store as UTC"""
    if moment is None or moment.tzinfo is not None:
        return moment
    return moment.replace(tzinfo=timezone.utc)


def one_month_from(moment: datetime) -> datetime:
    """Same day next month, clamped to the month's last day"""
    year = moment.year + (1 if moment.month == 12 else 0)
    month = 1 if moment.month == 12 else moment.month + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _timestamp_or_none(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value) and value > 0:
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return None


def period_end_from(timestamp: Any, now: Optional[datetime] = None) -> datetime:
    """Convert a provider epoch timestamp into an aware datetime.

    Missing or unusable values fall back to one month from now.
    """
    moment = _timestamp_or_none(timestamp)
    if moment is not None:
        return moment
    fallback = one_month_from(now or datetime.now(timezone.utc))
    logger.warning(f"Invalid period end timestamp {timestamp!r}, falling back to {fallback.isoformat()}")
    return fallback


def _first_item(subscription: Any) -> Any:
    items = get_stripe_value(subscription, "items")
    data = get_stripe_value(items, "data") if items is not None else None
    if data:
        try:
            return data[0]
        except (IndexError, KeyError, TypeError):
            return None
    return None


class SubscriptionSnapshot(BaseModel):
    """Provider-side facts about one subscription"""
    id: str
    customer_id: Optional[str] = None
    status: str = "active"
    price_id: Optional[str] = None
    current_period_end: datetime
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    period_end_is_fallback: bool = False

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STRIPE_STATUSES


def parse_subscription(obj: Any, now: Optional[datetime] = None) -> SubscriptionSnapshot:
    """Map a Stripe subscription object (event payload or API response) to a snapshot"""
    sub_id = _object_id(get_stripe_value(obj, "id"))
    if not sub_id:
        raise MalformedEventError("Subscription payload has no id")

    item = _first_item(obj)
    price_id = _object_id(get_stripe_value(item, "price")) if item is not None else None

    # Older API versions carry the period on the subscription, newer ones on each item
    raw_end = get_stripe_value(obj, "current_period_end")
    if raw_end is None and item is not None:
        raw_end = get_stripe_value(item, "current_period_end")
    is_fallback = _timestamp_or_none(raw_end) is None

    return SubscriptionSnapshot(
        id=sub_id,
        customer_id=_object_id(get_stripe_value(obj, "customer")),
        status=str(get_stripe_value(obj, "status", "active")),
        price_id=price_id,
        current_period_end=period_end_from(raw_end, now=now),
        cancel_at_period_end=get_stripe_value(obj, "cancel_at_period_end", False) is True,
        canceled_at=_timestamp_or_none(get_stripe_value(obj, "canceled_at")),
        period_end_is_fallback=is_fallback,
    )


class CheckoutCompleted(BaseModel):
    """checkout.session.completed, reduced to the cross-references we need"""
    session_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    user_id: Optional[int] = None
    clerk_id: Optional[str] = None
    previous_subscription_ids: List[str] = Field(default_factory=list)


def _parse_user_id(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric userId in checkout metadata: {value!r}")
        return None


def parse_checkout_session(obj: Any) -> CheckoutCompleted:
    """Map a Stripe checkout session to the fields the completion handler uses"""
    metadata = get_stripe_value(obj, "metadata", {}) or {}
    previous = get_stripe_value(metadata, "previous_subscription_ids") or ""
    return CheckoutCompleted(
        session_id=_object_id(get_stripe_value(obj, "id")),
        subscription_id=_object_id(get_stripe_value(obj, "subscription")),
        customer_id=_object_id(get_stripe_value(obj, "customer")),
        user_id=_parse_user_id(get_stripe_value(metadata, "userId") or get_stripe_value(metadata, "user_id")),
        clerk_id=get_stripe_value(metadata, "clerkId") or get_stripe_value(metadata, "clerk_id") or None,
        previous_subscription_ids=[s for s in str(previous).split(",") if s],
    )


class IdentityUserEvent(BaseModel):
    """Clerk user.* event"""
    type: str
    id: Optional[str] = None
    email: Optional[str] = None


def _primary_email(data: dict) -> Optional[str]:
    addresses = data.get("email_addresses") or []
    primary_id = data.get("primary_email_address_id")
    if primary_id:
        for address in addresses:
            if isinstance(address, dict) and address.get("id") == primary_id and address.get("email_address"):
                return address["email_address"]
    for address in addresses:
        if isinstance(address, dict) and address.get("email_address"):
            return address["email_address"]
    return None


def parse_identity_event(event: Any) -> IdentityUserEvent:
    """Map a verified Clerk webhook body to an IdentityUserEvent"""
    if not isinstance(event, dict) or not event.get("type"):
        raise MalformedEventError("Identity event has no type")
    data = event.get("data") or {}
    if not isinstance(data, dict):
        raise MalformedEventError("Identity event data is not an object")
    return IdentityUserEvent(
        type=event["type"],
        id=data.get("id") or None,
        email=_primary_email(data),
    )
