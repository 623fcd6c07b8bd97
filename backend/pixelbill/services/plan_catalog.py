"""Static plan catalog: Stripe price id -> entitlement tier and credit allotment"""
import logging
from typing import Dict, List, NamedTuple, Optional

from pixelbill.core.config import settings
from pixelbill.models.enums import EntitlementTier

logger = logging.getLogger(__name__)

# Credits granted per tier. FREE uses the configured baseline (FREE_TIER_CREDITS).
TIER_CREDITS: Dict[EntitlementTier, int] = {
    EntitlementTier.STARTER: 50,
    EntitlementTier.PRO: 120,
    EntitlementTier.ENTERPRISE: 300,
}


class PlanDetails(NamedTuple):
    tier: EntitlementTier
    credits: int


def baseline_plan() -> PlanDetails:
    """FREE tier with the canonical baseline credit grant"""
    return PlanDetails(EntitlementTier.FREE, settings.FREE_TIER_CREDITS)


def _price_map() -> Dict[str, EntitlementTier]:
    # Read on every call so price ids can be swapped per environment (and patched in tests)
    mapping = {
        settings.STRIPE_PRICE_STARTER: EntitlementTier.STARTER,
        settings.STRIPE_PRICE_PRO: EntitlementTier.PRO,
        settings.STRIPE_PRICE_ENTERPRISE: EntitlementTier.ENTERPRISE,
    }
    mapping.pop("", None)
    return mapping


def plan_details(price_id: Optional[str]) -> PlanDetails:
    """Resolve a price id to its plan. Unknown ids degrade to the FREE baseline, never raise."""
    tier = _price_map().get(price_id) if isinstance(price_id, str) else None
    if tier is None:
        if price_id:
            logger.warning(f"Unknown price id {price_id!r}, treating as FREE")
        return baseline_plan()
    return PlanDetails(tier, TIER_CREDITS[tier])


def is_known_price(price_id: Optional[str]) -> bool:
    """True if the price id maps to a paid tier"""
    return isinstance(price_id, str) and price_id in _price_map()


def list_plans() -> List[Dict]:
    """Paid plans in ascending order, for diagnostics"""
    return [
        {"price_id": price_id, "tier": tier.value, "credits": TIER_CREDITS[tier]}
        for price_id, tier in sorted(_price_map().items(), key=lambda kv: TIER_CREDITS[kv[1]])
    ]
