"""Enumerations stored on the user and subscription rows"""
import enum


class EntitlementTier(str, enum.Enum):
    """Feature/credit allowance a user is entitled to"""
    FREE = "FREE"
    STARTER = "STARTER"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


class SubscriptionStatus(str, enum.Enum):
    """Local lifecycle of a billing-provider subscription"""
    ACTIVE = "ACTIVE"
    CANCELED_AT_PERIOD_END = "CANCELED_AT_PERIOD_END"
    EXPIRED = "EXPIRED"
