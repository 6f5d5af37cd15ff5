"""Tier catalog: credit allotments granted per account tier."""

from typing import Any, Dict, NamedTuple


TIER_FREE = "free"
TIER_PREMIUM = "premium"
TIER_ADMIN = "admin"
VALID_TIERS = (TIER_FREE, TIER_PREMIUM, TIER_ADMIN)

# Provider-side subscription tier names (independent of the account tier)
SUBSCRIPTION_TIER_FREE = "FREE"
SUBSCRIPTION_TIER_PREMIUM = "PREMIUM"

UNLIMITED_CREDITS = -1


class CreditAllotment(NamedTuple):
    """Credit counters granted by a tier on every reset."""

    free_credits: int
    premium_credits: int
    super_premium_credits: int

    def as_preferences(self) -> Dict[str, int]:
        """Return the counters keyed by their preference names."""
        return {
            "freeCredits": self.free_credits,
            "premiumCredits": self.premium_credits,
            "superPremiumCredits": self.super_premium_credits,
        }


FREE_ALLOTMENT = CreditAllotment(200, 20, 2)
PREMIUM_ALLOTMENT = CreditAllotment(1500, 600, 30)
ADMIN_ALLOTMENT = CreditAllotment(UNLIMITED_CREDITS, UNLIMITED_CREDITS, UNLIMITED_CREDITS)


def normalize_tier(value: Any) -> str:
    """Normalize tier text to a known tier name, defaulting to free."""
    if not isinstance(value, str):
        return TIER_FREE
    normalized = value.strip().lower()
    if normalized in VALID_TIERS:
        return normalized
    return TIER_FREE


def allotment_for(tier: Any) -> CreditAllotment:
    """Return the credit allotment for a tier; unknown tiers get the free allotment."""
    normalized_tier = normalize_tier(tier)
    if normalized_tier == TIER_ADMIN:
        return ADMIN_ALLOTMENT
    if normalized_tier == TIER_PREMIUM:
        return PREMIUM_ALLOTMENT
    return FREE_ALLOTMENT


def tier_display_info(tier: Any) -> Dict[str, Any]:
    """Describe a tier for admin listings."""
    normalized_tier = normalize_tier(tier)
    return {
        "name": normalized_tier.capitalize(),
        "limits": allotment_for(normalized_tier).as_preferences(),
        "isUnlimited": normalized_tier == TIER_ADMIN,
    }
