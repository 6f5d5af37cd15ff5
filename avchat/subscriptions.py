"""Admin view and maintenance of the subscription fields kept in user preferences."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from . import store
from .preferences import (
    FREE_CREDITS_KEY,
    LAST_RESET_DATE_KEY,
    PREMIUM_CREDITS_KEY,
    SUBSCRIPTION_AMOUNT_KEY,
    SUBSCRIPTION_CANCEL_AT_END_KEY,
    SUBSCRIPTION_CURRENCY_KEY,
    SUBSCRIPTION_CUSTOMER_ID_KEY,
    SUBSCRIPTION_ID_KEY,
    SUBSCRIPTION_LAST_PAYMENT_KEY,
    SUBSCRIPTION_NEXT_BILLING_DATE_KEY,
    SUBSCRIPTION_PERIOD_END_KEY,
    SUBSCRIPTION_RETRY_COUNT_KEY,
    SUBSCRIPTION_STATUS_KEY,
    SUBSCRIPTION_TIER_KEY,
    SUBSCRIPTION_UPDATED_AT_KEY,
    SUPER_PREMIUM_CREDITS_KEY,
    TIER_KEY,
    UserAccount,
    merge_preferences,
    parse_iso_datetime,
    to_iso,
)
from .reset_policy import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_EXPIRED,
    STATUS_FAILED,
    normalize_status,
)
from .tiers import (
    SUBSCRIPTION_TIER_FREE,
    SUBSCRIPTION_TIER_PREMIUM,
    TIER_FREE,
    TIER_PREMIUM,
    VALID_TIERS,
    normalize_tier,
)


logger = logging.getLogger(__name__)

VALID_STATUSES = (STATUS_ACTIVE, STATUS_CANCELLED, STATUS_EXPIRED, STATUS_FAILED)
VALID_SUBSCRIPTION_TIERS = (SUBSCRIPTION_TIER_FREE, SUBSCRIPTION_TIER_PREMIUM)
UNINITIALIZED_TIER = "uninitialized"
CREDIT_TOTAL_KEYS = {
    FREE_CREDITS_KEY: "totalFreeCredits",
    PREMIUM_CREDITS_KEY: "totalPremiumCredits",
    SUPER_PREMIUM_CREDITS_KEY: "totalSuperPremiumCredits",
}


def _now_utc() -> datetime:
    """Return current UTC time (wrapper to simplify deterministic tests)."""
    return datetime.now(timezone.utc)


class SubscriptionUpdate(BaseModel):
    """Admin edit of a user's subscription fields; unset fields keep their stored value."""

    model_config = ConfigDict(populate_by_name=True)

    tier: str | None = None
    status: str | None = None
    customer_id: str | None = Field(default=None, alias="customerId")
    subscription_id: str | None = Field(default=None, alias="subscriptionId")
    current_period_end: datetime | None = Field(default=None, alias="currentPeriodEnd")
    cancel_at_period_end: bool | None = Field(default=None, alias="cancelAtPeriodEnd")
    currency: str | None = None
    amount: int | None = Field(default=None, ge=0)
    last_payment_id: str | None = Field(default=None, alias="lastPaymentId")
    retry_count: int | None = Field(default=None, ge=0, alias="retryCount")

    @field_validator("tier", mode="before")
    @classmethod
    def _validate_tier(cls, value: Any) -> str | None:
        if value is None:
            return None
        normalized = str(value).strip().upper()
        if normalized not in VALID_SUBSCRIPTION_TIERS:
            raise ValueError("tier must be FREE or PREMIUM")
        return normalized

    @field_validator("status", mode="before")
    @classmethod
    def _validate_status(cls, value: Any) -> str | None:
        if value is None:
            return None
        normalized = normalize_status(value)
        if normalized not in VALID_STATUSES:
            raise ValueError(f"status must be one of {', '.join(VALID_STATUSES)}")
        return normalized

    @field_validator("current_period_end", mode="before")
    @classmethod
    def _validate_period_end(cls, value: Any) -> datetime | None:
        if value is None:
            return None
        parsed = parse_iso_datetime(value)
        if parsed is None:
            raise ValueError("currentPeriodEnd must be an ISO-8601 timestamp")
        return parsed

    @field_validator("currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper() or None
        return value

    def as_preferences(self) -> Dict[str, Any]:
        """Preference fields for every value the admin supplied."""
        fields = {
            SUBSCRIPTION_TIER_KEY: self.tier,
            SUBSCRIPTION_STATUS_KEY: self.status,
            SUBSCRIPTION_CUSTOMER_ID_KEY: self.customer_id,
            SUBSCRIPTION_ID_KEY: self.subscription_id,
            SUBSCRIPTION_CANCEL_AT_END_KEY: self.cancel_at_period_end,
            SUBSCRIPTION_CURRENCY_KEY: self.currency,
            SUBSCRIPTION_AMOUNT_KEY: self.amount,
            SUBSCRIPTION_LAST_PAYMENT_KEY: self.last_payment_id,
            SUBSCRIPTION_RETRY_COUNT_KEY: self.retry_count,
        }
        if self.current_period_end is not None:
            # The reconciler reads the next billing date first, so both move together.
            period_end = to_iso(self.current_period_end)
            fields[SUBSCRIPTION_PERIOD_END_KEY] = period_end
            fields[SUBSCRIPTION_NEXT_BILLING_DATE_KEY] = period_end
        return {key: value for key, value in fields.items() if value is not None}


def has_subscription(account: UserAccount) -> bool:
    """True when the account carries subscription fields or a premium tier."""
    snapshot = account.snapshot
    return snapshot.subscription_tier is not None or normalize_tier(snapshot.tier) == TIER_PREMIUM


def subscription_view(account: UserAccount) -> Dict[str, Any]:
    """Admin-facing subscription row with defaults filled in from the account tier."""
    preferences = account.preferences
    snapshot = account.snapshot
    is_premium = normalize_tier(snapshot.tier) == TIER_PREMIUM
    default_tier = SUBSCRIPTION_TIER_PREMIUM if is_premium else SUBSCRIPTION_TIER_FREE
    default_status = STATUS_ACTIVE if is_premium else STATUS_EXPIRED

    return {
        "subscription": {
            "tier": snapshot.subscription_tier or default_tier,
            "status": normalize_status(snapshot.subscription_status) or default_status,
            "customerId": snapshot.subscription_customer_id,
            "subscriptionId": snapshot.subscription_id,
            "currentPeriodEnd": preferences.get(SUBSCRIPTION_PERIOD_END_KEY),
            "nextBillingDate": preferences.get(SUBSCRIPTION_NEXT_BILLING_DATE_KEY),
            "cancelAtPeriodEnd": bool(snapshot.subscription_cancel_at_end),
            "currency": preferences.get(SUBSCRIPTION_CURRENCY_KEY),
            "amount": preferences.get(SUBSCRIPTION_AMOUNT_KEY),
            "lastPaymentId": snapshot.subscription_last_payment,
            "retryCount": snapshot.subscription_retry_count or 0,
            "updatedAt": preferences.get(SUBSCRIPTION_UPDATED_AT_KEY),
        },
        "preferences": {
            "userId": account.id,
            "tier": normalize_tier(snapshot.tier),
            "freeCredits": snapshot.free_credits,
            "premiumCredits": snapshot.premium_credits,
            "superPremiumCredits": snapshot.super_premium_credits,
            "lastResetDate": preferences.get(LAST_RESET_DATE_KEY),
        },
        "user": {
            "id": account.id,
            "email": account.email,
            "name": account.display_name,
            "registration": account.registered_at,
            "status": account.status,
        },
    }


def list_subscriptions(accounts: Iterable[UserAccount]) -> List[Dict[str, Any]]:
    return [subscription_view(account) for account in accounts if has_subscription(account)]


def tier_stats(accounts: Iterable[UserAccount]) -> Dict[str, Any]:
    """
    Count accounts per stored tier and total their remaining credits.

    Accounts without a ``tier`` key count as uninitialized; unrecognized tier
    text is left out of the distribution. Only non-negative numeric counters
    are summed, so unlimited (-1) allotments do not reduce the totals.
    """
    distribution = {tier: 0 for tier in (*VALID_TIERS, UNINITIALIZED_TIER)}
    credits = {total_key: 0 for total_key in CREDIT_TOTAL_KEYS.values()}
    total_users = 0
    verified_users = 0

    for account in accounts:
        total_users += 1
        if account.email_verified:
            verified_users += 1

        stored_tier = account.snapshot.tier
        tier = stored_tier.lower() if stored_tier else UNINITIALIZED_TIER
        if tier in distribution:
            distribution[tier] += 1

        for preference_key, total_key in CREDIT_TOTAL_KEYS.items():
            value = account.preferences.get(preference_key)
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
                credits[total_key] += value

    return {
        "totalUsers": total_users,
        "verifiedUsers": verified_users,
        "unverifiedUsers": total_users - verified_users,
        "tiers": distribution,
        "credits": credits,
    }


async def update_subscription(
    user_id: str,
    changes: SubscriptionUpdate,
    *,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Overlay an admin's subscription edits on the stored bag in one write."""
    current_time = now or _now_utc()
    account = await store.get_user(user_id)

    updates = {
        **changes.as_preferences(),
        SUBSCRIPTION_UPDATED_AT_KEY: to_iso(current_time),
    }
    merged = merge_preferences(account.preferences, updates)
    await store.update_preferences(user_id, merged)
    logger.info("Admin updated subscription for user %s: %s", user_id, sorted(updates))
    return merged


async def cancel_subscription(
    user_id: str,
    *,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Drop a user to the free tier and mark their subscription cancelled."""
    current_time = now or _now_utc()
    account = await store.get_user(user_id)

    updates = {
        TIER_KEY: TIER_FREE,
        SUBSCRIPTION_STATUS_KEY: STATUS_CANCELLED,
        SUBSCRIPTION_CANCEL_AT_END_KEY: True,
        SUBSCRIPTION_UPDATED_AT_KEY: to_iso(current_time),
    }
    merged = merge_preferences(account.preferences, updates)
    await store.update_preferences(user_id, merged)
    logger.info("Admin cancelled subscription for user %s", user_id)
    return merged
