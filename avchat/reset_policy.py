"""Decisions for periodic credit resets and subscription downgrades.

Both functions are pure: the caller passes the current time, and malformed
inputs resolve toward the cheaper outcome (a reset that is due, a downgrade
to the free tier) rather than raising.
"""

from datetime import datetime
from typing import Any, NamedTuple

from .preferences import parse_iso_datetime
from .tiers import TIER_FREE, normalize_tier


SECONDS_PER_DAY = 86400

STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"
STATUS_FAILED = "failed"

REASON_IMMEDIATE_CANCELLATION = "immediate cancellation"
REASON_PAST_BILLING_DATE = "cancelled, past billing date"
REASON_NO_BILLING_DATE = "cancelled with no billing date on record"
REASON_ALREADY_EXPIRED = "subscription already expired"
REASON_NO_STATUS = "no subscription status on record"


class DowngradeDecision(NamedTuple):
    should_downgrade: bool
    reason: str | None = None


NO_DOWNGRADE = DowngradeDecision(False)


def normalize_status(value: Any) -> str | None:
    """Lowercase trimmed subscription status, or None when absent/blank."""
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized or None


def days_since(last_reset_date: Any, now: datetime) -> int | None:
    """Whole days elapsed since the last reset, or None if it never happened."""
    last_reset = parse_iso_datetime(last_reset_date)
    if last_reset is None:
        return None
    elapsed_seconds = (now - last_reset).total_seconds()
    return int(elapsed_seconds // SECONDS_PER_DAY)


def is_reset_due(last_reset_date: Any, period_days: int, now: datetime) -> bool:
    """Return True when credits have never been reset or the period has elapsed."""
    elapsed_days = days_since(last_reset_date, now)
    if elapsed_days is None:
        return True
    return elapsed_days >= period_days


def decide_downgrade(
    subscription_status: Any,
    subscription_cancel_at_end: Any,
    subscription_next_billing_date: Any,
    current_tier: Any,
    now: datetime,
) -> DowngradeDecision:
    """Decide whether an account must fall back to the free tier.

    Rules are evaluated in order and the first match wins:

    1. cancelled without cancel-at-period-end: downgrade now.
    2. cancelled with cancel-at-period-end: downgrade once the billing date
       has passed, or immediately when no billing date is on record.
    3. expired on a paid tier: downgrade.
    4. no status at all on a paid tier: downgrade.
    5. anything else keeps the current tier.
    """
    status = normalize_status(subscription_status)
    tier = normalize_tier(current_tier)

    if status == STATUS_CANCELLED:
        if subscription_cancel_at_end is not True:
            return DowngradeDecision(True, REASON_IMMEDIATE_CANCELLATION)

        billing_date = parse_iso_datetime(subscription_next_billing_date)
        if billing_date is None:
            return DowngradeDecision(True, REASON_NO_BILLING_DATE)
        if now > billing_date:
            return DowngradeDecision(True, REASON_PAST_BILLING_DATE)
        return NO_DOWNGRADE

    if status == STATUS_EXPIRED and tier != TIER_FREE:
        return DowngradeDecision(True, REASON_ALREADY_EXPIRED)

    if status is None and tier != TIER_FREE:
        return DowngradeDecision(True, REASON_NO_STATUS)

    return NO_DOWNGRADE
