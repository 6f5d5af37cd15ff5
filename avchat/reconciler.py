"""Credit reconciliation: periodic resets and lapsed-subscription downgrades."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, NamedTuple

from . import config, store
from .preferences import (
    LAST_RESET_DATE_KEY,
    SUBSCRIPTION_STATUS_KEY,
    SUBSCRIPTION_TIER_KEY,
    TIER_KEY,
    PreferenceSnapshot,
    UserAccount,
    merge_preferences,
    to_iso,
)
from .reset_policy import (
    STATUS_CANCELLED,
    STATUS_EXPIRED,
    days_since,
    decide_downgrade,
    is_reset_due,
    normalize_status,
)
from .tiers import SUBSCRIPTION_TIER_FREE, TIER_FREE, allotment_for, normalize_tier


logger = logging.getLogger(__name__)


class ReconcileResult(NamedTuple):
    changed: bool
    preferences: Dict[str, Any]
    tier: str
    downgraded: bool = False
    reason: str | None = None


def _now_utc() -> datetime:
    """Return current UTC time (wrapper to simplify deterministic tests)."""
    return datetime.now(timezone.utc)


def build_reset_updates(tier: Any, now: datetime) -> Dict[str, Any]:
    """Return the preference fields that reset counters to a tier's allotment."""
    return {
        **allotment_for(tier).as_preferences(),
        LAST_RESET_DATE_KEY: to_iso(now),
    }


def reconcile_user(
    account: UserAccount,
    *,
    now: datetime | None = None,
    period_days: int | None = None,
) -> ReconcileResult:
    """
    Decide the next tier state for one account without performing any I/O.

    When the reset period has not elapsed the original preferences are
    returned with ``changed=False``. Otherwise the counters are reset to the
    allotment of the (possibly downgraded) tier, stamped with a single
    timestamp, and merged into a copy of the bag.
    """
    current_time = now or _now_utc()
    reset_period = period_days if period_days is not None else config.CREDIT_RESET_PERIOD_DAYS
    original = dict(account.preferences)
    snapshot = PreferenceSnapshot.from_bag(original)
    working_tier = normalize_tier(snapshot.tier)

    if not is_reset_due(snapshot.last_reset_date, reset_period, current_time):
        return ReconcileResult(False, original, working_tier)

    decision = decide_downgrade(
        snapshot.subscription_status,
        snapshot.subscription_cancel_at_end,
        snapshot.billing_date,
        working_tier,
        current_time,
    )

    updates: Dict[str, Any] = {}
    if decision.should_downgrade:
        working_tier = TIER_FREE
        updates[TIER_KEY] = TIER_FREE
        if normalize_status(snapshot.subscription_status) == STATUS_CANCELLED:
            updates[SUBSCRIPTION_TIER_KEY] = SUBSCRIPTION_TIER_FREE
            updates[SUBSCRIPTION_STATUS_KEY] = STATUS_EXPIRED
    elif snapshot.tier is None:
        updates[TIER_KEY] = working_tier

    updates.update(build_reset_updates(working_tier, current_time))

    return ReconcileResult(
        True,
        merge_preferences(original, updates),
        working_tier,
        decision.should_downgrade,
        decision.reason,
    )


async def reconcile_and_store(
    account: UserAccount,
    *,
    now: datetime | None = None,
) -> ReconcileResult:
    """
    Reconcile one account and persist the result with a single write.

    The account passed in may be a stale listing snapshot; when it looks due
    the user is re-read so the merge starts from the freshest bag available.
    """
    current_time = now or _now_utc()
    preview = reconcile_user(account, now=current_time)
    if not preview.changed:
        return preview

    fresh_account = await store.get_user(account.id)
    result = reconcile_user(fresh_account, now=current_time)
    if not result.changed:
        return result

    await store.update_preferences(account.id, result.preferences)

    elapsed_days = days_since(fresh_account.preferences.get(LAST_RESET_DATE_KEY), current_time)
    if result.downgraded:
        logger.info(
            "Reset user %s and downgraded to %s (%s)",
            account.id,
            result.tier,
            result.reason,
        )
    else:
        logger.info(
            "Reset user %s (%s) - %s days since last reset",
            account.id,
            result.tier,
            "never" if elapsed_days is None else elapsed_days,
        )
    return result


async def reset_user_credits(
    user_id: str,
    *,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Reset a user's credits to their current tier allotment regardless of due date."""
    current_time = now or _now_utc()
    account = await store.get_user(user_id)
    snapshot = account.snapshot
    tier = normalize_tier(snapshot.tier)

    updates = build_reset_updates(tier, current_time)
    if snapshot.tier is None:
        updates[TIER_KEY] = tier

    merged = merge_preferences(account.preferences, updates)
    await store.update_preferences(user_id, merged)
    logger.info("Admin reset credits for user %s (%s)", user_id, tier)
    return merged


async def update_user_tier(
    user_id: str,
    tier: str,
    *,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Move a user to a tier and grant that tier's full allotment."""
    current_time = now or _now_utc()
    normalized_tier = normalize_tier(tier)
    account = await store.get_user(user_id)

    updates = {
        TIER_KEY: normalized_tier,
        **build_reset_updates(normalized_tier, current_time),
    }
    merged = merge_preferences(account.preferences, updates)
    await store.update_preferences(user_id, merged)
    logger.info("Admin updated user %s to tier %s", user_id, normalized_tier)
    return merged
