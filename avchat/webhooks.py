"""Dodo Payments webhook processing for subscription lifecycle events."""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, NamedTuple, Sequence

from . import config, store
from .errors import UserNotFoundError, WebhookSignatureError
from .preferences import (
    LAST_RESET_DATE_KEY,
    SUBSCRIPTION_AMOUNT_KEY,
    SUBSCRIPTION_CANCEL_AT_END_KEY,
    SUBSCRIPTION_CURRENCY_KEY,
    SUBSCRIPTION_CUSTOMER_ID_KEY,
    SUBSCRIPTION_ID_KEY,
    SUBSCRIPTION_LAST_EVENT_ID_KEY,
    SUBSCRIPTION_LAST_PAYMENT_KEY,
    SUBSCRIPTION_NEXT_BILLING_DATE_KEY,
    SUBSCRIPTION_PERIOD_END_KEY,
    SUBSCRIPTION_RETRY_COUNT_KEY,
    SUBSCRIPTION_STATUS_KEY,
    SUBSCRIPTION_TIER_KEY,
    SUBSCRIPTION_UPDATED_AT_KEY,
    TIER_KEY,
    PreferenceSnapshot,
    merge_preferences,
    parse_iso_datetime,
    to_iso,
)
from .reset_policy import STATUS_ACTIVE, STATUS_CANCELLED, STATUS_EXPIRED, STATUS_FAILED
from .tiers import (
    SUBSCRIPTION_TIER_FREE,
    SUBSCRIPTION_TIER_PREMIUM,
    TIER_FREE,
    TIER_PREMIUM,
    allotment_for,
)


logger = logging.getLogger(__name__)

EVENT_SUBSCRIPTION_ACTIVE = "subscription.active"
EVENT_SUBSCRIPTION_RENEWED = "subscription.renewed"
EVENT_SUBSCRIPTION_CANCELLED = "subscription.cancelled"
EVENT_SUBSCRIPTION_EXPIRED = "subscription.expired"
EVENT_SUBSCRIPTION_FAILED = "subscription.failed"
EVENT_PAYMENT_SUCCEEDED = "payment.succeeded"
EVENT_PAYMENT_FAILED = "payment.failed"

HANDLED_EVENT_TYPES = {
    EVENT_SUBSCRIPTION_ACTIVE,
    EVENT_SUBSCRIPTION_RENEWED,
    EVENT_SUBSCRIPTION_CANCELLED,
    EVENT_SUBSCRIPTION_EXPIRED,
    EVENT_SUBSCRIPTION_FAILED,
    EVENT_PAYMENT_SUCCEEDED,
    EVENT_PAYMENT_FAILED,
}

# Locations of the app user id inside a payload, in priority order.
USER_ID_PATHS = (
    ("data", "metadata", "userId"),
    ("data", "metadata", "appwriteUserId"),
    ("data", "metadata", "user_id"),
    ("data", "customer", "metadata", "userId"),
    ("data", "customer", "metadata", "appwriteUserId"),
    ("data", "customer", "metadata", "user_id"),
)

SIGNATURE_VERSION = "v1"
SECRET_PREFIX = "whsec_"


class WebhookOutcome(NamedTuple):
    processed: bool
    event_type: str | None
    user_id: str | None = None
    reason: str | None = None


def _now_utc() -> datetime:
    """Return current UTC time (wrapper to simplify deterministic tests)."""
    return datetime.now(timezone.utc)


def _dig(payload: Any, path: Sequence[str]) -> Any:
    """Follow a key path through nested dicts, returning None on any miss."""
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _first_text(*values: Any) -> str | None:
    """Return the first non-blank string among values."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _first_int(*values: Any) -> int | None:
    """Return the first value that converts cleanly to an integer."""
    for value in values:
        if value is None or isinstance(value, bool):
            continue
        try:
            return int(value)
        except (TypeError, ValueError, OverflowError):
            continue
    return None


def _normalize_timestamp(value: Any) -> str | None:
    """Convert ISO text or unix seconds into a stored ISO timestamp.

    Out-of-range epochs (for example milliseconds) are treated as absent.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        try:
            return to_iso(datetime.fromtimestamp(value, tz=timezone.utc))
        except (ValueError, OverflowError, OSError):
            return None
    parsed = parse_iso_datetime(value)
    if parsed is None:
        return None
    return to_iso(parsed)


def extract_user_id(payload: Any) -> str | None:
    """Resolve the app user id from a webhook payload, or None if absent."""
    for path in USER_ID_PATHS:
        user_id = _first_text(_dig(payload, path))
        if user_id:
            return user_id
    return None


def _customer_id(data: Dict[str, Any]) -> str | None:
    customer = data.get("customer")
    customer_fields = customer if isinstance(customer, dict) else {}
    return _first_text(
        customer_fields.get("customer_id"),
        customer_fields.get("id"),
        customer if isinstance(customer, str) else None,
        data.get("customer_id"),
    )


def _period_end(data: Dict[str, Any]) -> str | None:
    for key in ("next_billing_date", "current_period_end", "period_end"):
        normalized = _normalize_timestamp(data.get(key))
        if normalized:
            return normalized
    return None


def _subscription_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    """Provider identifiers and billing details carried by subscription events."""
    fields: Dict[str, Any] = {}

    customer_id = _customer_id(data)
    if customer_id:
        fields[SUBSCRIPTION_CUSTOMER_ID_KEY] = customer_id

    subscription_id = _first_text(data.get("subscription_id"), data.get("id"))
    if subscription_id:
        fields[SUBSCRIPTION_ID_KEY] = subscription_id

    period_end = _period_end(data)
    if period_end:
        fields[SUBSCRIPTION_PERIOD_END_KEY] = period_end
        fields[SUBSCRIPTION_NEXT_BILLING_DATE_KEY] = period_end

    currency = _first_text(data.get("billing_currency"), data.get("currency"))
    if currency:
        fields[SUBSCRIPTION_CURRENCY_KEY] = currency.upper()

    amount = _first_int(
        data.get("amount"),
        data.get("recurring_pre_tax_amount"),
        data.get("total_amount"),
    )
    if amount is not None:
        fields[SUBSCRIPTION_AMOUNT_KEY] = amount

    return fields


def _premium_grant(now: datetime) -> Dict[str, Any]:
    return {
        TIER_KEY: TIER_PREMIUM,
        **allotment_for(TIER_PREMIUM).as_preferences(),
        LAST_RESET_DATE_KEY: to_iso(now),
        SUBSCRIPTION_TIER_KEY: SUBSCRIPTION_TIER_PREMIUM,
        SUBSCRIPTION_STATUS_KEY: STATUS_ACTIVE,
        SUBSCRIPTION_CANCEL_AT_END_KEY: False,
        SUBSCRIPTION_RETRY_COUNT_KEY: 0,
    }


def _expiry(now: datetime) -> Dict[str, Any]:
    return {
        TIER_KEY: TIER_FREE,
        **allotment_for(TIER_FREE).as_preferences(),
        LAST_RESET_DATE_KEY: to_iso(now),
        SUBSCRIPTION_TIER_KEY: SUBSCRIPTION_TIER_FREE,
        SUBSCRIPTION_STATUS_KEY: STATUS_EXPIRED,
    }


def build_event_updates(
    event_type: str,
    data: Any,
    preferences: Any,
    now: datetime,
) -> Dict[str, Any] | None:
    """
    Map one lifecycle event onto the preference fields it changes.

    Returns None for event types this service does not act on. The result is
    meant to be merged into the user's current bag in a single write.
    """
    event_data = data if isinstance(data, dict) else {}
    snapshot = PreferenceSnapshot.from_bag(preferences)
    current_retry_count = max(0, snapshot.subscription_retry_count or 0)

    if event_type == EVENT_SUBSCRIPTION_ACTIVE:
        updates = {
            **_subscription_fields(event_data),
            **_premium_grant(now),
        }
    elif event_type == EVENT_SUBSCRIPTION_RENEWED:
        updates = {
            **_subscription_fields(event_data),
            **_premium_grant(now),
        }
        payment_id = _first_text(event_data.get("payment_id"))
        if payment_id:
            updates[SUBSCRIPTION_LAST_PAYMENT_KEY] = payment_id
    elif event_type == EVENT_SUBSCRIPTION_CANCELLED:
        updates = {
            SUBSCRIPTION_STATUS_KEY: STATUS_CANCELLED,
            SUBSCRIPTION_CANCEL_AT_END_KEY: True,
        }
        period_end = _period_end(event_data)
        if period_end:
            updates[SUBSCRIPTION_PERIOD_END_KEY] = period_end
            updates[SUBSCRIPTION_NEXT_BILLING_DATE_KEY] = period_end
    elif event_type == EVENT_SUBSCRIPTION_EXPIRED:
        updates = _expiry(now)
    elif event_type == EVENT_SUBSCRIPTION_FAILED:
        retry_count = current_retry_count + 1
        if retry_count >= config.SUBSCRIPTION_MAX_RETRY_COUNT:
            updates = _expiry(now)
        else:
            updates = {SUBSCRIPTION_STATUS_KEY: STATUS_FAILED}
        updates[SUBSCRIPTION_RETRY_COUNT_KEY] = retry_count
    elif event_type == EVENT_PAYMENT_SUCCEEDED:
        updates = {SUBSCRIPTION_RETRY_COUNT_KEY: 0}
        payment_id = _first_text(event_data.get("payment_id"), event_data.get("id"))
        if payment_id:
            updates[SUBSCRIPTION_LAST_PAYMENT_KEY] = payment_id
        customer_id = _customer_id(event_data)
        if customer_id:
            updates[SUBSCRIPTION_CUSTOMER_ID_KEY] = customer_id
    elif event_type == EVENT_PAYMENT_FAILED:
        updates = {SUBSCRIPTION_RETRY_COUNT_KEY: current_retry_count + 1}
    else:
        return None

    updates[SUBSCRIPTION_UPDATED_AT_KEY] = to_iso(now)
    return updates


async def process_event(
    payload: Any,
    *,
    event_id: str | None = None,
    now: datetime | None = None,
) -> WebhookOutcome:
    """
    Apply one webhook event to the referenced user's preferences.

    Events without a resolvable user, for unknown users, of unhandled types,
    or already applied (same ``event_id``) are acknowledged without writing.
    Store failures propagate so the provider redelivers the event.
    """
    event_type = _first_text(_dig(payload, ("type",)))
    if event_type not in HANDLED_EVENT_TYPES:
        logger.info("Ignoring webhook event type %s", event_type)
        return WebhookOutcome(False, event_type, reason="unhandled event type")

    user_id = extract_user_id(payload)
    if not user_id:
        logger.error("No user ID found in %s webhook", event_type)
        return WebhookOutcome(False, event_type, reason="missing user id")

    try:
        account = await store.get_user(user_id)
    except UserNotFoundError:
        logger.error("Webhook %s references unknown user %s", event_type, user_id)
        return WebhookOutcome(False, event_type, user_id, reason="unknown user")

    if event_id and account.snapshot.subscription_last_event_id == event_id:
        logger.info("Skipping redelivered webhook %s for user %s", event_id, user_id)
        return WebhookOutcome(False, event_type, user_id, reason="duplicate event")

    current_time = now or _now_utc()
    updates = build_event_updates(
        event_type,
        _dig(payload, ("data",)),
        account.preferences,
        current_time,
    )
    if event_id:
        updates[SUBSCRIPTION_LAST_EVENT_ID_KEY] = event_id

    await store.update_preferences(user_id, merge_preferences(account.preferences, updates))
    logger.info(
        "Applied %s for user %s (tier=%s, status=%s)",
        event_type,
        user_id,
        updates.get(TIER_KEY, account.snapshot.tier),
        updates.get(SUBSCRIPTION_STATUS_KEY, account.snapshot.subscription_status),
    )
    return WebhookOutcome(True, event_type, user_id)


def _decode_secret(secret: str) -> bytes:
    """Decode a Standard Webhooks secret into raw HMAC key bytes."""
    raw_secret = secret[len(SECRET_PREFIX):] if secret.startswith(SECRET_PREFIX) else secret
    try:
        return base64.b64decode(raw_secret, validate=True)
    except (binascii.Error, ValueError):
        return raw_secret.encode("utf-8")


def verify_signature(
    body: bytes,
    webhook_id: str | None,
    webhook_timestamp: str | None,
    webhook_signature: str | None,
    secret: str,
    *,
    now_seconds: int | None = None,
) -> None:
    """Verify a Standard Webhooks signature, raising WebhookSignatureError on mismatch."""
    if not webhook_id or not webhook_timestamp or not webhook_signature:
        raise WebhookSignatureError("Missing webhook signature headers.")

    try:
        timestamp = int(webhook_timestamp)
    except ValueError as error:
        raise WebhookSignatureError("Invalid webhook timestamp.") from error

    current_seconds = int(time.time()) if now_seconds is None else now_seconds
    if abs(current_seconds - timestamp) > config.WEBHOOK_TOLERANCE_SECONDS:
        raise WebhookSignatureError("Webhook timestamp outside tolerance.")

    signed_payload = f"{webhook_id}.{timestamp}.".encode("utf-8") + body
    expected = base64.b64encode(
        hmac.new(_decode_secret(secret), signed_payload, hashlib.sha256).digest()
    ).decode("ascii")

    for candidate in webhook_signature.split():
        version, _, signature = candidate.partition(",")
        if version == SIGNATURE_VERSION and hmac.compare_digest(expected, signature):
            return

    raise WebhookSignatureError("Invalid webhook signature.")
