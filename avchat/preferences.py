"""Typed views over the per-user preferences bag and merge helpers."""

from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator


TIER_KEY = "tier"
FREE_CREDITS_KEY = "freeCredits"
PREMIUM_CREDITS_KEY = "premiumCredits"
SUPER_PREMIUM_CREDITS_KEY = "superPremiumCredits"
LAST_RESET_DATE_KEY = "lastResetDate"

SUBSCRIPTION_TIER_KEY = "subscriptionTier"
SUBSCRIPTION_STATUS_KEY = "subscriptionStatus"
SUBSCRIPTION_CUSTOMER_ID_KEY = "subscriptionCustomerId"
SUBSCRIPTION_ID_KEY = "subscriptionId"
SUBSCRIPTION_PERIOD_END_KEY = "subscriptionPeriodEnd"
SUBSCRIPTION_NEXT_BILLING_DATE_KEY = "subscriptionNextBillingDate"
SUBSCRIPTION_CANCEL_AT_END_KEY = "subscriptionCancelAtEnd"
SUBSCRIPTION_RETRY_COUNT_KEY = "subscriptionRetryCount"
SUBSCRIPTION_LAST_PAYMENT_KEY = "subscriptionLastPayment"
SUBSCRIPTION_CURRENCY_KEY = "subscriptionCurrency"
SUBSCRIPTION_AMOUNT_KEY = "subscriptionAmount"
SUBSCRIPTION_UPDATED_AT_KEY = "subscriptionUpdatedAt"
SUBSCRIPTION_LAST_EVENT_ID_KEY = "subscriptionLastEventId"


def _to_int(value: Any) -> int | None:
    """Best-effort integer conversion."""
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _to_text(value: Any) -> str | None:
    """Return stripped text, or None for blanks and non-strings."""
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _to_bool(value: Any) -> bool | None:
    """Best-effort boolean conversion for values stored as JSON or text."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized == "true":
            return True
        if normalized == "false":
            return False
    return None


def parse_iso_datetime(value: Any) -> datetime | None:
    """Best-effort parse for ISO datetime values, normalized to UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        raw_value = value.strip()
        if raw_value.endswith("Z"):
            raw_value = f"{raw_value[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(raw_value)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError:
        # Offsets at year 1 or 9999 fall outside the datetime range once in UTC.
        return None


def to_iso(value: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC string with millisecond precision."""
    utc_value = value.astimezone(timezone.utc)
    return utc_value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class PreferenceSnapshot(BaseModel):
    """Read-only typed view of tier and subscription fields in a preferences bag.

    Malformed values never fail validation; they read as ``None`` so callers
    fall back to defaults. Keys this model does not know about are kept in
    ``model_extra``.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    tier: str | None = Field(default=None, alias=TIER_KEY)
    free_credits: int | None = Field(default=None, alias=FREE_CREDITS_KEY)
    premium_credits: int | None = Field(default=None, alias=PREMIUM_CREDITS_KEY)
    super_premium_credits: int | None = Field(default=None, alias=SUPER_PREMIUM_CREDITS_KEY)
    last_reset_date: datetime | None = Field(default=None, alias=LAST_RESET_DATE_KEY)

    subscription_tier: str | None = Field(default=None, alias=SUBSCRIPTION_TIER_KEY)
    subscription_status: str | None = Field(default=None, alias=SUBSCRIPTION_STATUS_KEY)
    subscription_customer_id: str | None = Field(default=None, alias=SUBSCRIPTION_CUSTOMER_ID_KEY)
    subscription_id: str | None = Field(default=None, alias=SUBSCRIPTION_ID_KEY)
    subscription_period_end: datetime | None = Field(
        default=None, alias=SUBSCRIPTION_PERIOD_END_KEY
    )
    subscription_next_billing_date: datetime | None = Field(
        default=None, alias=SUBSCRIPTION_NEXT_BILLING_DATE_KEY
    )
    subscription_cancel_at_end: bool | None = Field(
        default=None, alias=SUBSCRIPTION_CANCEL_AT_END_KEY
    )
    subscription_retry_count: int | None = Field(default=None, alias=SUBSCRIPTION_RETRY_COUNT_KEY)
    subscription_last_payment: str | None = Field(
        default=None, alias=SUBSCRIPTION_LAST_PAYMENT_KEY
    )
    subscription_last_event_id: str | None = Field(
        default=None, alias=SUBSCRIPTION_LAST_EVENT_ID_KEY
    )

    @field_validator(
        "tier",
        "subscription_tier",
        "subscription_status",
        "subscription_customer_id",
        "subscription_id",
        "subscription_last_payment",
        "subscription_last_event_id",
        mode="before",
    )
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        return _to_text(value)

    @field_validator(
        "free_credits",
        "premium_credits",
        "super_premium_credits",
        "subscription_retry_count",
        mode="before",
    )
    @classmethod
    def _coerce_int(cls, value: Any) -> int | None:
        return _to_int(value)

    @field_validator(
        "last_reset_date",
        "subscription_period_end",
        "subscription_next_billing_date",
        mode="before",
    )
    @classmethod
    def _coerce_datetime(cls, value: Any) -> datetime | None:
        return parse_iso_datetime(value)

    @field_validator("subscription_cancel_at_end", mode="before")
    @classmethod
    def _coerce_bool(cls, value: Any) -> bool | None:
        return _to_bool(value)

    @classmethod
    def from_bag(cls, preferences: Any) -> "PreferenceSnapshot":
        """Build a snapshot from an untyped preferences mapping."""
        if not isinstance(preferences, dict):
            return cls()
        return cls.model_validate(preferences)

    @property
    def extras(self) -> Dict[str, Any]:
        """Keys present in the bag that this view does not interpret."""
        return dict(self.model_extra or {})

    @property
    def billing_date(self) -> datetime | None:
        """End of the current paid period, preferring the next billing date."""
        return self.subscription_next_billing_date or self.subscription_period_end


class UserAccount(BaseModel):
    """A user record as returned by the preferences store."""

    id: str
    email: str = ""
    display_name: str = ""
    email_verified: bool = False
    registered_at: str | None = None
    status: bool = True
    preferences: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("preferences", mode="before")
    @classmethod
    def _coerce_preferences(cls, value: Any) -> Dict[str, Any]:
        if isinstance(value, dict):
            return dict(value)
        return {}

    @classmethod
    def from_appwrite(cls, payload: Dict[str, Any]) -> "UserAccount":
        """Map an Appwrite user document onto an account."""
        email = payload.get("email")
        name = payload.get("name")
        registered_at = payload.get("registration") or payload.get("$createdAt")
        return cls(
            id=str(payload.get("$id") or payload.get("id") or ""),
            email=email if isinstance(email, str) else "",
            display_name=name if isinstance(name, str) else "",
            email_verified=bool(payload.get("emailVerification", False)),
            registered_at=registered_at if isinstance(registered_at, str) else None,
            status=bool(payload.get("status", True)),
            preferences=payload.get("prefs"),
        )

    @property
    def snapshot(self) -> PreferenceSnapshot:
        return PreferenceSnapshot.from_bag(self.preferences)


def merge_preferences(preferences: Any, updates: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay updates on a copy of the bag; no existing key is ever removed."""
    base = dict(preferences) if isinstance(preferences, dict) else {}
    return {
        **base,
        **updates,
    }
