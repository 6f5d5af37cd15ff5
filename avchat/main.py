"""FastAPI backend for the AVChat credits service."""

from fastapi import FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from typing import Any, Dict
from datetime import datetime, timezone
import hmac
import json
import logging

from . import batch, store, subscriptions, webhooks
from .config import (
    ADMIN_SECRET_KEY,
    BULK_DEFAULT_BATCH_SIZE,
    BULK_DEFAULT_MAX_TIME_MS,
    BULK_MAX_BATCH_SIZE,
    BULK_MAX_MAX_TIME_MS,
    BULK_MIN_BATCH_SIZE,
    BULK_MIN_MAX_TIME_MS,
    CORS_ALLOW_ORIGINS,
    DODO_WEBHOOK_SECRET,
    IS_DEVELOPMENT,
    RESET_MAX_TIME_SECONDS,
    configure_logging,
)
from .errors import (
    PreferenceStoreError,
    SweepAlreadyRunningError,
    UserNotFoundError,
    WebhookSignatureError,
)
from .preferences import UserAccount, to_iso
from .reconciler import reset_user_credits, update_user_tier
from .tiers import VALID_TIERS, tier_display_info

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="AVChat Credits API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ACTION_RESET_ALL_USER_LIMITS = "resetAllUserLimits"
ACTION_LOGOUT_ALL_USERS_CHUNKED = "logoutAllUsersChunked"
ACTION_GET_USER_COUNT = "getUserCount"
ACTION_GET_ALL_USERS = "getAllUsers"
ACTION_GET_SWEEP_PROGRESS = "getSweepProgress"
ACTION_GET_SUBSCRIPTIONS = "getSubscriptions"
ACTION_GET_TIER_STATS = "getTierStats"

ACTION_GET_USER_BY_EMAIL = "getUserByEmail"
ACTION_UPDATE_TIER = "updateTier"
ACTION_RESET_CREDITS = "resetCredits"
ACTION_UPDATE_SUBSCRIPTION = "updateSubscription"
ACTION_CANCEL_SUBSCRIPTION = "cancelSubscription"

CRON_RESET_USERS_SHOWN = 10


class BulkOperationRequest(BaseModel):
    """Admin bulk operation request payload."""
    model_config = ConfigDict(populate_by_name=True)

    admin_key: str | None = Field(default=None, alias="adminKey")
    action: str | None = None
    batch_size: int | None = Field(default=None, alias="batchSize")
    max_time: int | None = Field(default=None, alias="maxTime")


class ManageUserRequest(BaseModel):
    """Admin single-user management request payload."""
    model_config = ConfigDict(populate_by_name=True)

    admin_key: str | None = Field(default=None, alias="adminKey")
    action: str | None = None
    email: str | None = None
    user_id: str | None = Field(default=None, alias="userId")
    tier: str | None = None
    subscription: Dict[str, Any] | None = None


def _clamp(value: int | None, default: int, minimum: int, maximum: int) -> int:
    if value is None:
        return default
    return max(minimum, min(int(value), maximum))


def _is_admin_key_valid(candidate: str | None) -> bool:
    """Compare a caller-supplied key against the admin secret in constant time."""
    if not ADMIN_SECRET_KEY or not candidate:
        return False
    return hmac.compare_digest(
        candidate.encode("utf-8"),
        ADMIN_SECRET_KEY.encode("utf-8"),
    )


def _error_response(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, **extra})


def _unauthorized_response() -> JSONResponse:
    return _error_response(401, "Unauthorized")


def _already_running_response(error: SweepAlreadyRunningError) -> JSONResponse:
    return _error_response(
        429,
        "Operation already in progress",
        message=str(error),
        progress=error.progress,
    )


def _serialize_user(account: UserAccount) -> Dict[str, Any]:
    """Admin-facing user row payload."""
    snapshot = account.snapshot
    return {
        "id": account.id,
        "email": account.email,
        "name": account.display_name,
        "emailVerification": account.email_verified,
        "status": account.status,
        "registration": account.registered_at,
        "tier": tier_display_info(snapshot.tier),
        "preferences": account.preferences,
    }


def _summary_details(summary: batch.SweepSummary) -> Dict[str, Any]:
    return {
        "operation": summary.operation,
        "checkedCount": summary.checked_count,
        "affectedCount": summary.affected_count,
        "errorCount": summary.error_count,
        "skippedCount": summary.skipped_count,
        "timeoutReached": summary.timeout_reached,
        "duration": f"{summary.duration_ms}ms",
        "errors": summary.errors[:CRON_RESET_USERS_SHOWN],
    }


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "AVChat Credits API"}


@app.post("/api/admin/bulk-operations")
async def bulk_operations(request: BulkOperationRequest):
    """Run an account-wide admin operation."""
    if not _is_admin_key_valid(request.admin_key):
        logger.warning("Rejected bulk operation %s: invalid admin key", request.action)
        return _unauthorized_response()

    batch_size = _clamp(
        request.batch_size,
        BULK_DEFAULT_BATCH_SIZE,
        BULK_MIN_BATCH_SIZE,
        BULK_MAX_BATCH_SIZE,
    )
    max_time_ms = _clamp(
        request.max_time,
        BULK_DEFAULT_MAX_TIME_MS,
        BULK_MIN_MAX_TIME_MS,
        BULK_MAX_MAX_TIME_MS,
    )

    try:
        if request.action == ACTION_RESET_ALL_USER_LIMITS:
            summary = await batch.run_reset_sweep(
                batch_size=batch_size,
                max_time_seconds=max_time_ms / 1000,
            )
            return {
                "success": True,
                "message": (
                    f"Reset {summary.affected_count} of {summary.checked_count} users"
                    + (" (timeout reached)" if summary.timeout_reached else "")
                ),
                "details": {
                    **_summary_details(summary),
                    "resetCount": summary.affected_count,
                    "resetUsers": summary.affected_users[:CRON_RESET_USERS_SHOWN],
                },
            }

        if request.action == ACTION_LOGOUT_ALL_USERS_CHUNKED:
            summary = await batch.run_logout_sweep(
                batch_size=batch_size,
                max_time_seconds=max_time_ms / 1000,
            )
            return {
                "success": True,
                "message": (
                    f"Processed {summary.checked_count} users, "
                    f"logged out {summary.affected_count} users"
                ),
                "details": _summary_details(summary),
            }

        if request.action == ACTION_GET_USER_COUNT:
            total_users = await store.count_users()
            return {
                "success": True,
                "message": f"Found {total_users} users",
                "details": {"totalUsers": total_users},
            }

        if request.action == ACTION_GET_ALL_USERS:
            accounts = await store.list_all_users()
            return {
                "success": True,
                "message": f"Loaded {len(accounts)} users",
                "details": {"users": [_serialize_user(account) for account in accounts]},
            }

        if request.action == ACTION_GET_SWEEP_PROGRESS:
            return {
                "success": True,
                "message": "Sweep running" if batch.SWEEP_LOCK.held else "No sweep running",
                "details": batch.SWEEP_PROGRESS.snapshot(),
            }

        if request.action == ACTION_GET_SUBSCRIPTIONS:
            accounts = await store.list_all_users()
            rows = subscriptions.list_subscriptions(accounts)
            return {
                "success": True,
                "message": f"Found {len(rows)} subscriptions",
                "details": {"subscriptions": rows, "total": len(rows)},
            }

        if request.action == ACTION_GET_TIER_STATS:
            accounts = await store.list_all_users()
            return {
                "success": True,
                "message": f"Computed tier stats for {len(accounts)} users",
                "details": subscriptions.tier_stats(accounts),
            }
    except SweepAlreadyRunningError as error:
        return _already_running_response(error)
    except PreferenceStoreError as error:
        logger.error("Bulk operation %s failed: %s", request.action, error)
        return _error_response(500, "Internal server error", details=str(error))
    except Exception as error:
        logger.exception("Bulk operation %s failed unexpectedly", request.action)
        return _error_response(500, "Internal server error", details=str(error))

    return _error_response(400, "Invalid action")


@app.get("/api/cron/monthly-reset")
async def cron_monthly_reset(
    key: str | None = Query(default=None),
    timeout: int | None = Query(default=None, ge=1),
):
    """Scheduled trigger for the credit reset sweep."""
    if not _is_admin_key_valid(key):
        logger.warning("Rejected scheduled reset: invalid key")
        return _unauthorized_response()

    max_time_seconds = timeout or RESET_MAX_TIME_SECONDS
    logger.info("Starting scheduled reset with %ss budget", max_time_seconds)

    try:
        summary = await batch.run_reset_sweep(max_time_seconds=max_time_seconds)
    except SweepAlreadyRunningError as error:
        return _already_running_response(error)
    except PreferenceStoreError as error:
        logger.error("Scheduled reset failed: %s", error)
        return _error_response(
            500,
            "Internal server error",
            details=str(error),
            progress=batch.SWEEP_PROGRESS.snapshot(),
        )
    except Exception as error:
        logger.exception("Scheduled reset failed unexpectedly")
        return _error_response(
            500,
            "Internal server error",
            details=str(error),
            progress=batch.SWEEP_PROGRESS.snapshot(),
        )

    return {
        "success": True,
        "message": (
            "Credit reset partially completed (timeout reached)"
            if summary.timeout_reached
            else "Credit reset completed successfully"
        ),
        "data": {
            "resetCount": summary.affected_count,
            "checkedCount": summary.checked_count,
            "errorCount": summary.error_count,
            "skippedCount": summary.skipped_count,
            "timeoutReached": summary.timeout_reached,
            "duration": f"{summary.duration_ms}ms",
            "timestamp": to_iso(datetime.now(timezone.utc)),
            "resetUsers": summary.affected_users[:CRON_RESET_USERS_SHOWN],
        },
    }


@app.post("/api/admin/manage-user")
async def manage_user(request: ManageUserRequest):
    """Inspect or adjust a single user's tier and credits."""
    if not _is_admin_key_valid(request.admin_key):
        logger.warning("Rejected manage-user %s: invalid admin key", request.action)
        return _unauthorized_response()

    try:
        if request.action == ACTION_GET_USER_BY_EMAIL:
            if not request.email:
                return _error_response(400, "Email is required")
            account = await store.find_user_by_email(request.email)
            if account is None:
                return _error_response(404, "User not found")
            return {"success": True, "user": _serialize_user(account)}

        if request.action == ACTION_UPDATE_TIER:
            if not request.user_id or not request.tier:
                return _error_response(400, "User ID and tier are required")
            if request.tier not in VALID_TIERS:
                return _error_response(
                    400, "Invalid tier. Must be free, premium, or admin"
                )
            preferences = await update_user_tier(request.user_id, request.tier)
            return {
                "success": True,
                "message": f"User tier updated to {request.tier}",
                "preferences": preferences,
            }

        if request.action == ACTION_RESET_CREDITS:
            if not request.user_id:
                return _error_response(400, "User ID is required")
            preferences = await reset_user_credits(request.user_id)
            return {
                "success": True,
                "message": "User credits reset successfully",
                "preferences": preferences,
            }

        if request.action == ACTION_UPDATE_SUBSCRIPTION:
            if not request.user_id:
                return _error_response(400, "User ID is required")
            try:
                changes = subscriptions.SubscriptionUpdate.model_validate(
                    request.subscription or {}
                )
            except ValidationError as error:
                return _error_response(400, "Invalid subscription update", details=str(error))
            if not changes.as_preferences():
                return _error_response(400, "No subscription fields to update")
            preferences = await subscriptions.update_subscription(request.user_id, changes)
            return {
                "success": True,
                "message": "Subscription updated",
                "preferences": preferences,
            }

        if request.action == ACTION_CANCEL_SUBSCRIPTION:
            if not request.user_id:
                return _error_response(400, "User ID is required")
            preferences = await subscriptions.cancel_subscription(request.user_id)
            return {
                "success": True,
                "message": "Subscription cancelled",
                "preferences": preferences,
            }
    except UserNotFoundError:
        return _error_response(404, "User not found")
    except PreferenceStoreError as error:
        logger.error("Manage-user %s failed: %s", request.action, error)
        return _error_response(500, "Internal server error", details=str(error))
    except Exception as error:
        logger.exception("Manage-user %s failed unexpectedly", request.action)
        return _error_response(500, "Internal server error", details=str(error))

    return _error_response(400, "Invalid action")


@app.post("/api/webhooks/dodo")
@app.post("/api/webhooks/dodopayments")
async def dodo_webhook(
    request: Request,
    webhook_id: str | None = Header(default=None, alias="webhook-id"),
    webhook_timestamp: str | None = Header(default=None, alias="webhook-timestamp"),
    webhook_signature: str | None = Header(default=None, alias="webhook-signature"),
):
    """Handle Dodo Payments subscription and payment events."""
    payload = await request.body()
    if not payload:
        return _error_response(400, "Missing webhook payload.")

    if DODO_WEBHOOK_SECRET:
        try:
            webhooks.verify_signature(
                payload,
                webhook_id,
                webhook_timestamp,
                webhook_signature,
                DODO_WEBHOOK_SECRET,
            )
        except WebhookSignatureError as error:
            logger.warning("Rejected webhook %s: %s", webhook_id, error)
            return _error_response(400, "Invalid webhook signature.")
    elif not IS_DEVELOPMENT:
        logger.error("Rejected webhook %s: signing secret is not configured", webhook_id)
        return _error_response(400, "Webhook signing secret is not configured.")

    try:
        event = json.loads(payload.decode("utf-8"))
    except ValueError:
        return _error_response(400, "Invalid webhook payload.")

    if not isinstance(event, dict):
        return _error_response(400, "Invalid webhook payload shape.")

    try:
        outcome = await webhooks.process_event(event, event_id=webhook_id)
    except PreferenceStoreError as error:
        # Non-2xx so the provider redelivers.
        logger.error("Webhook %s failed: %s", webhook_id, error)
        return _error_response(500, "Webhook processing failed", details=str(error))
    except Exception as error:
        logger.exception("Webhook %s failed unexpectedly", webhook_id)
        return _error_response(500, "Webhook processing failed", details=str(error))

    response: Dict[str, Any] = {"received": True, "processed": outcome.processed}
    if outcome.reason:
        response["reason"] = outcome.reason
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
