"""Tests for Dodo Payments webhook processing and signature checks."""

import base64
import hashlib
import hmac
import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from avchat import webhooks
from avchat.errors import PreferenceStoreError, UserNotFoundError, WebhookSignatureError
from avchat.preferences import UserAccount, to_iso


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
SECRET_BYTES = b"test-signing-secret-0123456789"
SECRET = "whsec_" + base64.b64encode(SECRET_BYTES).decode("ascii")


def _event(event_type: str, user_id: str | None = "user-1", **data) -> dict:
    payload_data = dict(data)
    if user_id is not None:
        payload_data.setdefault("metadata", {"userId": user_id})
    return {"type": event_type, "data": payload_data}


def _sign(body: bytes, webhook_id: str, timestamp: int, key: bytes = SECRET_BYTES) -> str:
    signed = f"{webhook_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(key, signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode("ascii")


class ExtractUserIdTests(unittest.TestCase):
    def test_metadata_user_id_wins(self):
        payload = {
            "data": {
                "metadata": {"userId": "primary", "appwriteUserId": "secondary"},
                "customer": {"metadata": {"userId": "customer-level"}},
            }
        }
        self.assertEqual(webhooks.extract_user_id(payload), "primary")

    def test_falls_back_through_known_locations(self):
        self.assertEqual(
            webhooks.extract_user_id({"data": {"metadata": {"user_id": "snake"}}}),
            "snake",
        )
        self.assertEqual(
            webhooks.extract_user_id(
                {"data": {"customer": {"metadata": {"appwriteUserId": "cust"}}}}
            ),
            "cust",
        )

    def test_missing_identity_returns_none(self):
        self.assertIsNone(webhooks.extract_user_id({"data": {"metadata": {}}}))
        self.assertIsNone(webhooks.extract_user_id({"data": None}))
        self.assertIsNone(webhooks.extract_user_id("not a payload"))


class BuildEventUpdatesTests(unittest.TestCase):
    def test_subscription_active_grants_premium(self):
        updates = webhooks.build_event_updates(
            "subscription.active",
            {
                "subscription_id": "sub_1",
                "customer": {"customer_id": "cus_1"},
                "next_billing_date": "2026-04-15T12:00:00Z",
                "currency": "usd",
                "recurring_pre_tax_amount": 999,
            },
            {},
            NOW,
        )
        self.assertEqual(updates["tier"], "premium")
        self.assertEqual(updates["subscriptionTier"], "PREMIUM")
        self.assertEqual(updates["subscriptionStatus"], "active")
        self.assertIs(updates["subscriptionCancelAtEnd"], False)
        self.assertEqual(updates["subscriptionRetryCount"], 0)
        self.assertEqual(updates["freeCredits"], 1500)
        self.assertEqual(updates["premiumCredits"], 600)
        self.assertEqual(updates["superPremiumCredits"], 30)
        self.assertEqual(updates["subscriptionId"], "sub_1")
        self.assertEqual(updates["subscriptionCustomerId"], "cus_1")
        self.assertEqual(updates["subscriptionNextBillingDate"], "2026-04-15T12:00:00.000Z")
        self.assertEqual(updates["subscriptionPeriodEnd"], "2026-04-15T12:00:00.000Z")
        self.assertEqual(updates["subscriptionCurrency"], "USD")
        self.assertEqual(updates["subscriptionAmount"], 999)
        self.assertEqual(updates["lastResetDate"], to_iso(NOW))
        self.assertEqual(updates["subscriptionUpdatedAt"], to_iso(NOW))

    def test_renewed_twice_does_not_drift(self):
        data = {"subscription_id": "sub_1", "payment_id": "pay_9"}
        bag = {"tier": "premium", "subscriptionRetryCount": 2, "freeCredits": 4}
        for _ in range(2):
            updates = webhooks.build_event_updates("subscription.renewed", data, bag, NOW)
            bag = {**bag, **updates}
            self.assertEqual(bag["subscriptionRetryCount"], 0)
            self.assertEqual(bag["freeCredits"], 1500)
            self.assertEqual(bag["premiumCredits"], 600)
            self.assertEqual(bag["superPremiumCredits"], 30)
            self.assertEqual(bag["subscriptionLastPayment"], "pay_9")

    def test_cancelled_keeps_tier_and_marks_cancel_at_end(self):
        updates = webhooks.build_event_updates(
            "subscription.cancelled",
            {"next_billing_date": 1776254400},
            {"tier": "premium"},
            NOW,
        )
        self.assertNotIn("tier", updates)
        self.assertEqual(updates["subscriptionStatus"], "cancelled")
        self.assertIs(updates["subscriptionCancelAtEnd"], True)
        self.assertEqual(updates["subscriptionNextBillingDate"], "2026-04-15T12:00:00.000Z")

    def test_millisecond_epoch_billing_date_is_dropped(self):
        updates = webhooks.build_event_updates(
            "subscription.active",
            {"subscription_id": "sub_1", "next_billing_date": 1773576000000},
            {},
            NOW,
        )
        self.assertEqual(updates["tier"], "premium")
        self.assertEqual(updates["subscriptionId"], "sub_1")
        self.assertNotIn("subscriptionNextBillingDate", updates)
        self.assertNotIn("subscriptionPeriodEnd", updates)

    def test_expired_moves_to_free_allotment(self):
        updates = webhooks.build_event_updates("subscription.expired", {}, {"tier": "premium"}, NOW)
        self.assertEqual(updates["tier"], "free")
        self.assertEqual(updates["subscriptionTier"], "FREE")
        self.assertEqual(updates["subscriptionStatus"], "expired")
        self.assertEqual(updates["freeCredits"], 200)

    def test_failed_threshold_downgrades_only_on_third_failure(self):
        bag = {"tier": "premium", "subscriptionStatus": "active", "subscriptionRetryCount": 0}
        expected_tiers = ["premium", "premium", "free"]
        for attempt, expected_tier in enumerate(expected_tiers, start=1):
            with self.subTest(attempt=attempt):
                updates = webhooks.build_event_updates("subscription.failed", {}, bag, NOW)
                bag = {**bag, **updates}
                self.assertEqual(bag["subscriptionRetryCount"], attempt)
                self.assertEqual(bag["tier"], expected_tier)
                if attempt < 3:
                    self.assertEqual(bag["subscriptionStatus"], "failed")
                else:
                    self.assertEqual(bag["subscriptionStatus"], "expired")
                    self.assertEqual(bag["freeCredits"], 200)

    def test_payment_succeeded_clears_retry_count(self):
        updates = webhooks.build_event_updates(
            "payment.succeeded",
            {"payment_id": "pay_1", "customer": {"customer_id": "cus_1"}},
            {"subscriptionRetryCount": 2},
            NOW,
        )
        self.assertEqual(updates["subscriptionRetryCount"], 0)
        self.assertEqual(updates["subscriptionLastPayment"], "pay_1")
        self.assertEqual(updates["subscriptionCustomerId"], "cus_1")

    def test_payment_failed_increments_stored_retry_count(self):
        updates = webhooks.build_event_updates(
            "payment.failed", {}, {"subscriptionRetryCount": "1"}, NOW
        )
        self.assertEqual(updates["subscriptionRetryCount"], 2)
        self.assertNotIn("tier", updates)

    def test_unknown_event_type_returns_none(self):
        self.assertIsNone(webhooks.build_event_updates("refund.succeeded", {}, {}, NOW))


class ProcessEventTests(unittest.IsolatedAsyncioTestCase):
    async def test_subscription_active_for_new_user(self):
        account = UserAccount(id="user-1", preferences={"foo": "bar"})
        with (
            patch("avchat.webhooks.store.get_user", new=AsyncMock(return_value=account)),
            patch(
                "avchat.webhooks.store.update_preferences",
                new=AsyncMock(return_value={}),
            ) as update_mock,
        ):
            outcome = await webhooks.process_event(
                _event("subscription.active", subscription_id="sub_1"),
                event_id="msg_1",
                now=NOW,
            )

        self.assertTrue(outcome.processed)
        self.assertEqual(outcome.user_id, "user-1")
        update_mock.assert_awaited_once()
        user_id, written = update_mock.await_args.args
        self.assertEqual(user_id, "user-1")
        self.assertEqual(written["foo"], "bar")
        self.assertEqual(written["tier"], "premium")
        self.assertEqual(written["subscriptionStatus"], "active")
        self.assertIs(written["subscriptionCancelAtEnd"], False)
        self.assertEqual(written["freeCredits"], 1500)
        self.assertEqual(written["subscriptionLastEventId"], "msg_1")

    async def test_missing_user_id_is_acknowledged_without_write(self):
        with (
            patch("avchat.webhooks.store.get_user", new=AsyncMock()) as get_user_mock,
            patch("avchat.webhooks.store.update_preferences", new=AsyncMock()) as update_mock,
        ):
            outcome = await webhooks.process_event(
                _event("subscription.active", user_id=None), now=NOW
            )

        self.assertFalse(outcome.processed)
        self.assertEqual(outcome.reason, "missing user id")
        get_user_mock.assert_not_awaited()
        update_mock.assert_not_awaited()

    async def test_unhandled_event_type_is_ignored(self):
        with patch("avchat.webhooks.store.get_user", new=AsyncMock()) as get_user_mock:
            outcome = await webhooks.process_event(_event("dispute.opened"), now=NOW)
        self.assertFalse(outcome.processed)
        self.assertEqual(outcome.reason, "unhandled event type")
        get_user_mock.assert_not_awaited()

    async def test_unknown_user_is_acknowledged(self):
        with (
            patch(
                "avchat.webhooks.store.get_user",
                new=AsyncMock(side_effect=UserNotFoundError("ghost")),
            ),
            patch("avchat.webhooks.store.update_preferences", new=AsyncMock()) as update_mock,
        ):
            outcome = await webhooks.process_event(
                _event("subscription.renewed", user_id="ghost"), now=NOW
            )
        self.assertFalse(outcome.processed)
        self.assertEqual(outcome.reason, "unknown user")
        update_mock.assert_not_awaited()

    async def test_redelivered_event_is_skipped(self):
        account = UserAccount(
            id="user-1",
            preferences={"subscriptionRetryCount": 1, "subscriptionLastEventId": "msg_7"},
        )
        with (
            patch("avchat.webhooks.store.get_user", new=AsyncMock(return_value=account)),
            patch("avchat.webhooks.store.update_preferences", new=AsyncMock()) as update_mock,
        ):
            outcome = await webhooks.process_event(
                _event("payment.failed"), event_id="msg_7", now=NOW
            )
        self.assertFalse(outcome.processed)
        self.assertEqual(outcome.reason, "duplicate event")
        update_mock.assert_not_awaited()

    async def test_store_failure_propagates(self):
        account = UserAccount(id="user-1", preferences={})
        with (
            patch("avchat.webhooks.store.get_user", new=AsyncMock(return_value=account)),
            patch(
                "avchat.webhooks.store.update_preferences",
                new=AsyncMock(side_effect=PreferenceStoreError("boom", status_code=503)),
            ),
        ):
            with self.assertRaises(PreferenceStoreError):
                await webhooks.process_event(_event("subscription.expired"), now=NOW)


class VerifySignatureTests(unittest.TestCase):
    body = b'{"type":"subscription.active"}'
    timestamp = 1773576000

    def test_valid_signature_passes(self):
        signature = _sign(self.body, "msg_1", self.timestamp)
        webhooks.verify_signature(
            self.body,
            "msg_1",
            str(self.timestamp),
            signature,
            SECRET,
            now_seconds=self.timestamp + 10,
        )

    def test_any_listed_signature_may_match(self):
        signature = "v1,bm90LWl0 " + _sign(self.body, "msg_1", self.timestamp)
        webhooks.verify_signature(
            self.body,
            "msg_1",
            str(self.timestamp),
            signature,
            SECRET,
            now_seconds=self.timestamp,
        )

    def test_tampered_body_fails(self):
        signature = _sign(self.body, "msg_1", self.timestamp)
        with self.assertRaises(WebhookSignatureError):
            webhooks.verify_signature(
                b'{"type":"subscription.expired"}',
                "msg_1",
                str(self.timestamp),
                signature,
                SECRET,
                now_seconds=self.timestamp,
            )

    def test_stale_timestamp_fails(self):
        signature = _sign(self.body, "msg_1", self.timestamp)
        with self.assertRaises(WebhookSignatureError):
            webhooks.verify_signature(
                self.body,
                "msg_1",
                str(self.timestamp),
                signature,
                SECRET,
                now_seconds=self.timestamp + 301,
            )

    def test_missing_headers_fail(self):
        with self.assertRaises(WebhookSignatureError):
            webhooks.verify_signature(self.body, None, None, None, SECRET)


if __name__ == "__main__":
    unittest.main()
