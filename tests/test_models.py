"""Tests for data models and payload mapping."""

import datetime

from usage_agent.models import (
    Account,
    LoginFailureReason,
    LoginResult,
    UsageSnapshot,
    UsageTier,
    mask_secret,
    parse_timestamp,
)


class TestUsageTier:
    def test_remaining_is_inverse_of_utilization(self):
        assert UsageTier.from_payload({"utilization": 85}).remaining_percent == 15.0

    def test_missing_utilization_means_full(self):
        assert UsageTier.from_payload({}).remaining_percent == 100.0

    def test_missing_tier_means_full(self):
        assert UsageTier.from_payload(None).remaining_percent == 100.0

    def test_non_numeric_utilization_means_full(self):
        assert UsageTier.from_payload({"utilization": "lots"}).remaining_percent == 100.0

    def test_clamped_to_range(self):
        assert UsageTier.from_payload({"utilization": 130}).remaining_percent == 0.0
        assert UsageTier.from_payload({"utilization": -20}).remaining_percent == 100.0

    def test_resets_at_parsed(self):
        tier = UsageTier.from_payload(
            {"utilization": 10, "resets_at": "2026-10-20T08:00:00Z"}
        )
        assert tier.resets_at == datetime.datetime(
            2026, 10, 20, 8, 0, tzinfo=datetime.timezone.utc
        )


class TestUsageSnapshot:
    def test_maps_all_windows(self):
        snapshot = UsageSnapshot.from_payload(
            {
                "five_hour": {"utilization": 40},
                "seven_day": {"utilization": 90},
                "seven_day_opus": {"utilization": 25},
                "seven_day_sonnet": None,
            }
        )
        assert snapshot.session_remaining == 60.0
        assert snapshot.weekly_remaining == 10.0
        assert snapshot.weekly_opus.remaining_percent == 75.0
        assert snapshot.weekly_sonnet.remaining_percent == 100.0

    def test_empty_payload(self):
        snapshot = UsageSnapshot.from_payload({})
        assert snapshot.weekly_remaining == 100.0
        assert snapshot.session_remaining == 100.0


class TestAccount:
    def test_round_trip_through_dict(self):
        expiry = datetime.datetime(2027, 1, 1, tzinfo=datetime.timezone.utc)
        account = Account(
            session_key="sk-ant-secret-value",
            organization_id="org-1",
            email="dev@example.com",
            nickname="Work",
            session_key_expiration=expiry,
            notification_threshold=35.0,
            did_notify_below_threshold=True,
        )
        restored = Account.from_dict(account.to_dict())
        assert restored == account

    def test_from_dict_defaults(self):
        account = Account.from_dict(
            {"id": "abc", "session_key": "k", "organization_id": "org", "email": ""}
        )
        assert account.email is None
        assert account.notification_threshold == 20.0
        assert account.did_notify_below_threshold is False

    def test_repr_masks_session_key(self):
        account = Account(session_key="sk-ant-very-secret-123456", organization_id="org")
        assert "very-secret" not in repr(account)

    def test_session_expiry(self):
        now = datetime.datetime(2026, 10, 18, tzinfo=datetime.timezone.utc)
        account = Account(session_key="k", organization_id="org")
        assert not account.is_session_expired(now)
        account.session_key_expiration = now - datetime.timedelta(seconds=1)
        assert account.is_session_expired(now)


class TestHelpers:
    def test_parse_timestamp_rejects_garbage(self):
        assert parse_timestamp("not a date") is None
        assert parse_timestamp(None) is None

    def test_parse_timestamp_naive_is_utc(self):
        assert parse_timestamp("2026-10-18T12:00:00").tzinfo == datetime.timezone.utc

    def test_mask_secret(self):
        assert mask_secret(None) == "<none>"
        assert mask_secret("short") == "***"
        assert mask_secret("sk-ant-abcdefgh") == "sk-a...efgh"

    def test_retryable_reasons(self):
        assert LoginResult(False, reason=LoginFailureReason.NETWORK).retryable
        assert LoginResult(False, reason=LoginFailureReason.TIMEOUT).retryable
        assert LoginResult(False, reason=LoginFailureReason.STORAGE).retryable
        assert not LoginResult(False, reason=LoginFailureReason.AUTH).retryable
        assert not LoginResult(False, reason=LoginFailureReason.DUPLICATE).retryable
