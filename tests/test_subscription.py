"""
Tests for the tier catalog and subscription state serialization.
"""
from datetime import datetime, timedelta

import pytest

from food_scan.core import quota
from food_scan.core.subscription import (
    FREE,
    PREMIUM,
    PROFESSIONAL,
    UNLIMITED,
    ActionKind,
    Feature,
    SubscriptionState,
    TierType,
    UsageQuota,
    get_tier,
    initial_state,
    parse_tier,
)

NOW = datetime(2024, 6, 10, 8, 0, 0)


class TestCatalog:
    """Test the tier definitions."""

    def test_free(self):
        assert FREE.quota.periodic_allowance == 1
        assert FREE.quota.bonus_allowance == 3
        assert FREE.quota.history_retention_days == 7
        assert FREE.features == frozenset()
        assert FREE.price == 0.0

    def test_premium(self):
        assert PREMIUM.quota.periodic_allowance == 5
        assert PREMIUM.quota.bonus_allowance == 10
        assert PREMIUM.has_feature(Feature.RECIPE_BOOK)
        assert not PREMIUM.has_feature(Feature.MEAL_PLANNING)
        assert PREMIUM.price == 4.99

    def test_professional(self):
        assert PROFESSIONAL.quota.is_unlimited
        assert PROFESSIONAL.quota.history_retention_days == UNLIMITED
        assert all(PROFESSIONAL.has_feature(f) for f in Feature)

    @pytest.mark.parametrize("tier_type", list(TierType))
    def test_get_tier(self, tier_type):
        assert get_tier(tier_type).tier_type is tier_type

    def test_get_tier_rejects_unknown(self):
        with pytest.raises(ValueError):
            get_tier("gold")

    def test_parse_tier(self):
        assert parse_tier(" Premium ") is TierType.PREMIUM
        with pytest.raises(ValueError, match="must be one of"):
            parse_tier("gold")


class TestUsageQuota:
    """Test derived quota values."""

    @pytest.mark.parametrize("allowance,used,expected", [(5, 2, 3), (1, 4, 0), (UNLIMITED, 99, UNLIMITED)])
    def test_primary_remaining(self, allowance, used, expected):
        assert UsageQuota(allowance, used, 0, 7).primary_remaining == expected


class TestSubscriptionState:
    """Test state helpers and persistence format."""

    def test_initial_state_schedules_reset(self):
        state = initial_state(NOW, PREMIUM)
        assert state.tier_type == TierType.PREMIUM
        assert state.quota.period_reset_at == NOW + timedelta(days=1)
        assert state.last_quota_reset == NOW
        assert state.usage_history == ()

    def test_expiry(self):
        state = quota.apply_tier_change(initial_state(NOW), PREMIUM, NOW)
        assert state.is_active(NOW + timedelta(days=29))
        assert state.is_expired(NOW + timedelta(days=31))
        assert not state.is_active(NOW + timedelta(days=31))

    def test_round_trip_with_history(self):
        state = quota.apply_tier_change(initial_state(NOW), PREMIUM, NOW, subscription_id="sub_abc")
        state = quota.record_usage(state, ActionKind.SCAN_FOOD, NOW + timedelta(minutes=5))
        state = quota.record_usage(state, ActionKind.SAVE_RECIPE, NOW + timedelta(minutes=6))

        assert SubscriptionState.from_dict(state.to_dict()) == state

    def test_to_dict_keeps_newest_history(self):
        state = initial_state(NOW)
        for minutes in range(3):
            state = quota.record_usage(state, ActionKind.WATCH_AD, NOW + timedelta(minutes=minutes))

        history = state.to_dict(history_limit=2)["usage_history"]
        assert [r["occurred_at"] for r in history] == [
            (NOW + timedelta(minutes=1)).isoformat(),
            (NOW + timedelta(minutes=2)).isoformat(),
        ]
        assert state.to_dict(history_limit=0)["usage_history"] == []

    @pytest.mark.parametrize("payload", [
        {},
        {"tier_type": "gold"},
        {"tier_type": "free", "quota": {"used": 1}},
    ])
    def test_from_dict_rejects_malformed(self, payload):
        with pytest.raises((KeyError, ValueError, TypeError)):
            SubscriptionState.from_dict(payload)
