"""
Tests for the subscription service state container.
"""
import os
import shutil
import tempfile
import threading
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from food_scan.core.errors import StorageError, SubscriptionError
from food_scan.core.service import STATE_KEY, SubscriptionService
from food_scan.core.subscription import ActionKind, Feature, TierType, UsageChannel
from food_scan.storage.db import get_connection
from food_scan.storage.repository import KeyValueStore, fetch_usage_records


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class TestSubscriptionService:
    """Test persistence, gating and serialized mutation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.store = KeyValueStore(self.db_path)
        self.clock = FakeClock(datetime(2024, 3, 1, 9, 0, 0))

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_service(self) -> SubscriptionService:
        return SubscriptionService(self.store, clock=self.clock)

    def test_new_user_starts_on_free_tier(self):
        service = self.make_service()

        assert service.current_tier().tier_type == TierType.FREE
        assert service.state.quota.used == 0
        assert service.state.quota.period_reset_at == self.clock.now + timedelta(hours=6)
        assert self.store.get_json(STATE_KEY) is not None

    def test_state_survives_reload(self):
        service = self.make_service()
        service.upgrade(TierType.PREMIUM)
        service.consume(ActionKind.SCAN_FOOD)

        reloaded = self.make_service()
        assert reloaded.state == service.state
        assert reloaded.has_feature(Feature.RECIPE_BOOK)

    def test_consume_charges_primary_then_bonus(self):
        service = self.make_service()

        assert service.consume(ActionKind.SCAN_FOOD).quota.used == 1
        state = service.consume(ActionKind.SCAN_FOOD)
        assert state.quota.bonus_allowance == 2
        assert state.usage_history[-1].channel == UsageChannel.BONUS

    def test_consume_raises_when_exhausted(self):
        service = self.make_service()
        for _ in range(4):
            service.consume(ActionKind.SCAN_FOOD)

        with pytest.raises(SubscriptionError):
            service.consume(ActionKind.SCAN_FOOD)
        assert len(service.usage_history()) == 4
        assert not service.can_perform(ActionKind.SCAN_FOOD)

    def test_consume_applies_due_reset(self):
        service = self.make_service()
        for _ in range(4):
            service.consume(ActionKind.SCAN_FOOD)

        self.clock.advance(hours=6)
        assert service.needs_reset()
        state = service.consume(ActionKind.SCAN_FOOD)
        assert state.quota.used == 1
        assert state.quota.bonus_allowance == 3

    def test_usage_is_written_to_ledger(self):
        service = self.make_service()
        service.consume(ActionKind.SCAN_FOOD)
        service.record_usage(ActionKind.WATCH_AD)

        records = fetch_usage_records(db_path=self.db_path)
        assert {r.action_kind for r in records} == {ActionKind.SCAN_FOOD, ActionKind.WATCH_AD}

    def test_failed_ledger_write_leaves_state_unchanged(self):
        service = self.make_service()
        conn = get_connection(self.db_path)
        try:
            conn.execute("DROP TABLE usage_record")
            conn.commit()
        finally:
            conn.close()

        with pytest.raises(StorageError):
            service.consume(ActionKind.SCAN_FOOD)

        assert service.state.quota.used == 0
        assert self.store.get_json(STATE_KEY)["quota"]["used"] == 0

    def test_persisted_history_is_capped(self):
        service = self.make_service()
        service.upgrade(TierType.PROFESSIONAL)

        with patch("food_scan.core.service.STATE_HISTORY_LIMIT", 3):
            for _ in range(5):
                service.consume(ActionKind.SCAN_FOOD)

        assert len(self.store.get_json(STATE_KEY)["usage_history"]) == 3
        assert len(fetch_usage_records(db_path=self.db_path)) == 5
        assert service.state.quota.used == 5

    def test_feature_gate(self):
        service = self.make_service()
        with pytest.raises(SubscriptionError):
            service.consume(ActionKind.SAVE_RECIPE)

        service.upgrade(TierType.PROFESSIONAL)
        service.consume(ActionKind.CREATE_MEAL_PLAN)

    def test_reset_quota(self):
        service = self.make_service()
        service.consume(ActionKind.SCAN_FOOD)
        self.clock.advance(minutes=5)

        state = service.reset_quota()
        assert state.quota.used == 0
        assert state.quota.period_reset_at > self.clock.now
        assert not service.needs_reset()

    def test_refresh_expires_paid_plan(self):
        service = self.make_service()
        service.upgrade(TierType.PREMIUM)
        self.clock.advance(days=31)

        state = service.refresh()
        assert state.tier_type == TierType.FREE
        assert state.subscription_id is None

    def test_refresh_prunes_history(self):
        service = self.make_service()
        service.consume(ActionKind.SCAN_FOOD)
        self.clock.advance(days=8)

        assert service.refresh().usage_history == ()
        assert fetch_usage_records(db_path=self.db_path) == []

    def test_cancel_returns_to_free(self):
        service = self.make_service()
        service.upgrade(TierType.PROFESSIONAL)
        state = service.cancel()
        assert state.tier_type == TierType.FREE
        assert state.quota.periodic_allowance == 1

    def test_corrupted_state_falls_back_to_defaults(self):
        self.store.put_json(STATE_KEY, {"tier_type": "platinum"})
        service = self.make_service()
        assert service.state.tier_type == TierType.FREE

    def test_unparseable_state_falls_back_to_defaults(self):
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                (STATE_KEY, "{not json", self.clock.now.isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

        service = self.make_service()
        assert service.state.tier_type == TierType.FREE
        assert self.store.get_json(STATE_KEY)["tier_type"] == "free"

    def test_concurrent_consumes_do_not_lose_updates(self):
        service = self.make_service()
        service.upgrade(TierType.PROFESSIONAL)

        def worker():
            for _ in range(10):
                service.consume(ActionKind.SCAN_FOOD)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert service.state.quota.used == 40
        assert len(service.usage_history()) == 40

    def test_concurrent_consumes_never_overspend(self):
        service = self.make_service()
        results = []

        def worker():
            try:
                service.consume(ActionKind.SCAN_FOOD)
                results.append("ok")
            except SubscriptionError:
                results.append("denied")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # One primary scan plus three bonus credits.
        assert results.count("ok") == 4
        assert results.count("denied") == 4
