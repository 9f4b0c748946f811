"""
Subscription service: the state container around the quota tracker.

Holds one ``SubscriptionState`` per store, runs every mutation as a pure
transition from ``food_scan.core.quota`` under a lock, and persists the
result before releasing it. A check-then-record sequence (``consume``)
happens inside a single critical section, so concurrent scans cannot both
spend the last credit or lose an increment.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from . import quota
from .errors import StorageError
from .subscription import (
    ActionKind,
    Feature,
    SubscriptionState,
    SubscriptionTier,
    TierType,
    UNLIMITED,
    get_tier,
    initial_state,
)
from food_scan.storage.models import UsageRecord
from food_scan.storage.repository import KeyValueStore, prune_usage_records

logger = logging.getLogger(__name__)

STATE_KEY = "subscription_state"

# Newest records kept in the persisted state. The ledger holds the full history.
STATE_HISTORY_LIMIT = 100

Transition = Callable[[SubscriptionState, datetime], SubscriptionState]


class SubscriptionService:
    """Serialized access to a user's subscription and usage state."""

    def __init__(self, store: KeyValueStore, clock: Callable[[], datetime] = datetime.now):
        """Load persisted state, creating a free-tier state if none exists.

        Args:
            store: Key-value store used for persistence
            clock: Source of the current time, injectable for tests
        """
        self.store = store
        self.clock = clock
        self._lock = threading.Lock()
        self._state = self._load_state()

    def _load_state(self) -> SubscriptionState:
        try:
            raw = self.store.get_json(STATE_KEY)
            if raw is not None:
                return SubscriptionState.from_dict(raw)
        except StorageError as e:
            logger.warning("Subscription state unreadable, resetting to defaults: %s", e.technical_details)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("Subscription state corrupted, resetting to defaults: %r", e)

        state = initial_state(self.clock())
        self.store.put_json(STATE_KEY, state.to_dict(STATE_HISTORY_LIMIT))
        logger.info("Created default %s subscription state", state.tier_type.value)
        return state

    def _apply(self, transition: Transition, charged: bool = False) -> SubscriptionState:
        with self._lock:
            new_state = transition(self._state, self.clock())
            record = new_state.usage_history[-1] if charged else None
            self.store.put_json(STATE_KEY, new_state.to_dict(STATE_HISTORY_LIMIT), record=record)
            self._state = new_state
            return new_state

    @property
    def state(self) -> SubscriptionState:
        return self._state

    def current_tier(self) -> SubscriptionTier:
        return self._state.tier

    def has_feature(self, feature: Feature) -> bool:
        return self._state.tier.has_feature(feature)

    def can_perform(self, action: ActionKind) -> bool:
        return quota.can_perform(self._state, action)

    def needs_reset(self) -> bool:
        return quota.needs_reset(self._state.quota, self.clock())

    def record_usage(self, action: ActionKind) -> SubscriptionState:
        """Charge ``action`` without checking the gate first."""
        return self._apply(lambda s, now: quota.record_usage(s, action, now), charged=True)

    def consume(self, action: ActionKind) -> SubscriptionState:
        """Gate and charge ``action`` as one atomic step.

        Raises:
            SubscriptionError: If the action is not currently permitted
        """
        def transition(state: SubscriptionState, now: datetime) -> SubscriptionState:
            if quota.needs_reset(state.quota, now):
                state = quota.reset(state, state.tier, now)
            quota.require_action(state, action)
            return quota.record_usage(state, action, now)

        state = self._apply(transition, charged=True)
        record = state.usage_history[-1]
        logger.info("Recorded %s via %s allowance", action.value, record.channel.value)
        return state

    def reset_quota(self) -> SubscriptionState:
        logger.info("Resetting usage quota for %s tier", self._state.tier_type.value)
        return self._apply(lambda s, now: quota.reset(s, s.tier, now))

    def refresh(self) -> SubscriptionState:
        """Apply a due reset and prune expired history.

        An expired paid subscription falls back to the free tier.
        """
        def transition(state: SubscriptionState, now: datetime) -> SubscriptionState:
            if state.tier_type is not TierType.FREE and state.is_expired(now):
                logger.info("Subscription %s expired, reverting to free tier", state.subscription_id)
                state = quota.apply_tier_change(state, get_tier(TierType.FREE), now)
            elif quota.needs_reset(state.quota, now):
                state = quota.reset(state, state.tier, now)
            return quota.prune_history(state, now)

        state = self._apply(transition)
        retention = state.quota.history_retention_days
        if retention != UNLIMITED:
            with self._lock:
                removed = prune_usage_records(self.clock() - timedelta(days=retention), self.store.db_path)
            if removed:
                logger.debug("Pruned %d usage records past %d-day retention", removed, retention)
        return state

    def upgrade(self, tier_type: TierType, subscription_id: Optional[str] = None) -> SubscriptionState:
        """Switch to ``tier_type``; the usage window restarts."""
        new_tier = get_tier(tier_type)
        state = self._apply(
            lambda s, now: quota.apply_tier_change(s, new_tier, now, subscription_id)
        )
        logger.info("Subscription changed to %s", tier_type.value)
        return state

    def cancel(self) -> SubscriptionState:
        """Cancel any paid plan and return to the free tier."""
        return self.upgrade(TierType.FREE)

    def usage_history(self) -> Tuple[UsageRecord, ...]:
        return self._state.usage_history
