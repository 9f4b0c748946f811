"""
Usage quota tracking and action gating.

Pure transition functions over ``SubscriptionState``. Nothing here mutates
its input or touches storage; ``food_scan.core.service`` serializes calls
and persists the results.

Scan charging order:
1. Primary allowance - the tier's per-period scans
2. Bonus allowance - credits earned through the rewarded side-channel
3. Neither left - ``used`` still increments; gating is the caller's job
"""

import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

from .errors import SubscriptionError
from .subscription import (
    UNLIMITED,
    ActionKind,
    Feature,
    SubscriptionState,
    SubscriptionTier,
    TierType,
    UsageChannel,
    UsageQuota,
)
from food_scan.storage.models import UsageRecord

SUBSCRIPTION_LENGTH = timedelta(days=30)


def can_perform(state: SubscriptionState, action: ActionKind) -> bool:
    """Check whether ``action`` is currently permitted. Side-effect free."""
    quota = state.quota
    tier = state.tier

    if action is ActionKind.SCAN_FOOD:
        if quota.is_unlimited:
            return True
        return quota.used < quota.periodic_allowance or quota.bonus_allowance > 0
    if action is ActionKind.SAVE_RECIPE:
        return tier.has_feature(Feature.RECIPE_BOOK)
    if action is ActionKind.CREATE_MEAL_PLAN:
        return tier.has_feature(Feature.MEAL_PLANNING)
    if action is ActionKind.WATCH_AD:
        return not quota.is_unlimited and quota.bonus_allowance > 0
    raise ValueError(f"Unknown action kind: {action!r}")


def charge_channel(quota: UsageQuota, action: ActionKind) -> UsageChannel:
    """Which allowance ``action`` would be charged against right now."""
    if action is not ActionKind.SCAN_FOOD:
        return UsageChannel.NONE
    if quota.is_unlimited or quota.used < quota.periodic_allowance:
        return UsageChannel.PRIMARY
    if quota.bonus_allowance > 0:
        return UsageChannel.BONUS
    return UsageChannel.PRIMARY


def record_usage(
    state: SubscriptionState,
    action: ActionKind,
    now: datetime,
) -> SubscriptionState:
    """Charge ``action`` and append one ``UsageRecord``.

    Does not deduplicate; callers own at-most-once delivery.
    """
    quota = state.quota
    channel = charge_channel(quota, action)

    if channel is UsageChannel.PRIMARY:
        quota = replace(quota, used=quota.used + 1)
    elif channel is UsageChannel.BONUS:
        quota = replace(quota, bonus_allowance=quota.bonus_allowance - 1)

    record = UsageRecord(occurred_at=now, action_kind=action, quantity=1, channel=channel)
    return replace(state, quota=quota, usage_history=state.usage_history + (record,))


def needs_reset(quota: UsageQuota, now: datetime) -> bool:
    """True once ``now`` is at or past the scheduled reset."""
    return quota.period_reset_at is not None and now >= quota.period_reset_at


def reset(state: SubscriptionState, tier: SubscriptionTier, now: datetime) -> SubscriptionState:
    """Start a new allowance period for ``tier``."""
    quota = replace(
        state.quota,
        used=0,
        bonus_allowance=tier.quota.bonus_allowance,
        period_reset_at=now + tier.reset_period,
    )
    return replace(state, quota=quota, last_quota_reset=now)


def apply_tier_change(
    state: SubscriptionState,
    new_tier: SubscriptionTier,
    now: datetime,
    subscription_id: Optional[str] = None,
) -> SubscriptionState:
    """Replace the quota wholesale with ``new_tier``'s defaults.

    Partial usage from the old tier is not carried over; history is kept.
    Moving to the free tier clears the paid subscription fields.
    """
    quota = replace(new_tier.quota, period_reset_at=now + new_tier.reset_period)

    if new_tier.tier_type is TierType.FREE:
        return replace(
            state,
            tier_type=new_tier.tier_type,
            quota=quota,
            last_quota_reset=now,
            subscription_id=None,
            purchase_date=None,
            expiry_date=None,
        )

    return replace(
        state,
        tier_type=new_tier.tier_type,
        quota=quota,
        last_quota_reset=now,
        subscription_id=subscription_id or f"sub_{new_tier.tier_type.value}_{uuid.uuid4().hex[:12]}",
        purchase_date=now,
        expiry_date=now + SUBSCRIPTION_LENGTH,
    )


def prune_history(state: SubscriptionState, now: datetime) -> SubscriptionState:
    """Drop usage records older than the quota's retention window."""
    days = state.quota.history_retention_days
    if days == UNLIMITED:
        return state
    cutoff = now - timedelta(days=days)
    kept = tuple(record for record in state.usage_history if record.occurred_at >= cutoff)
    if len(kept) == len(state.usage_history):
        return state
    return replace(state, usage_history=kept)


def require_action(state: SubscriptionState, action: ActionKind) -> None:
    """Gate ``action``.

    Raises:
        SubscriptionError: ``quota_exceeded`` for exhausted scans or ad
            credits, ``feature_access_denied`` for tier-locked features
    """
    if can_perform(state, action):
        return
    if action in (ActionKind.SCAN_FOOD, ActionKind.WATCH_AD):
        raise SubscriptionError.quota_exceeded()
    raise SubscriptionError.feature_access_denied()
