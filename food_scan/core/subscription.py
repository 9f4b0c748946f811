"""
Subscription tiers, usage quotas and per-user subscription state.

All values here are immutable. State changes are expressed as new values
built by the transition functions in ``food_scan.core.quota``.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from food_scan.storage.models import UsageChannel, UsageRecord, ActionKind

UNLIMITED = -1


class TierType(Enum):
    """Available subscription plans."""
    FREE = "free"
    PREMIUM = "premium"
    PROFESSIONAL = "professional"


class Feature(Enum):
    """Capabilities a tier can unlock."""
    RECIPE_BOOK = "recipe_book"
    MEAL_PLANNING = "meal_planning"
    UNLIMITED_SCANS = "unlimited_scans"
    AD_FREE = "ad_free"
    PRIORITY_PROCESSING = "priority_processing"


@dataclass(frozen=True)
class UsageQuota:
    """Allowance window for one user.

    ``periodic_allowance`` and ``history_retention_days`` use ``UNLIMITED``
    as the unlimited sentinel. Ranges are not validated here.
    """
    periodic_allowance: int
    used: int
    bonus_allowance: int
    history_retention_days: int
    period_reset_at: Optional[datetime] = None

    @property
    def is_unlimited(self) -> bool:
        return self.periodic_allowance == UNLIMITED

    @property
    def primary_remaining(self) -> int:
        """Primary uses left in this period, ``UNLIMITED`` for unlimited quotas."""
        if self.is_unlimited:
            return UNLIMITED
        return max(0, self.periodic_allowance - self.used)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "periodic_allowance": self.periodic_allowance,
            "used": self.used,
            "bonus_allowance": self.bonus_allowance,
            "history_retention_days": self.history_retention_days,
            "period_reset_at": self.period_reset_at.isoformat() if self.period_reset_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageQuota":
        reset_at = data.get("period_reset_at")
        return cls(
            periodic_allowance=int(data["periodic_allowance"]),
            used=int(data["used"]),
            bonus_allowance=int(data["bonus_allowance"]),
            history_retention_days=int(data["history_retention_days"]),
            period_reset_at=datetime.fromisoformat(reset_at) if reset_at else None,
        )


@dataclass(frozen=True)
class SubscriptionTier:
    """A named plan bundling price, capabilities and quota defaults."""
    tier_type: TierType
    features: FrozenSet[Feature]
    quota: UsageQuota
    price: float
    billing_period: str
    display_name: str
    description: str
    reset_period: timedelta

    def has_feature(self, feature: Feature) -> bool:
        return feature in self.features


FREE = SubscriptionTier(
    tier_type=TierType.FREE,
    features=frozenset(),
    quota=UsageQuota(
        periodic_allowance=1,
        used=0,
        bonus_allowance=3,
        history_retention_days=7,
    ),
    price=0.0,
    billing_period="free",
    display_name="Free",
    description="1 scan per 6 hours, watch ads for more",
    reset_period=timedelta(hours=6),
)

PREMIUM = SubscriptionTier(
    tier_type=TierType.PREMIUM,
    features=frozenset({Feature.RECIPE_BOOK, Feature.AD_FREE}),
    quota=UsageQuota(
        periodic_allowance=5,
        used=0,
        bonus_allowance=10,
        history_retention_days=30,
    ),
    price=4.99,
    billing_period="monthly",
    display_name="Premium",
    description="5 scans per day, recipe book, ad-free",
    reset_period=timedelta(days=1),
)

PROFESSIONAL = SubscriptionTier(
    tier_type=TierType.PROFESSIONAL,
    features=frozenset(Feature),
    quota=UsageQuota(
        periodic_allowance=UNLIMITED,
        used=0,
        # Bonus credits mean nothing without a finite allowance.
        bonus_allowance=0,
        history_retention_days=UNLIMITED,
    ),
    price=9.99,
    billing_period="monthly",
    display_name="Professional",
    description="Unlimited scans, meal planning, priority support",
    reset_period=timedelta(days=1),
)


def get_tier(tier_type: TierType) -> SubscriptionTier:
    """Return the catalog entry for ``tier_type``.

    Raises:
        ValueError: If ``tier_type`` is not a known tier
    """
    if tier_type is TierType.FREE:
        return FREE
    if tier_type is TierType.PREMIUM:
        return PREMIUM
    if tier_type is TierType.PROFESSIONAL:
        return PROFESSIONAL
    raise ValueError(f"Unknown subscription tier: {tier_type!r}")


def parse_tier(name: str) -> TierType:
    """Parse a tier name such as ``"premium"`` (case-insensitive)."""
    try:
        return TierType(name.strip().lower())
    except ValueError:
        valid = [tier.value for tier in TierType]
        raise ValueError(f"Unknown tier '{name}', must be one of: {valid}")


@dataclass(frozen=True)
class SubscriptionState:
    """Everything persisted about one user's subscription."""
    tier_type: TierType
    quota: UsageQuota
    last_quota_reset: datetime
    usage_history: Tuple[UsageRecord, ...] = field(default_factory=tuple)
    subscription_id: Optional[str] = None
    purchase_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None

    @property
    def tier(self) -> SubscriptionTier:
        return get_tier(self.tier_type)

    def is_expired(self, now: datetime) -> bool:
        return self.expiry_date is not None and now > self.expiry_date

    def is_active(self, now: datetime) -> bool:
        return self.subscription_id is not None and not self.is_expired(now)

    def to_dict(self, history_limit: Optional[int] = None) -> Dict[str, Any]:
        """Serialize the state, keeping only the newest ``history_limit`` records if given."""
        history = self.usage_history
        if history_limit is not None:
            history = history[-history_limit:] if history_limit > 0 else ()
        return {
            "tier_type": self.tier_type.value,
            "quota": self.quota.to_dict(),
            "last_quota_reset": self.last_quota_reset.isoformat(),
            "usage_history": [record.to_dict() for record in history],
            "subscription_id": self.subscription_id,
            "purchase_date": self.purchase_date.isoformat() if self.purchase_date else None,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubscriptionState":
        """Rebuild state from ``to_dict`` output.

        Raises:
            KeyError, ValueError, TypeError: If the payload is malformed
        """
        purchase = data.get("purchase_date")
        expiry = data.get("expiry_date")
        return cls(
            tier_type=TierType(data["tier_type"]),
            quota=UsageQuota.from_dict(data["quota"]),
            last_quota_reset=datetime.fromisoformat(data["last_quota_reset"]),
            usage_history=tuple(
                UsageRecord.from_dict(record) for record in data.get("usage_history", [])
            ),
            subscription_id=data.get("subscription_id"),
            purchase_date=datetime.fromisoformat(purchase) if purchase else None,
            expiry_date=datetime.fromisoformat(expiry) if expiry else None,
        )


def initial_state(now: datetime, tier: SubscriptionTier = FREE) -> SubscriptionState:
    """Fresh state for a new user, with the first reset already scheduled."""
    return SubscriptionState(
        tier_type=tier.tier_type,
        quota=replace(tier.quota, period_reset_at=now + tier.reset_period),
        last_quota_reset=now,
    )


__all__ = [
    "UNLIMITED",
    "TierType",
    "Feature",
    "ActionKind",
    "UsageChannel",
    "UsageQuota",
    "SubscriptionTier",
    "SubscriptionState",
    "FREE",
    "PREMIUM",
    "PROFESSIONAL",
    "get_tier",
    "parse_tier",
    "initial_state",
]
