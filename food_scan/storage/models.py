"""
Data models for storage layer.

Defines the append-only usage ledger entry and its enums.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict


class ActionKind(Enum):
    """User actions the subscription layer gates and records."""
    SCAN_FOOD = "scan_food"
    SAVE_RECIPE = "save_recipe"
    CREATE_MEAL_PLAN = "create_meal_plan"
    WATCH_AD = "watch_ad"


class UsageChannel(Enum):
    """Which allowance an action was charged against."""
    PRIMARY = "primary"
    BONUS = "bonus"
    NONE = "none"


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one user action.

    Append-only: records are pruned by retention, never modified.
    """
    occurred_at: datetime
    action_kind: ActionKind
    quantity: int = 1
    channel: UsageChannel = UsageChannel.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "occurred_at": self.occurred_at.isoformat(),
            "action_kind": self.action_kind.value,
            "quantity": self.quantity,
            "channel": self.channel.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageRecord":
        return cls(
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
            action_kind=ActionKind(data["action_kind"]),
            quantity=int(data.get("quantity", 1)),
            channel=UsageChannel(data.get("channel", UsageChannel.NONE.value)),
        )
