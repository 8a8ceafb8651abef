"""Usage metrics, plan ceilings and delta parsing."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from household_core.domain.entitlements import Plan
from household_core.exceptions import InvalidQuotaDeltaError


def _utc_now() -> datetime:
    return datetime.now(UTC)


class UsageMetric(str, Enum):
    ACTIVE_MEMBERS = "active_members"
    ACTIVE_EXPENSES = "active_expenses"
    CHORE_PHOTOS = "chore_photos"
    SHOPPING_ITEM_PHOTOS = "shopping_item_photos"


# Seed values for the plan_limits table. Premium has no ceilings.
DEFAULT_PLAN_LIMITS: dict[Plan, dict[UsageMetric, int]] = {
    Plan.FREE: {
        UsageMetric.ACTIVE_MEMBERS: 4,
        UsageMetric.ACTIVE_EXPENSES: 10,
        UsageMetric.CHORE_PHOTOS: 15,
        UsageMetric.SHOPPING_ITEM_PHOTOS: 10,
    },
    Plan.PREMIUM: {},
}


@dataclass
class UsageCounter:
    household_id: UUID
    metric: UsageMetric
    count: int = 0
    updated_at: datetime = field(default_factory=_utc_now)


def parse_deltas(deltas: Mapping[str | UsageMetric, Any]) -> dict[UsageMetric, int]:
    """Validate a metric->delta mapping.

    Raises:
        InvalidQuotaDeltaError: unknown metric name, or a delta that is not
            an integer (bools are rejected too).
    """
    parsed: dict[UsageMetric, int] = {}
    for name, value in deltas.items():
        try:
            metric = UsageMetric(name)
        except ValueError:
            raise InvalidQuotaDeltaError(str(name), value) from None
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidQuotaDeltaError(metric.value, value)
        parsed[metric] = parsed.get(metric, 0) + value
    return parsed
