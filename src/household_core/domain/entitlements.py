"""Subscriptions and the per-household entitlement derived from them."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from uuid import UUID, uuid4


def _utc_now() -> datetime:
    return datetime.now(UTC)


class Plan(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    INACTIVE = "inactive"


class SubscriptionStore(str, Enum):
    APP_STORE = "app_store"
    PLAY_STORE = "play_store"
    STRIPE = "stripe"
    PROMOTIONAL = "promotional"


# A cancelled subscription keeps funding until its paid period ends.
FUNDING_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED})


@dataclass
class Subscription:
    """Billing-side subscription snapshot.

    household_id is None while the subscription is floating, i.e. its owner
    is not in a household. Rows are keyed by (user_id, entitlement_key).
    """

    user_id: UUID
    entitlement_key: str
    store: SubscriptionStore
    product_id: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_end_at: datetime | None = None
    household_id: UUID | None = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    @property
    def is_floating(self) -> bool:
        return self.household_id is None

    def is_funding(self, as_of: datetime | None = None) -> bool:
        if self.status not in FUNDING_STATUSES:
            return False
        if self.current_period_end_at is None:
            return True
        return self.current_period_end_at > (as_of or _utc_now())


@dataclass
class Entitlement:
    household_id: UUID
    plan: Plan = Plan.FREE
    expires_at: datetime | None = None
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    def effective_plan(self, as_of: datetime | None = None) -> Plan:
        """The stored plan, downgraded to free once expires_at has passed."""
        if self.plan != Plan.PREMIUM:
            return Plan.FREE
        if self.expires_at is None or self.expires_at > (as_of or _utc_now()):
            return Plan.PREMIUM
        return Plan.FREE


def compute_entitlement(
    household_id: UUID,
    subscriptions: Iterable[Subscription],
    as_of: datetime | None = None,
) -> Entitlement:
    """Derive a household's entitlement from its attached subscriptions.

    Premium when at least one attached subscription is funding. expires_at is
    the latest period end among funding subscriptions, or None when any of
    them has no period end. Pure, so replaying it over the same snapshot
    always yields the same plan and expiry.
    """
    as_of = as_of or _utc_now()
    funding = [
        sub
        for sub in subscriptions
        if sub.household_id == household_id and sub.is_funding(as_of)
    ]
    if not funding:
        return Entitlement(household_id=household_id, plan=Plan.FREE, expires_at=None)

    period_ends = [sub.current_period_end_at for sub in funding]
    if any(end is None for end in period_ends):
        expires_at = None
    else:
        expires_at = max(end for end in period_ends if end is not None)
    return Entitlement(
        household_id=household_id, plan=Plan.PREMIUM, expires_at=expires_at
    )


class SubscriptionEventType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class SubscriptionEvent:
    """Change notification for one subscription row."""

    event_type: SubscriptionEventType
    subscription_id: UUID
    user_id: UUID
    old_household_id: UUID | None = None
    new_household_id: UUID | None = None
    old_status: SubscriptionStatus | None = None
    new_status: SubscriptionStatus | None = None
    old_period_end_at: datetime | None = None
    new_period_end_at: datetime | None = None

    @classmethod
    def inserted(cls, sub: Subscription) -> "SubscriptionEvent":
        return cls(
            event_type=SubscriptionEventType.INSERT,
            subscription_id=sub.id,
            user_id=sub.user_id,
            new_household_id=sub.household_id,
            new_status=sub.status,
            new_period_end_at=sub.current_period_end_at,
        )

    @classmethod
    def updated(cls, old: Subscription, new: Subscription) -> "SubscriptionEvent":
        return cls(
            event_type=SubscriptionEventType.UPDATE,
            subscription_id=new.id,
            user_id=new.user_id,
            old_household_id=old.household_id,
            new_household_id=new.household_id,
            old_status=old.status,
            new_status=new.status,
            old_period_end_at=old.current_period_end_at,
            new_period_end_at=new.current_period_end_at,
        )

    @classmethod
    def deleted(cls, sub: Subscription) -> "SubscriptionEvent":
        return cls(
            event_type=SubscriptionEventType.DELETE,
            subscription_id=sub.id,
            user_id=sub.user_id,
            old_household_id=sub.household_id,
            old_status=sub.status,
            old_period_end_at=sub.current_period_end_at,
        )

    def affected_household_ids(self) -> list[UUID]:
        """Households whose funding determination this event may change."""
        if self.event_type == SubscriptionEventType.INSERT:
            return [self.new_household_id] if self.new_household_id else []
        if self.event_type == SubscriptionEventType.DELETE:
            return [self.old_household_id] if self.old_household_id else []

        if self.old_household_id != self.new_household_id:
            return [
                hid
                for hid in (self.old_household_id, self.new_household_id)
                if hid is not None
            ]
        changed = (
            self.old_status != self.new_status
            or self.old_period_end_at != self.new_period_end_at
        )
        if changed and self.new_household_id is not None:
            return [self.new_household_id]
        return []
