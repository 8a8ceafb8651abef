from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from household_core.domain.entitlements import (
    Entitlement,
    Plan,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
    SubscriptionStore,
)
from household_core.domain.households import (
    Household,
    MemberCapJoinRequest,
    MemberRole,
    Membership,
)
from household_core.domain.invites import Invite
from household_core.domain.profiles import Avatar
from household_core.domain.usage import UsageMetric

SubscriptionListener = Callable[[SubscriptionEvent], None]
UpgradeListener = Callable[[UUID], object]
Deltas = Mapping[str | UsageMetric, Any]


@dataclass
class HouseholdCreated:
    household: Household
    invite: Invite
    membership: Membership


@dataclass
class JoinResult:
    status: str
    code: str
    household_id: UUID

    @property
    def joined(self) -> bool:
        return self.code == "joined"


@dataclass
class LeaveResult:
    ok: bool
    code: str
    household_id: UUID
    role_before: MemberRole
    members_remaining: int
    household_deactivated: bool

    @property
    def data(self) -> dict[str, Any]:
        return {
            "household_id": self.household_id,
            "role_before": self.role_before.value,
            "members_remaining": self.members_remaining,
            "home_deactivated": self.household_deactivated,
        }


@dataclass
class TransferResult:
    status: str
    code: str
    household_id: UUID
    new_owner_id: UUID


@dataclass
class KickResult:
    status: str
    code: str
    household_id: UUID
    user_id: UUID
    members_remaining: int

    @property
    def data(self) -> dict[str, Any]:
        return {
            "household_id": self.household_id,
            "user_id": self.user_id,
            "members_remaining": self.members_remaining,
        }


@dataclass
class RotateResult:
    invite_id: UUID
    invite_code: str


@dataclass
class RevokeResult:
    status: str
    code: str
    message: str
    household_id: UUID
    invite_id: UUID | None = None
    revoked_at: datetime | None = None


@dataclass
class MemberSummary:
    user_id: UUID
    role: MemberRole
    valid_from: datetime
    username: str | None = None
    avatar_id: UUID | None = None

    @property
    def can_transfer_to(self) -> bool:
        return self.role != MemberRole.OWNER


@dataclass
class JoinRequestSummary:
    request_id: UUID
    joiner_user_id: UUID
    requested_at: datetime
    username: str | None = None


@dataclass
class PlanStatus:
    plan: Plan
    household_id: UUID


@dataclass
class PaywallStatus:
    household_id: UUID
    plan: Plan
    usage: dict[UsageMetric, int] = field(default_factory=dict)
    limits: dict[UsageMetric, int] = field(default_factory=dict)

    @property
    def is_premium(self) -> bool:
        return self.plan == Plan.PREMIUM


class QuotaService(ABC):
    @abstractmethod
    def effective_plan(self, household_id: UUID, as_of: datetime | None = None) -> Plan:
        pass

    @abstractmethod
    def assert_quota(self, household_id: UUID, deltas: Deltas) -> None:
        pass

    @abstractmethod
    def apply_delta(self, household_id: UUID, deltas: Deltas) -> dict[UsageMetric, int]:
        pass

    @abstractmethod
    def admit(
        self, caller_id: UUID | None, household_id: UUID, deltas: Deltas
    ) -> dict[UsageMetric, int]:
        pass

    @abstractmethod
    def paywall_status(self, caller_id: UUID | None, household_id: UUID) -> PaywallStatus:
        pass


class EntitlementSyncService(ABC):
    @abstractmethod
    def on_upgrade(self, listener: UpgradeListener) -> None:
        pass

    @abstractmethod
    def refresh(self, household_id: UUID, as_of: datetime | None = None) -> Entitlement:
        pass

    @abstractmethod
    def handle(self, event: SubscriptionEvent) -> list[Entitlement]:
        pass

    @abstractmethod
    def get(self, household_id: UUID) -> Entitlement:
        pass


class SubscriptionService(ABC):
    @abstractmethod
    def subscribe(self, listener: SubscriptionListener) -> None:
        pass

    @abstractmethod
    def record(
        self,
        user_id: UUID,
        entitlement_key: str,
        store: SubscriptionStore,
        product_id: str,
        status: SubscriptionStatus,
        current_period_end_at: datetime | None = None,
    ) -> Subscription:
        pass

    @abstractmethod
    def attach_floating(self, user_id: UUID, household_id: UUID) -> list[Subscription]:
        pass

    @abstractmethod
    def detach(self, user_id: UUID, household_id: UUID) -> list[Subscription]:
        pass

    @abstractmethod
    def delete(self, subscription_id: UUID) -> None:
        pass


class InviteService(ABC):
    @abstractmethod
    def issue_initial(self, household_id: UUID) -> Invite:
        pass

    @abstractmethod
    def rotate(self, caller_id: UUID | None, household_id: UUID) -> RotateResult:
        pass

    @abstractmethod
    def revoke(self, caller_id: UUID | None, household_id: UUID) -> RevokeResult:
        pass

    @abstractmethod
    def get_active(self, caller_id: UUID | None, household_id: UUID) -> Invite:
        pass

    @abstractmethod
    def ensure_open(self, household_id: UUID) -> Invite:
        pass

    @abstractmethod
    def resolve(self, code: str) -> Invite:
        pass

    @abstractmethod
    def record_use(self, invite_id: UUID) -> None:
        pass


class AvatarService(ABC):
    @abstractmethod
    def ensure_unique_avatar(self, household_id: UUID, user_id: UUID) -> UUID:
        pass

    @abstractmethod
    def list_available(self, caller_id: UUID | None, household_id: UUID) -> list[Avatar]:
        pass


class MembershipService(ABC):
    @abstractmethod
    def create_household(self, caller_id: UUID | None, name: str) -> HouseholdCreated:
        pass

    @abstractmethod
    def join(self, caller_id: UUID | None, code: str) -> JoinResult:
        pass

    @abstractmethod
    def leave(self, caller_id: UUID | None, household_id: UUID) -> LeaveResult:
        pass

    @abstractmethod
    def transfer_owner(
        self, caller_id: UUID | None, household_id: UUID, new_owner_id: UUID
    ) -> TransferResult:
        pass

    @abstractmethod
    def kick(
        self, caller_id: UUID | None, household_id: UUID, target_id: UUID
    ) -> KickResult:
        pass

    @abstractmethod
    def get_current_membership(self, caller_id: UUID | None) -> Membership | None:
        pass

    @abstractmethod
    def list_members(
        self, caller_id: UUID | None, household_id: UUID
    ) -> list[MemberSummary]:
        pass

    @abstractmethod
    def get_plan_status(self, caller_id: UUID | None) -> PlanStatus:
        pass

    @abstractmethod
    def list_join_requests(
        self, caller_id: UUID | None, household_id: UUID
    ) -> list[JoinRequestSummary]:
        pass

    @abstractmethod
    def dismiss_join_requests(self, caller_id: UUID | None, household_id: UUID) -> int:
        pass

    @abstractmethod
    def process_join_requests(self, household_id: UUID) -> list[MemberCapJoinRequest]:
        pass
