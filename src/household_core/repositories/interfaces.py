from abc import ABC, abstractmethod
from collections.abc import Iterable
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from household_core.domain.entitlements import Entitlement, Plan, Subscription
from household_core.domain.households import (
    Household,
    JoinRequestResolution,
    MemberCapJoinRequest,
    Membership,
)
from household_core.domain.invites import Invite
from household_core.domain.profiles import Avatar, Profile
from household_core.domain.usage import UsageMetric


class Database(ABC):
    """Connection manager shared by every repository of one backend."""

    @abstractmethod
    def initialize(self) -> None:
        pass

    @abstractmethod
    def transaction(self) -> AbstractContextManager[Any]:
        """Run the enclosed statements as one atomic unit.

        Nested calls join the outermost transaction.
        """
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class HouseholdRepository(ABC):
    @abstractmethod
    def add(self, household: Household) -> None:
        pass

    @abstractmethod
    def get(self, household_id: UUID) -> Household | None:
        pass

    @abstractmethod
    def lock(self, household_id: UUID) -> Household | None:
        """Read the household holding an exclusive row lock until commit."""
        pass

    @abstractmethod
    def list_all(self) -> Iterable[Household]:
        pass

    @abstractmethod
    def update(self, household: Household) -> None:
        pass


class MembershipRepository(ABC):
    @abstractmethod
    def add(self, membership: Membership) -> None:
        """Insert a stint.

        Raises:
            OpenStintConflictError: the user already holds a current stint.
        """
        pass

    @abstractmethod
    def close(self, membership_id: UUID, at: datetime) -> bool:
        """Close an open stint. Returns False when no open stint matched."""
        pass

    @abstractmethod
    def get(self, membership_id: UUID) -> Membership | None:
        pass

    @abstractmethod
    def get_current_for_user(self, user_id: UUID) -> Membership | None:
        pass

    @abstractmethod
    def get_current(self, household_id: UUID, user_id: UUID) -> Membership | None:
        pass

    @abstractmethod
    def get_current_owner(self, household_id: UUID) -> Membership | None:
        pass

    @abstractmethod
    def list_current(self, household_id: UUID) -> Iterable[Membership]:
        pass

    @abstractmethod
    def list_history(self, household_id: UUID) -> Iterable[Membership]:
        pass


class InviteRepository(ABC):
    @abstractmethod
    def add_if_no_open(self, invite: Invite) -> bool:
        """Insert unless the household already has an open invite.

        Returns False when the open-invite slot was taken.

        Raises:
            DuplicateInviteCodeError: the code was issued before.
        """
        pass

    @abstractmethod
    def get(self, invite_id: UUID) -> Invite | None:
        pass

    @abstractmethod
    def get_open(self, household_id: UUID) -> Invite | None:
        pass

    @abstractmethod
    def get_by_code(self, code: str) -> Invite | None:
        pass

    @abstractmethod
    def code_exists(self, code: str) -> bool:
        pass

    @abstractmethod
    def revoke(self, invite_id: UUID, at: datetime) -> bool:
        """Revoke one invite if still open. Returns False otherwise."""
        pass

    @abstractmethod
    def increment_used_count(self, invite_id: UUID) -> None:
        pass

    @abstractmethod
    def list_by_household(self, household_id: UUID) -> Iterable[Invite]:
        pass


class EntitlementRepository(ABC):
    @abstractmethod
    def get(self, household_id: UUID) -> Entitlement | None:
        pass

    @abstractmethod
    def upsert(self, entitlement: Entitlement) -> None:
        pass


class SubscriptionRepository(ABC):
    @abstractmethod
    def add(self, subscription: Subscription) -> None:
        pass

    @abstractmethod
    def get(self, subscription_id: UUID) -> Subscription | None:
        pass

    @abstractmethod
    def get_by_key(self, user_id: UUID, entitlement_key: str) -> Subscription | None:
        pass

    @abstractmethod
    def update(self, subscription: Subscription) -> None:
        pass

    @abstractmethod
    def delete(self, subscription_id: UUID) -> None:
        pass

    @abstractmethod
    def list_for_user(self, user_id: UUID) -> Iterable[Subscription]:
        pass

    @abstractmethod
    def list_for_household(self, household_id: UUID) -> Iterable[Subscription]:
        pass


class UsageCounterRepository(ABC):
    @abstractmethod
    def get_counts(self, household_id: UUID) -> dict[UsageMetric, int]:
        pass

    @abstractmethod
    def apply_delta(self, household_id: UUID, metric: UsageMetric, delta: int) -> int:
        """Add a signed delta, clamping at zero. Returns the new count."""
        pass

    @abstractmethod
    def get_plan_limits(self, plan: Plan) -> dict[UsageMetric, int]:
        pass


class ProfileRepository(ABC):
    @abstractmethod
    def get(self, user_id: UUID) -> Profile | None:
        pass

    @abstractmethod
    def upsert(self, profile: Profile) -> None:
        pass

    @abstractmethod
    def list_avatar_ids_in_use(
        self, household_id: UUID, exclude_user_id: UUID | None = None
    ) -> set[UUID]:
        """Avatars held by current members of the household."""
        pass


class AvatarRepository(ABC):
    @abstractmethod
    def add(self, avatar: Avatar) -> None:
        pass

    @abstractmethod
    def get(self, avatar_id: UUID) -> Avatar | None:
        pass

    @abstractmethod
    def list_all(self) -> Iterable[Avatar]:
        """Catalog in assignment order."""
        pass


class JoinRequestRepository(ABC):
    @abstractmethod
    def add_or_get_open(self, request: MemberCapJoinRequest) -> MemberCapJoinRequest:
        """Insert the request, or return the open one for the same joiner."""
        pass

    @abstractmethod
    def list_open(self, household_id: UUID) -> Iterable[MemberCapJoinRequest]:
        """Open requests, oldest first."""
        pass

    @abstractmethod
    def resolve(
        self,
        household_id: UUID,
        resolution: JoinRequestResolution,
        at: datetime,
        request_ids: Iterable[UUID] | None = None,
    ) -> int:
        """Close open requests, all of them unless ids are given. Returns the count."""
        pass


@dataclass
class Repositories:
    """One backend's repositories, sharing a single Database."""

    database: Database
    households: HouseholdRepository
    memberships: MembershipRepository
    invites: InviteRepository
    entitlements: EntitlementRepository
    subscriptions: SubscriptionRepository
    usage: UsageCounterRepository
    profiles: ProfileRepository
    avatars: AvatarRepository
    join_requests: JoinRequestRepository
