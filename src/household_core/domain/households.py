"""Household and membership stint domain models."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from uuid import UUID, uuid4


def _utc_now() -> datetime:
    return datetime.now(UTC)


class MemberRole(str, Enum):
    OWNER = "owner"
    MEMBER = "member"


@dataclass
class Household:
    name: str
    owner_user_id: UUID
    id: UUID = field(default_factory=uuid4)
    is_active: bool = True
    deactivated_at: datetime | None = None
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    def deactivate(self, at: datetime | None = None) -> None:
        """Mark the household inactive. Households are never deleted."""
        at = at or _utc_now()
        self.is_active = False
        self.deactivated_at = at
        self.updated_at = at

    def set_owner(self, user_id: UUID) -> None:
        self.owner_user_id = user_id
        self.updated_at = _utc_now()


@dataclass
class Membership:
    """One continuous period of a user's role in a household.

    A stint is open while valid_to is None. Closing sets valid_to and the
    row is never reopened; role changes always start a fresh stint.
    """

    user_id: UUID
    household_id: UUID
    role: MemberRole = MemberRole.MEMBER
    id: UUID = field(default_factory=uuid4)
    valid_from: datetime = field(default_factory=_utc_now)
    valid_to: datetime | None = None
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    @property
    def is_current(self) -> bool:
        return self.valid_to is None

    @property
    def is_owner(self) -> bool:
        return self.role == MemberRole.OWNER

    def close(self, at: datetime | None = None) -> None:
        if self.valid_to is not None:
            raise ValueError(f"Membership stint {self.id} is already closed")
        at = at or _utc_now()
        self.valid_to = at
        self.updated_at = at


class JoinRequestResolution(str, Enum):
    JOINED = "joined"
    JOINER_SUPERSEDED = "joiner_superseded"
    HOME_INACTIVE = "home_inactive"
    INVITE_MISSING = "invite_missing"
    OWNER_DISMISSED = "owner_dismissed"


@dataclass
class MemberCapJoinRequest:
    """A join attempt turned away by the free plan's member cap.

    At most one request per household and joiner stays open. It is resolved
    when the owner dismisses the queue or once the household turns premium.
    """

    household_id: UUID
    joiner_user_id: UUID
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=_utc_now)
    resolved_at: datetime | None = None
    resolution: JoinRequestResolution | None = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None
