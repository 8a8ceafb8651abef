"""Caller and role checks shared by the household services."""

from uuid import UUID

from household_core.domain.households import Household, Membership
from household_core.exceptions import (
    ForbiddenError,
    NotFoundError,
    NotMemberError,
    UnauthenticatedError,
)
from household_core.repositories.interfaces import (
    HouseholdRepository,
    MembershipRepository,
)


def require_caller(caller_id: UUID | None) -> UUID:
    if caller_id is None:
        raise UnauthenticatedError()
    return caller_id


def require_household(
    households: HouseholdRepository, household_id: UUID, *, lock: bool = False
) -> Household:
    household = households.lock(household_id) if lock else households.get(household_id)
    if household is None:
        raise NotFoundError("household", household_id)
    return household


def require_member(
    memberships: MembershipRepository, household_id: UUID, user_id: UUID
) -> Membership:
    membership = memberships.get_current(household_id, user_id)
    if membership is None:
        raise NotMemberError(user_id, household_id)
    return membership


def require_owner(
    household: Household, memberships: MembershipRepository, user_id: UUID
) -> Membership:
    """Caller must hold the current owner stint of an active household."""
    if not household.is_active:
        raise ForbiddenError("Household is not active", household_id=household.id)
    membership = memberships.get_current(household.id, user_id)
    if membership is None or not membership.is_owner:
        raise ForbiddenError(
            "Only the household owner can do this", household_id=household.id
        )
    return membership
