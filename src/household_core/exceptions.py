"""Domain exception hierarchy for Household Core.

All domain-specific exceptions inherit from HouseholdCoreError. Each carries
a machine-readable error_code, a human message, a context payload and the
HTTP status the API layer answers with. Every invariant violation is a 4xx;
only storage failures map to 5xx.
"""

from typing import Any
from uuid import UUID


class HouseholdCoreError(Exception):
    """Base exception for all Household Core errors."""

    error_code: str = "HOUSEHOLD_CORE_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        if status_code:
            self.status_code = status_code
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.error_code,
            "message": self.message,
            "context": self.context,
        }


# =============================================================================
# Identity and Authorization Errors
# =============================================================================


class UnauthenticatedError(HouseholdCoreError):
    """Raised when an operation is invoked without a caller identity."""

    error_code = "UNAUTHENTICATED"
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Authentication required")


class ForbiddenError(HouseholdCoreError):
    """Raised when the caller lacks the role an operation requires."""

    error_code = "FORBIDDEN"
    status_code = 403

    def __init__(self, message: str, *, household_id: UUID | None = None) -> None:
        context = {"household_id": str(household_id)} if household_id else {}
        super().__init__(message, context=context)


class ProfileDeactivatedError(HouseholdCoreError):
    """Raised when a deactivated profile tries to create or join a household."""

    error_code = "PROFILE_DEACTIVATED"
    status_code = 403

    def __init__(self, user_id: UUID) -> None:
        super().__init__(
            "Profile is deactivated",
            context={"user_id": str(user_id)},
        )


# =============================================================================
# Membership Errors
# =============================================================================


class MembershipError(HouseholdCoreError):
    """Base exception for membership precondition failures."""

    error_code = "MEMBERSHIP_ERROR"
    status_code = 409


class NotMemberError(MembershipError):
    """Raised when the caller holds no current stint in the household."""

    error_code = "NOT_MEMBER"
    status_code = 403

    def __init__(self, user_id: UUID, household_id: UUID) -> None:
        super().__init__(
            "You are not a current member of this household",
            context={"user_id": str(user_id), "household_id": str(household_id)},
        )


class TargetNotMemberError(MembershipError):
    """Raised when the user being acted on is not a current member."""

    error_code = "TARGET_NOT_MEMBER"
    status_code = 404

    def __init__(self, user_id: UUID, household_id: UUID) -> None:
        super().__init__(
            "Target user is not a current member of this household",
            context={"user_id": str(user_id), "household_id": str(household_id)},
        )


class AlreadyInOtherHomeError(MembershipError):
    """Raised when a user with a current stint elsewhere tries to join."""

    error_code = "ALREADY_IN_OTHER_HOME"

    def __init__(self, user_id: UUID, household_id: UUID | None = None) -> None:
        context = {"user_id": str(user_id)}
        if household_id:
            context["current_household_id"] = str(household_id)
        super().__init__(
            "You are already a member of another household", context=context
        )


class OwnerMustTransferFirstError(MembershipError):
    """Raised when an owner tries to leave while other members remain."""

    error_code = "OWNER_MUST_TRANSFER_FIRST"

    def __init__(self, household_id: UUID, members_remaining: int) -> None:
        super().__init__(
            "Transfer ownership before leaving a household with other members",
            context={
                "household_id": str(household_id),
                "members_remaining": members_remaining,
            },
        )


class CannotKickOwnerError(MembershipError):
    """Raised when the kick target is the current owner."""

    error_code = "CANNOT_KICK_OWNER"

    def __init__(self, household_id: UUID) -> None:
        super().__init__(
            "The household owner cannot be removed",
            context={"household_id": str(household_id)},
        )


class NewOwnerNotMemberError(MembershipError):
    """Raised when ownership is offered to someone outside the household."""

    error_code = "NEW_OWNER_NOT_MEMBER"

    def __init__(self, user_id: UUID, household_id: UUID) -> None:
        super().__init__(
            "New owner must be a current member of the household",
            context={"user_id": str(user_id), "household_id": str(household_id)},
        )


class InvalidNewOwnerError(MembershipError):
    """Raised when the owner names themselves as the new owner."""

    error_code = "INVALID_NEW_OWNER"
    status_code = 422

    def __init__(self, user_id: UUID) -> None:
        super().__init__(
            "New owner must be a different member",
            context={"user_id": str(user_id)},
        )


class NoCurrentHomeError(MembershipError):
    """Raised when a household-scoped read finds no current stint."""

    error_code = "NO_CURRENT_HOME"
    status_code = 404

    def __init__(self, user_id: UUID) -> None:
        super().__init__(
            "You are not a member of any household",
            context={"user_id": str(user_id)},
        )


class StateChangedRetryError(HouseholdCoreError):
    """Raised when an expected row mutation affected zero rows.

    The caller should retry the whole operation.
    """

    error_code = "STATE_CHANGED_RETRY"
    status_code = 409

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(
            message,
            context={key: str(value) for key, value in context.items()},
        )


# =============================================================================
# Invite Errors
# =============================================================================


class InviteError(HouseholdCoreError):
    """Base exception for invite redemption errors."""

    error_code = "INVITE_ERROR"
    status_code = 400


class InvalidInviteCodeError(InviteError):
    """Raised when no invite matches the supplied code."""

    error_code = "INVALID_CODE"

    def __init__(self, code: str) -> None:
        super().__init__("Invite code not found", context={"code": code})


class InactiveInviteError(InviteError):
    """Raised when the invite is revoked or its household is deactivated."""

    error_code = "INACTIVE_INVITE"
    status_code = 410

    def __init__(self, code: str, household_id: UUID) -> None:
        super().__init__(
            "Invite code is no longer active",
            context={"code": code, "household_id": str(household_id)},
        )


# =============================================================================
# Quota Errors
# =============================================================================


class QuotaError(HouseholdCoreError):
    """Base exception for usage quota errors."""

    error_code = "QUOTA_ERROR"
    status_code = 400


class QuotaExceededError(QuotaError):
    """Raised when a delta would push a counter past the plan ceiling."""

    error_code = "QUOTA_EXCEEDED"
    status_code = 402

    def __init__(
        self,
        household_id: UUID,
        metric: str,
        plan: str,
        limit: int,
        current: int,
        projected: int,
    ) -> None:
        super().__init__(
            f"Free plan limit reached for {metric}",
            context={
                "household_id": str(household_id),
                "limit_type": metric,
                "plan": plan,
                "max": limit,
                "current": current,
                "projected": projected,
            },
        )


class InvalidQuotaDeltaError(QuotaError):
    """Raised for unknown metrics or non-integer deltas."""

    error_code = "INVALID_QUOTA_DELTA"
    status_code = 422

    def __init__(self, metric: str, value: Any) -> None:
        super().__init__(
            f"Invalid quota delta for {metric}",
            context={"metric": metric, "value": repr(value)},
        )


# =============================================================================
# Avatar Errors
# =============================================================================


class NoAvailableAvatarError(HouseholdCoreError):
    """Raised when every plan-eligible avatar is taken in the household."""

    error_code = "NO_AVAILABLE_AVATAR"
    status_code = 409

    def __init__(self, household_id: UUID, plan: str) -> None:
        super().__init__(
            "No avatars available for this household",
            context={"household_id": str(household_id), "plan": plan},
        )


# =============================================================================
# Lookup Errors
# =============================================================================


class NotFoundError(HouseholdCoreError):
    """Raised when a referenced record does not exist."""

    error_code = "NOT_FOUND"
    status_code = 404

    def __init__(self, kind: str, identifier: UUID | str) -> None:
        super().__init__(
            f"{kind.capitalize()} not found: {identifier}",
            context={"kind": kind, "id": str(identifier)},
        )


# =============================================================================
# Database Errors
# =============================================================================


class DatabaseError(HouseholdCoreError):
    """Base exception for database-related errors."""

    error_code = "DATABASE_ERROR"
    status_code = 500


class IntegrityError(DatabaseError):
    """Raised when a database integrity constraint is violated."""

    error_code = "DATABASE_INTEGRITY_ERROR"
    status_code = 409


class OpenStintConflictError(IntegrityError):
    """Raised when inserting a second current stint for the same user."""

    def __init__(self, user_id: UUID) -> None:
        super().__init__(
            "User already holds a current membership",
            context={"user_id": str(user_id)},
        )


class DuplicateInviteCodeError(IntegrityError):
    """Raised when a generated invite code was issued before."""

    def __init__(self, code: str) -> None:
        super().__init__("Invite code already issued", context={"code": code})


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(HouseholdCoreError):
    """Raised when input data fails validation."""

    error_code = "VALIDATION_ERROR"
    status_code = 422
