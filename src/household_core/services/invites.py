"""Invite issuing, rotation, revocation and code resolution."""

from collections.abc import Callable
from datetime import UTC, datetime
from uuid import UUID

from household_core.domain.invites import (
    Invite,
    generate_invite_code,
    is_valid_invite_code,
    normalize_invite_code,
)
from household_core.exceptions import (
    DuplicateInviteCodeError,
    InvalidInviteCodeError,
    NotFoundError,
    StateChangedRetryError,
)
from household_core.logging_config import get_logger
from household_core.repositories.interfaces import (
    Database,
    HouseholdRepository,
    InviteRepository,
    MembershipRepository,
)
from household_core.services.access import (
    require_caller,
    require_household,
    require_member,
    require_owner,
)
from household_core.services.interfaces import InviteService, RevokeResult, RotateResult

logger = get_logger(__name__)


class InviteServiceImpl(InviteService):
    """Issues six-symbol join codes, at most one open per household.

    The store rejects a second open invite for a household. Creation does
    not take the household lock; an insert that loses the open-invite race
    returns the invite that won instead of retrying, so concurrent
    rotations converge on one code. Issued codes are globally unique; a
    generated code that was ever issued before is replaced by a fresh one.
    """

    def __init__(
        self,
        database: Database,
        household_repo: HouseholdRepository,
        membership_repo: MembershipRepository,
        invite_repo: InviteRepository,
        code_generator: Callable[[], str] = generate_invite_code,
        max_code_attempts: int = 5,
    ) -> None:
        self._db = database
        self._household_repo = household_repo
        self._membership_repo = membership_repo
        self._invite_repo = invite_repo
        self._code_generator = code_generator
        self._max_code_attempts = max_code_attempts

    def issue_initial(self, household_id: UUID) -> Invite:
        with self._db.transaction():
            return self._insert_or_get_open(household_id)

    def rotate(self, caller_id: UUID | None, household_id: UUID) -> RotateResult:
        """Replace the household's open invite with a fresh code (owner only)."""
        caller = require_caller(caller_id)
        observed = self._invite_repo.get_open(household_id)

        with self._db.transaction():
            household = require_household(self._household_repo, household_id)
            require_owner(household, self._membership_repo, caller)

            now = datetime.now(UTC)
            if observed is not None:
                # Only the invite seen before the write began. If a concurrent
                # rotation already replaced it, its replacement wins below.
                self._invite_repo.revoke(observed.id, now)
            invite = self._insert_or_get_open(household_id)

        logger.info(
            "invite_rotated",
            household_id=str(household_id),
            invite_id=str(invite.id),
            revoked_invite_id=str(observed.id) if observed else None,
        )
        return RotateResult(invite_id=invite.id, invite_code=invite.code)

    def revoke(self, caller_id: UUID | None, household_id: UUID) -> RevokeResult:
        """Revoke the open invite; having none is informational, not an error."""
        caller = require_caller(caller_id)
        with self._db.transaction():
            household = require_household(self._household_repo, household_id)
            require_owner(household, self._membership_repo, caller)

            invite = self._invite_repo.get_open(household_id)
            if invite is None:
                return RevokeResult(
                    status="info",
                    code="no_active_invite",
                    message="No active invite to revoke",
                    household_id=household_id,
                )

            revoked_at = datetime.now(UTC)
            if not self._invite_repo.revoke(invite.id, revoked_at):
                raise StateChangedRetryError(
                    "Invite changed while revoking", invite_id=invite.id
                )

        logger.info(
            "invite_revoked", household_id=str(household_id), invite_id=str(invite.id)
        )
        return RevokeResult(
            status="success",
            code="invite_revoked",
            message="Invite revoked",
            household_id=household_id,
            invite_id=invite.id,
            revoked_at=revoked_at,
        )

    def get_active(self, caller_id: UUID | None, household_id: UUID) -> Invite:
        caller = require_caller(caller_id)
        require_household(self._household_repo, household_id)
        require_member(self._membership_repo, household_id, caller)
        invite = self._invite_repo.get_open(household_id)
        if invite is None:
            raise NotFoundError("invite", household_id)
        return invite

    def resolve(self, code: str) -> Invite:
        """Look up an invite by case-insensitive code, open or not."""
        normalized = normalize_invite_code(code)
        if not is_valid_invite_code(normalized):
            raise InvalidInviteCodeError(code)
        invite = self._invite_repo.get_by_code(normalized)
        if invite is None:
            raise InvalidInviteCodeError(normalized)
        return invite

    def ensure_open(self, household_id: UUID) -> Invite:
        """The household's open invite, issuing one if it has none."""
        with self._db.transaction():
            invite = self._invite_repo.get_open(household_id)
            if invite is not None:
                return invite
            return self._insert_or_get_open(household_id)

    def record_use(self, invite_id: UUID) -> None:
        self._invite_repo.increment_used_count(invite_id)

    def _insert_or_get_open(self, household_id: UUID) -> Invite:
        for _ in range(self._max_code_attempts):
            code = normalize_invite_code(self._code_generator())
            if self._invite_repo.code_exists(code):
                logger.debug("invite_code_collision", household_id=str(household_id))
                continue

            invite = Invite(household_id=household_id, code=code)
            try:
                inserted = self._invite_repo.add_if_no_open(invite)
            except DuplicateInviteCodeError:
                logger.debug("invite_code_collision", household_id=str(household_id))
                continue
            if inserted:
                return invite

            winner = self._invite_repo.get_open(household_id)
            if winner is not None:
                logger.info(
                    "invite_insert_lost_race",
                    household_id=str(household_id),
                    invite_id=str(winner.id),
                )
                return winner

        raise StateChangedRetryError(
            "Could not issue an invite code", household_id=household_id
        )
