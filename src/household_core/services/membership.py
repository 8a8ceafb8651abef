"""Household membership lifecycle: create, join, leave, transfer, kick, join requests."""

from datetime import UTC, datetime
from uuid import UUID

from household_core.domain.entitlements import Plan
from household_core.domain.households import (
    Household,
    JoinRequestResolution,
    MemberCapJoinRequest,
    MemberRole,
    Membership,
)
from household_core.domain.usage import UsageMetric
from household_core.exceptions import (
    AlreadyInOtherHomeError,
    CannotKickOwnerError,
    InactiveInviteError,
    InvalidNewOwnerError,
    NewOwnerNotMemberError,
    NoCurrentHomeError,
    OpenStintConflictError,
    OwnerMustTransferFirstError,
    ProfileDeactivatedError,
    QuotaExceededError,
    StateChangedRetryError,
    TargetNotMemberError,
    ValidationError,
)
from household_core.logging_config import get_logger, household_context
from household_core.repositories.interfaces import (
    Database,
    HouseholdRepository,
    JoinRequestRepository,
    MembershipRepository,
    ProfileRepository,
)
from household_core.services.access import (
    require_caller,
    require_household,
    require_member,
    require_owner,
)
from household_core.services.collaborators import ChoreCollaborator
from household_core.services.interfaces import (
    AvatarService,
    EntitlementSyncService,
    HouseholdCreated,
    InviteService,
    JoinRequestSummary,
    JoinResult,
    KickResult,
    LeaveResult,
    MembershipService,
    MemberSummary,
    PlanStatus,
    QuotaService,
    SubscriptionService,
    TransferResult,
)

logger = get_logger(__name__)

MAX_HOUSEHOLD_NAME_LENGTH = 100


def _utc_now() -> datetime:
    return datetime.now(UTC)


class MembershipServiceImpl(MembershipService):
    """Membership state machine over append-only stints.

    Every mutation runs in one transaction that starts by locking the
    household row. Quota admission, counter deltas, subscription moves and
    avatar assignment happen inside that same transaction, so a failure at
    any step leaves no partial state behind.
    """

    def __init__(
        self,
        database: Database,
        household_repo: HouseholdRepository,
        membership_repo: MembershipRepository,
        profile_repo: ProfileRepository,
        join_request_repo: JoinRequestRepository,
        invite_service: InviteService,
        quota_service: QuotaService,
        entitlement_service: EntitlementSyncService,
        subscription_service: SubscriptionService,
        avatar_service: AvatarService,
        chore_collaborator: ChoreCollaborator,
    ) -> None:
        self._db = database
        self._household_repo = household_repo
        self._membership_repo = membership_repo
        self._profile_repo = profile_repo
        self._join_requests = join_request_repo
        self._invites = invite_service
        self._quota = quota_service
        self._entitlements = entitlement_service
        self._subscriptions = subscription_service
        self._avatars = avatar_service
        self._chores = chore_collaborator

    def create_household(self, caller_id: UUID | None, name: str) -> HouseholdCreated:
        """Create a household owned by the caller and seed its first invite.

        Raises:
            UnauthenticatedError: no caller identity
            ProfileDeactivatedError: the caller's profile is deactivated
            AlreadyInOtherHomeError: the caller already has a current stint
        """
        caller = require_caller(caller_id)
        name = name.strip()
        if not name or len(name) > MAX_HOUSEHOLD_NAME_LENGTH:
            raise ValidationError(
                f"Household name must be 1-{MAX_HOUSEHOLD_NAME_LENGTH} characters",
                context={"name": name},
            )
        self._assert_active_profile(caller)

        with self._db.transaction():
            current = self._membership_repo.get_current_for_user(caller)
            if current is not None:
                raise AlreadyInOtherHomeError(caller, current.household_id)

            now = _utc_now()
            household = Household(
                name=name, owner_user_id=caller, created_at=now, updated_at=now
            )
            self._household_repo.add(household)
            membership = Membership(
                user_id=caller,
                household_id=household.id,
                role=MemberRole.OWNER,
                valid_from=now,
            )
            self._add_stint(membership)

            self._quota.apply_delta(household.id, {UsageMetric.ACTIVE_MEMBERS: 1})
            self._entitlements.refresh(household.id)
            invite = self._invites.issue_initial(household.id)
            self._subscriptions.attach_floating(caller, household.id)
            self._avatars.ensure_unique_avatar(household.id, caller)

        logger.info(
            "household_created",
            household_id=str(household.id),
            owner_user_id=str(caller),
            invite_id=str(invite.id),
        )
        return HouseholdCreated(household=household, invite=invite, membership=membership)

    def join(self, caller_id: UUID | None, code: str) -> JoinResult:
        """Redeem an invite code.

        Joining the household the caller already belongs to is a no-op that
        reports already_member. A join refused by the member cap still
        commits a join request for the owner to see; it is admitted
        automatically once the household turns premium.

        Raises:
            UnauthenticatedError: no caller identity
            ProfileDeactivatedError: the caller's profile is deactivated
            InvalidInviteCodeError: no invite has this code
            InactiveInviteError: the invite is revoked or the household inactive
            AlreadyInOtherHomeError: the caller belongs to another household
            QuotaExceededError: the household is at its member ceiling
        """
        caller = require_caller(caller_id)
        self._assert_active_profile(caller)

        blocked: QuotaExceededError | None = None
        with self._db.transaction():
            invite = self._invites.resolve(code)
            household = self._household_repo.lock(invite.household_id)
            if household is None or not household.is_active or not invite.is_open:
                raise InactiveInviteError(invite.code, invite.household_id)

            current = self._membership_repo.get_current_for_user(caller)
            if current is not None and current.household_id == household.id:
                return JoinResult(
                    status="success", code="already_member", household_id=household.id
                )
            if current is not None:
                raise AlreadyInOtherHomeError(caller, current.household_id)

            try:
                self._quota.assert_quota(household.id, {UsageMetric.ACTIVE_MEMBERS: 1})
            except QuotaExceededError as e:
                request = self._join_requests.add_or_get_open(
                    MemberCapJoinRequest(household_id=household.id, joiner_user_id=caller)
                )
                e.context["join_request_id"] = str(request.id)
                blocked = e
            else:
                self._admit_member(household.id, caller, invite.id)

        if blocked is not None:
            logger.info(
                "join_blocked_by_member_cap",
                household_id=str(household.id),
                user_id=str(caller),
                join_request_id=blocked.context["join_request_id"],
            )
            raise blocked

        logger.info(
            "member_joined",
            household_id=str(household.id),
            user_id=str(caller),
            invite_id=str(invite.id),
        )
        return JoinResult(status="success", code="joined", household_id=household.id)

    def leave(self, caller_id: UUID | None, household_id: UUID) -> LeaveResult:
        """Close the caller's stint; the last member out deactivates the household.

        Raises:
            UnauthenticatedError: no caller identity
            NotMemberError: the caller has no current stint here
            OwnerMustTransferFirstError: the owner leaves while others remain
            StateChangedRetryError: the stint was closed concurrently
        """
        caller = require_caller(caller_id)

        with self._db.transaction():
            household = require_household(self._household_repo, household_id, lock=True)
            membership = require_member(self._membership_repo, household_id, caller)
            others = [
                m
                for m in self._membership_repo.list_current(household_id)
                if m.user_id != caller
            ]
            if membership.is_owner and others:
                raise OwnerMustTransferFirstError(household_id, len(others))

            now = _utc_now()
            self._close_stint(membership, now)
            self._quota.apply_delta(household_id, {UsageMetric.ACTIVE_MEMBERS: -1})

            deactivated = not others
            if deactivated:
                household.deactivate(now)
                self._household_repo.update(household)

            # Runs after deactivation so a dead household keeps its last
            # entitlement while the subscription floats to the next one.
            self._subscriptions.detach(caller, household_id)

            if others:
                owner = self._membership_repo.get_current_owner(household_id)
                self._chores.reassign_on_member_leave(
                    household_id, caller, owner.user_id if owner else None
                )

        logger.info(
            "member_left",
            household_id=str(household_id),
            user_id=str(caller),
            role_before=membership.role.value,
            members_remaining=len(others),
            household_deactivated=deactivated,
        )
        return LeaveResult(
            ok=True,
            code="HOME_DEACTIVATED" if deactivated else "LEFT_OK",
            household_id=household_id,
            role_before=membership.role,
            members_remaining=len(others),
            household_deactivated=deactivated,
        )

    def transfer_owner(
        self, caller_id: UUID | None, household_id: UUID, new_owner_id: UUID
    ) -> TransferResult:
        """Swap roles between the owner and another current member atomically.

        Raises:
            UnauthenticatedError: no caller identity
            InvalidNewOwnerError: new_owner_id is the caller
            ForbiddenError: caller is not the owner of an active household
            NewOwnerNotMemberError: new owner has no current stint here
            StateChangedRetryError: a stint was closed concurrently
        """
        caller = require_caller(caller_id)
        if new_owner_id == caller:
            raise InvalidNewOwnerError(caller)

        with self._db.transaction():
            household = require_household(self._household_repo, household_id, lock=True)
            owner_stint = require_owner(household, self._membership_repo, caller)
            target_stint = self._membership_repo.get_current(household_id, new_owner_id)
            if target_stint is None:
                raise NewOwnerNotMemberError(new_owner_id, household_id)

            now = _utc_now()
            self._close_stint(owner_stint, now)
            self._add_stint(
                Membership(
                    user_id=caller,
                    household_id=household_id,
                    role=MemberRole.MEMBER,
                    valid_from=now,
                )
            )
            self._close_stint(target_stint, now)
            self._add_stint(
                Membership(
                    user_id=new_owner_id,
                    household_id=household_id,
                    role=MemberRole.OWNER,
                    valid_from=now,
                )
            )
            household.set_owner(new_owner_id)
            self._household_repo.update(household)

        logger.info(
            "ownership_transferred",
            household_id=str(household_id),
            previous_owner_id=str(caller),
            new_owner_id=str(new_owner_id),
        )
        return TransferResult(
            status="success",
            code="ownership_transferred",
            household_id=household_id,
            new_owner_id=new_owner_id,
        )

    def kick(
        self, caller_id: UUID | None, household_id: UUID, target_id: UUID
    ) -> KickResult:
        """Owner removes a member. No replacement stint is opened.

        Raises:
            UnauthenticatedError: no caller identity
            ForbiddenError: caller is not the owner of an active household
            TargetNotMemberError: target has no current stint here
            CannotKickOwnerError: target is the owner
            StateChangedRetryError: the stint was closed concurrently
        """
        caller = require_caller(caller_id)

        with self._db.transaction():
            household = require_household(self._household_repo, household_id, lock=True)
            require_owner(household, self._membership_repo, caller)
            target = self._membership_repo.get_current(household_id, target_id)
            if target is None:
                raise TargetNotMemberError(target_id, household_id)
            if target.is_owner:
                raise CannotKickOwnerError(household_id)

            self._close_stint(target, _utc_now())
            self._quota.apply_delta(household_id, {UsageMetric.ACTIVE_MEMBERS: -1})
            self._subscriptions.detach(target_id, household_id)
            self._chores.reassign_on_member_leave(household_id, target_id, caller)
            remaining = len(list(self._membership_repo.list_current(household_id)))

        logger.info(
            "member_kicked",
            household_id=str(household_id),
            user_id=str(target_id),
            kicked_by=str(caller),
            members_remaining=remaining,
        )
        return KickResult(
            status="success",
            code="member_removed",
            household_id=household_id,
            user_id=target_id,
            members_remaining=remaining,
        )

    def get_current_membership(self, caller_id: UUID | None) -> Membership | None:
        caller = require_caller(caller_id)
        return self._membership_repo.get_current_for_user(caller)

    def list_members(
        self, caller_id: UUID | None, household_id: UUID
    ) -> list[MemberSummary]:
        """Current members, owner first."""
        caller = require_caller(caller_id)
        require_household(self._household_repo, household_id)
        require_member(self._membership_repo, household_id, caller)

        members = []
        for membership in self._membership_repo.list_current(household_id):
            profile = self._profile_repo.get(membership.user_id)
            members.append(
                MemberSummary(
                    user_id=membership.user_id,
                    role=membership.role,
                    valid_from=membership.valid_from,
                    username=profile.username if profile else None,
                    avatar_id=profile.avatar_id if profile else None,
                )
            )
        return members

    def get_plan_status(self, caller_id: UUID | None) -> PlanStatus:
        caller = require_caller(caller_id)
        current = self._membership_repo.get_current_for_user(caller)
        if current is None:
            raise NoCurrentHomeError(caller)
        return PlanStatus(
            plan=self._quota.effective_plan(current.household_id),
            household_id=current.household_id,
        )

    def list_join_requests(
        self, caller_id: UUID | None, household_id: UUID
    ) -> list[JoinRequestSummary]:
        """Open member-cap join requests, oldest first (owner only)."""
        caller = require_caller(caller_id)
        household = require_household(self._household_repo, household_id)
        require_owner(household, self._membership_repo, caller)

        summaries = []
        for request in self._join_requests.list_open(household_id):
            profile = self._profile_repo.get(request.joiner_user_id)
            summaries.append(
                JoinRequestSummary(
                    request_id=request.id,
                    joiner_user_id=request.joiner_user_id,
                    requested_at=request.created_at,
                    username=profile.username if profile else None,
                )
            )
        return summaries

    def dismiss_join_requests(self, caller_id: UUID | None, household_id: UUID) -> int:
        """Resolve every open join request as owner_dismissed. Returns the count."""
        caller = require_caller(caller_id)
        with self._db.transaction():
            household = require_household(self._household_repo, household_id, lock=True)
            require_owner(household, self._membership_repo, caller)
            dismissed = self._join_requests.resolve(
                household_id, JoinRequestResolution.OWNER_DISMISSED, _utc_now()
            )

        with household_context(household_id):
            logger.info("join_requests_dismissed", dismissed_by=caller, count=dismissed)
        return dismissed

    def process_join_requests(self, household_id: UUID) -> list[MemberCapJoinRequest]:
        """Admit queued joiners once the household is premium.

        Requests are handled oldest first. A joiner who has meanwhile joined
        any household is resolved as superseded. A free or missing household
        is left alone; an inactive one resolves its queue as home_inactive.
        Returns the requests resolved by this call.
        """
        resolved: list[MemberCapJoinRequest] = []
        with household_context(household_id), self._db.transaction():
            household = self._household_repo.lock(household_id)
            if household is None:
                return resolved
            pending = list(self._join_requests.list_open(household_id))
            if not pending:
                return resolved

            if not household.is_active:
                return self._resolve_all(pending, JoinRequestResolution.HOME_INACTIVE)
            if self._quota.effective_plan(household_id) != Plan.PREMIUM:
                logger.debug("join_requests_waiting", pending=len(pending))
                return resolved

            try:
                invite = self._invites.ensure_open(household_id)
            except StateChangedRetryError:
                logger.warning("join_requests_without_invite", pending=len(pending))
                return self._resolve_all(pending, JoinRequestResolution.INVITE_MISSING)

            for request in pending:
                joiner = request.joiner_user_id
                if self._membership_repo.get_current_for_user(joiner) is not None:
                    resolution = JoinRequestResolution.JOINER_SUPERSEDED
                else:
                    resolution = JoinRequestResolution.JOINED
                    self._admit_member(household_id, joiner, invite.id)
                request.resolution = resolution
                request.resolved_at = _utc_now()
                self._join_requests.resolve(
                    household_id, resolution, request.resolved_at, [request.id]
                )
                resolved.append(request)
                logger.info(
                    "join_request_resolved",
                    user_id=joiner,
                    join_request_id=request.id,
                    resolution=resolution,
                )
        return resolved

    def _resolve_all(
        self, pending: list[MemberCapJoinRequest], resolution: JoinRequestResolution
    ) -> list[MemberCapJoinRequest]:
        now = _utc_now()
        household_id = pending[0].household_id
        self._join_requests.resolve(household_id, resolution, now)
        for request in pending:
            request.resolution = resolution
            request.resolved_at = now
        logger.info("join_requests_resolved", resolution=resolution, count=len(pending))
        return pending

    def _admit_member(self, household_id: UUID, user_id: UUID, invite_id: UUID) -> None:
        self._add_stint(
            Membership(user_id=user_id, household_id=household_id, role=MemberRole.MEMBER)
        )
        self._quota.apply_delta(household_id, {UsageMetric.ACTIVE_MEMBERS: 1})
        self._invites.record_use(invite_id)
        self._subscriptions.attach_floating(user_id, household_id)
        self._avatars.ensure_unique_avatar(household_id, user_id)

    def _assert_active_profile(self, user_id: UUID) -> None:
        profile = self._profile_repo.get(user_id)
        if profile is not None and not profile.is_active:
            raise ProfileDeactivatedError(user_id)

    def _add_stint(self, membership: Membership) -> None:
        try:
            self._membership_repo.add(membership)
        except OpenStintConflictError as e:
            raise AlreadyInOtherHomeError(membership.user_id) from e

    def _close_stint(self, membership: Membership, at: datetime) -> None:
        if not self._membership_repo.close(membership.id, at):
            raise StateChangedRetryError(
                "Membership changed concurrently, retry the operation",
                membership_id=membership.id,
                household_id=membership.household_id,
            )
        membership.close(at)
