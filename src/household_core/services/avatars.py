"""Display avatars unique among a household's current members."""

from uuid import UUID

from household_core.domain.profiles import Avatar, Profile, allowed_avatar_categories
from household_core.exceptions import NoAvailableAvatarError
from household_core.logging_config import get_logger
from household_core.repositories.interfaces import (
    AvatarRepository,
    HouseholdRepository,
    MembershipRepository,
    ProfileRepository,
)
from household_core.services.access import (
    require_caller,
    require_household,
    require_member,
)
from household_core.services.interfaces import AvatarService, QuotaService

logger = get_logger(__name__)


class AvatarServiceImpl(AvatarService):
    def __init__(
        self,
        household_repo: HouseholdRepository,
        membership_repo: MembershipRepository,
        profile_repo: ProfileRepository,
        avatar_repo: AvatarRepository,
        quota_service: QuotaService,
    ) -> None:
        self._household_repo = household_repo
        self._membership_repo = membership_repo
        self._profile_repo = profile_repo
        self._avatar_repo = avatar_repo
        self._quota = quota_service

    def ensure_unique_avatar(self, household_id: UUID, user_id: UUID) -> UUID:
        """Keep the user's avatar if nobody else in the household has it.

        Otherwise assign the first catalog avatar that is free in the
        household and allowed by its plan. Must run inside the membership
        transaction so two joiners cannot pick the same avatar.

        Raises:
            NoAvailableAvatarError: every eligible avatar is taken.
        """
        profile = self._profile_repo.get(user_id) or Profile(user_id=user_id)
        in_use = self._profile_repo.list_avatar_ids_in_use(
            household_id, exclude_user_id=user_id
        )
        if profile.avatar_id is not None and profile.avatar_id not in in_use:
            self._profile_repo.upsert(profile)
            return profile.avatar_id

        plan = self._quota.effective_plan(household_id)
        allowed = allowed_avatar_categories(plan)
        for avatar in self._avatar_repo.list_all():
            if avatar.category in allowed and avatar.id not in in_use:
                profile.assign_avatar(avatar.id)
                self._profile_repo.upsert(profile)
                logger.info(
                    "avatar_assigned",
                    household_id=str(household_id),
                    user_id=str(user_id),
                    avatar_id=str(avatar.id),
                )
                return avatar.id

        raise NoAvailableAvatarError(household_id, plan.value)

    def list_available(self, caller_id: UUID | None, household_id: UUID) -> list[Avatar]:
        """Avatars the caller could switch to right now."""
        caller = require_caller(caller_id)
        require_household(self._household_repo, household_id)
        require_member(self._membership_repo, household_id, caller)

        allowed = allowed_avatar_categories(self._quota.effective_plan(household_id))
        in_use = self._profile_repo.list_avatar_ids_in_use(
            household_id, exclude_user_id=caller
        )
        return [
            avatar
            for avatar in self._avatar_repo.list_all()
            if avatar.category in allowed and avatar.id not in in_use
        ]
