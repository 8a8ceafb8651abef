from uuid import UUID, uuid4

import pytest

from household_core.container import Container
from household_core.domain.entitlements import Plan, SubscriptionStatus, SubscriptionStore
from household_core.domain.usage import UsageMetric
from household_core.exceptions import (
    InvalidQuotaDeltaError,
    NotFoundError,
    NotMemberError,
    QuotaExceededError,
)
from household_core.repositories.interfaces import Repositories
from household_core.services.interfaces import HouseholdCreated


def _make_premium(container: Container, user_id: UUID) -> None:
    container.subscription_service.record(
        user_id,
        "premium",
        SubscriptionStore.PLAY_STORE,
        "household.premium.monthly",
        SubscriptionStatus.ACTIVE,
    )


class TestAssertQuota:
    def test_within_limit_passes(self, container: Container, home: HouseholdCreated):
        container.quota_service.assert_quota(home.household.id, {"chore_photos": 15})

    def test_over_limit_raises_with_context(
        self, container: Container, home: HouseholdCreated
    ):
        household_id = home.household.id
        container.quota_service.apply_delta(household_id, {"active_expenses": 9})

        with pytest.raises(QuotaExceededError) as exc_info:
            container.quota_service.assert_quota(household_id, {"active_expenses": 2})

        error = exc_info.value
        assert error.error_code == "QUOTA_EXCEEDED"
        assert error.context == {
            "household_id": str(household_id),
            "limit_type": "active_expenses",
            "plan": "free",
            "max": 10,
            "current": 9,
            "projected": 11,
        }

    def test_negative_and_zero_deltas_are_not_checked(
        self, container: Container, home: HouseholdCreated
    ):
        household_id = home.household.id
        container.quota_service.apply_delta(household_id, {"shopping_item_photos": 10})

        container.quota_service.assert_quota(
            household_id, {"shopping_item_photos": 0, "active_members": -1}
        )

    def test_premium_bypasses_ceilings(
        self, container: Container, home: HouseholdCreated, owner_id: UUID
    ):
        _make_premium(container, owner_id)

        container.quota_service.assert_quota(home.household.id, {"chore_photos": 500})

    def test_invalid_delta(self, container: Container, home: HouseholdCreated):
        with pytest.raises(InvalidQuotaDeltaError):
            container.quota_service.assert_quota(home.household.id, {"chore_photos": "2"})


class TestApplyDelta:
    def test_counters_move_by_signed_deltas(
        self, container: Container, repos: Repositories, home: HouseholdCreated
    ):
        household_id = home.household.id

        container.quota_service.apply_delta(household_id, {"chore_photos": 3})
        counts = container.quota_service.apply_delta(household_id, {"chore_photos": -1})

        assert counts == {UsageMetric.CHORE_PHOTOS: 2}
        assert repos.usage.get_counts(household_id)[UsageMetric.CHORE_PHOTOS] == 2

    def test_counters_clamp_at_zero(
        self, container: Container, repos: Repositories, home: HouseholdCreated
    ):
        household_id = home.household.id

        counts = container.quota_service.apply_delta(household_id, {"active_expenses": -5})

        assert counts[UsageMetric.ACTIVE_EXPENSES] == 0

    def test_zero_delta_is_skipped(self, container: Container, home: HouseholdCreated):
        counts = container.quota_service.apply_delta(
            home.household.id, {"chore_photos": 0}
        )
        assert counts == {}

    def test_unknown_household(self, container: Container):
        with pytest.raises(NotFoundError):
            container.quota_service.apply_delta(uuid4(), {"chore_photos": 1})


class TestAdmit:
    def test_member_admission_increments(
        self,
        container: Container,
        home_with_member: HouseholdCreated,
        member_id: UUID,
    ):
        counts = container.quota_service.admit(
            member_id, home_with_member.household.id, {"active_expenses": 1}
        )
        assert counts == {UsageMetric.ACTIVE_EXPENSES: 1}

    def test_rejected_admission_leaves_counter_untouched(
        self,
        container: Container,
        repos: Repositories,
        home: HouseholdCreated,
        owner_id: UUID,
    ):
        household_id = home.household.id
        container.quota_service.admit(owner_id, household_id, {"chore_photos": 15})

        with pytest.raises(QuotaExceededError):
            container.quota_service.admit(owner_id, household_id, {"chore_photos": 1})

        assert repos.usage.get_counts(household_id)[UsageMetric.CHORE_PHOTOS] == 15

    def test_outsider_cannot_admit(
        self, container: Container, home: HouseholdCreated, outsider_id: UUID
    ):
        with pytest.raises(NotMemberError):
            container.quota_service.admit(
                outsider_id, home.household.id, {"chore_photos": 1}
            )


class TestPaywallStatus:
    def test_free_household(
        self, container: Container, home: HouseholdCreated, owner_id: UUID
    ):
        status = container.quota_service.paywall_status(owner_id, home.household.id)

        assert status.plan == Plan.FREE
        assert status.is_premium is False
        assert status.usage[UsageMetric.ACTIVE_MEMBERS] == 1
        assert status.limits[UsageMetric.ACTIVE_MEMBERS] == 4

    def test_premium_household_has_no_limits(
        self, container: Container, home: HouseholdCreated, owner_id: UUID
    ):
        _make_premium(container, owner_id)

        status = container.quota_service.paywall_status(owner_id, home.household.id)

        assert status.is_premium
        assert status.limits == {}
