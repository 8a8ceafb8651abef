from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

import pytest

from household_core.container import Container
from household_core.domain.entitlements import (
    Entitlement,
    Plan,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatus,
    SubscriptionStore,
)
from household_core.exceptions import NotFoundError, ValidationError
from household_core.repositories.interfaces import Repositories
from household_core.services.interfaces import HouseholdCreated


def _record(container: Container, user_id: UUID, **kwargs):
    params = {
        "entitlement_key": "premium",
        "store": SubscriptionStore.STRIPE,
        "product_id": "price_household_premium",
        "status": SubscriptionStatus.ACTIVE,
    }
    params.update(kwargs)
    return container.subscription_service.record(user_id, **params)


class TestSubscriptionRecord:
    def test_new_subscription_attaches_to_current_household(
        self,
        container: Container,
        repos: Repositories,
        home: HouseholdCreated,
        owner_id: UUID,
    ):
        end = datetime.now(UTC) + timedelta(days=30)

        subscription = _record(container, owner_id, current_period_end_at=end)

        assert subscription.household_id == home.household.id
        entitlement = repos.entitlements.get(home.household.id)
        assert entitlement.plan == Plan.PREMIUM
        assert entitlement.expires_at == end

    def test_subscription_without_household_floats(
        self, container: Container, outsider_id: UUID
    ):
        subscription = _record(container, outsider_id)
        assert subscription.is_floating

    def test_record_updates_existing_row(
        self,
        container: Container,
        repos: Repositories,
        home: HouseholdCreated,
        owner_id: UUID,
    ):
        first = _record(container, owner_id)
        second = _record(container, owner_id, status=SubscriptionStatus.EXPIRED)

        assert second.id == first.id
        assert len(list(repos.subscriptions.list_for_user(owner_id))) == 1
        assert repos.entitlements.get(home.household.id).plan == Plan.FREE

    def test_naive_period_end_is_treated_as_utc(
        self, container: Container, home: HouseholdCreated, owner_id: UUID
    ):
        end = datetime(2099, 1, 1, 0, 0)
        subscription = _record(container, owner_id, current_period_end_at=end)
        assert subscription.current_period_end_at == end.replace(tzinfo=UTC)

    def test_blank_entitlement_key(self, container: Container, owner_id: UUID):
        with pytest.raises(ValidationError):
            _record(container, owner_id, entitlement_key="  ")

    def test_delete_downgrades(
        self,
        container: Container,
        repos: Repositories,
        home: HouseholdCreated,
        owner_id: UUID,
    ):
        subscription = _record(container, owner_id)

        container.subscription_service.delete(subscription.id)

        assert repos.subscriptions.get(subscription.id) is None
        assert repos.entitlements.get(home.household.id).plan == Plan.FREE

    def test_delete_unknown(self, container: Container):
        with pytest.raises(NotFoundError):
            container.subscription_service.delete(uuid4())


class TestSubscriptionFollowsMembership:
    def test_floating_subscription_follows_owner_into_new_household(
        self, container: Container, repos: Repositories, outsider_id: UUID
    ):
        _record(container, outsider_id)

        created = container.membership_service.create_household(outsider_id, "Paid Home")

        assert repos.entitlements.get(created.household.id).plan == Plan.PREMIUM
        subscription = repos.subscriptions.get_by_key(outsider_id, "premium")
        assert subscription.household_id == created.household.id

    def test_floating_subscription_follows_joiner(
        self,
        container: Container,
        repos: Repositories,
        home: HouseholdCreated,
        member_id: UUID,
    ):
        _record(container, member_id)

        container.membership_service.join(member_id, home.invite.code)

        assert repos.entitlements.get(home.household.id).plan == Plan.PREMIUM

    def test_expired_floating_subscription_stays_behind(
        self,
        container: Container,
        repos: Repositories,
        home: HouseholdCreated,
        member_id: UUID,
    ):
        _record(container, member_id, status=SubscriptionStatus.EXPIRED)

        container.membership_service.join(member_id, home.invite.code)

        assert repos.entitlements.get(home.household.id).plan == Plan.FREE
        assert repos.subscriptions.get_by_key(member_id, "premium").is_floating

    def test_renewed_floating_subscription_attaches_to_current_household(
        self,
        container: Container,
        repos: Repositories,
        home: HouseholdCreated,
        member_id: UUID,
    ):
        _record(container, member_id, status=SubscriptionStatus.EXPIRED)
        container.membership_service.join(member_id, home.invite.code)
        end = datetime.now(UTC) + timedelta(days=30)

        renewed = _record(container, member_id, current_period_end_at=end)

        assert renewed.household_id == home.household.id
        stored = repos.subscriptions.get_by_key(member_id, "premium")
        assert stored.household_id == home.household.id
        entitlement = repos.entitlements.get(home.household.id)
        assert entitlement.plan == Plan.PREMIUM
        assert entitlement.expires_at == end

    def test_renewal_without_household_keeps_floating(
        self, container: Container, repos: Repositories, outsider_id: UUID
    ):
        _record(container, outsider_id, status=SubscriptionStatus.EXPIRED)

        renewed = _record(container, outsider_id)

        assert renewed.is_floating

    def test_non_funding_update_of_floating_row_stays_floating(
        self,
        container: Container,
        repos: Repositories,
        home: HouseholdCreated,
        member_id: UUID,
    ):
        _record(container, member_id, status=SubscriptionStatus.EXPIRED)
        container.membership_service.join(member_id, home.invite.code)

        updated = _record(container, member_id, status=SubscriptionStatus.INACTIVE)

        assert updated.is_floating
        assert repos.entitlements.get(home.household.id).plan == Plan.FREE

    def test_leaving_payer_downgrades_remaining_household(
        self,
        container: Container,
        repos: Repositories,
        home_with_member: HouseholdCreated,
        member_id: UUID,
    ):
        household_id = home_with_member.household.id
        _record(container, member_id)
        assert repos.entitlements.get(household_id).plan == Plan.PREMIUM

        container.membership_service.leave(member_id, household_id)

        assert repos.entitlements.get(household_id).plan == Plan.FREE
        assert repos.subscriptions.get_by_key(member_id, "premium").is_floating

    def test_deactivated_household_keeps_last_entitlement(
        self,
        container: Container,
        repos: Repositories,
        home: HouseholdCreated,
        owner_id: UUID,
    ):
        household_id = home.household.id
        _record(container, owner_id)

        container.membership_service.leave(owner_id, household_id)

        assert repos.entitlements.get(household_id).plan == Plan.PREMIUM
        assert repos.subscriptions.get_by_key(owner_id, "premium").is_floating

    def test_kicked_payer_takes_subscription_along(
        self,
        container: Container,
        repos: Repositories,
        home_with_member: HouseholdCreated,
        owner_id: UUID,
        member_id: UUID,
    ):
        household_id = home_with_member.household.id
        _record(container, member_id)

        container.membership_service.kick(owner_id, household_id, member_id)

        assert repos.entitlements.get(household_id).plan == Plan.FREE


class TestRefresh:
    def test_refresh_is_idempotent(
        self,
        container: Container,
        repos: Repositories,
        home: HouseholdCreated,
        owner_id: UUID,
    ):
        household_id = home.household.id
        _record(
            container,
            owner_id,
            current_period_end_at=datetime.now(UTC) + timedelta(days=10),
        )
        as_of = datetime.now(UTC)

        first = container.entitlement_service.refresh(household_id, as_of)
        second = container.entitlement_service.refresh(household_id, as_of)

        assert (first.plan, first.expires_at) == (second.plan, second.expires_at)
        stored = repos.entitlements.get(household_id)
        assert (stored.plan, stored.expires_at) == (first.plan, first.expires_at)

    def test_event_order_across_households_does_not_matter(
        self, container: Container, repos: Repositories
    ):
        a_owner, b_owner = uuid4(), uuid4()
        home_a = container.membership_service.create_household(a_owner, "A")
        home_b = container.membership_service.create_household(b_owner, "B")
        sub_a = _record(container, a_owner)
        sub_b = _record(container, b_owner, status=SubscriptionStatus.INACTIVE)

        events = [SubscriptionEvent.inserted(sub_b), SubscriptionEvent.inserted(sub_a)]
        for event in events:
            container.entitlement_service.handle(event)
        for event in reversed(events):
            container.entitlement_service.handle(event)

        assert repos.entitlements.get(home_a.household.id).plan == Plan.PREMIUM
        assert repos.entitlements.get(home_b.household.id).plan == Plan.FREE

    def test_unknown_household_event_is_skipped(self, container: Container):
        subscription = _record(container, uuid4())
        event = SubscriptionEvent(
            event_type=SubscriptionEventType.INSERT,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            new_household_id=uuid4(),
        )

        assert container.entitlement_service.handle(event) == []

    def test_refresh_unknown_household(self, container: Container):
        with pytest.raises(NotFoundError):
            container.entitlement_service.refresh(uuid4())

    def test_get_entitlement(
        self, container: Container, home: HouseholdCreated
    ):
        entitlement = container.entitlement_service.get(home.household.id)
        assert entitlement.plan == Plan.FREE


class TestUpgradeListeners:
    def test_listener_runs_when_household_turns_premium(
        self, container: Container, home: HouseholdCreated, owner_id: UUID
    ):
        upgraded: list[UUID] = []
        container.entitlement_service.on_upgrade(upgraded.append)

        _record(container, owner_id)

        assert upgraded == [home.household.id]

    def test_listener_skips_refreshes_that_stay_premium_or_free(
        self, container: Container, home: HouseholdCreated, owner_id: UUID
    ):
        upgraded: list[UUID] = []
        container.entitlement_service.on_upgrade(upgraded.append)
        household_id = home.household.id

        container.entitlement_service.refresh(household_id)
        _record(container, owner_id)
        container.entitlement_service.refresh(household_id)
        _record(container, owner_id, status=SubscriptionStatus.EXPIRED)

        assert upgraded == [household_id]

    def test_lapsed_premium_row_counts_as_free(
        self,
        container: Container,
        repos: Repositories,
        home: HouseholdCreated,
        owner_id: UUID,
    ):
        household_id = home.household.id
        lapsed_at = datetime.now(UTC) - timedelta(days=1)
        repos.entitlements.upsert(
            Entitlement(household_id=household_id, plan=Plan.PREMIUM, expires_at=lapsed_at)
        )
        upgraded: list[UUID] = []
        container.entitlement_service.on_upgrade(upgraded.append)

        renewed_end = datetime.now(UTC) + timedelta(days=30)
        _record(container, owner_id, current_period_end_at=renewed_end)

        assert upgraded == [household_id]
        assert repos.entitlements.get(household_id).expires_at == renewed_end
