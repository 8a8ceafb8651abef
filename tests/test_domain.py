from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from household_core.domain.entitlements import (
    Entitlement,
    Plan,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
    SubscriptionStore,
    compute_entitlement,
)
from household_core.domain.households import Household, MemberRole, Membership
from household_core.domain.invites import (
    INVITE_CODE_ALPHABET,
    INVITE_CODE_LENGTH,
    Invite,
    generate_invite_code,
    is_valid_invite_code,
    normalize_invite_code,
)
from household_core.domain.profiles import (
    AvatarCategory,
    Profile,
    allowed_avatar_categories,
    default_avatar_catalog,
)
from household_core.domain.usage import UsageMetric, parse_deltas
from household_core.exceptions import InvalidQuotaDeltaError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _subscription(household_id, **kwargs) -> Subscription:
    defaults = {
        "user_id": uuid4(),
        "entitlement_key": "premium",
        "store": SubscriptionStore.APP_STORE,
        "product_id": "household.premium.monthly",
        "household_id": household_id,
    }
    defaults.update(kwargs)
    return Subscription(**defaults)


class TestInviteCodes:
    def test_generated_code_uses_alphabet_and_length(self):
        for _ in range(50):
            code = generate_invite_code()
            assert len(code) == INVITE_CODE_LENGTH
            assert set(code) <= set(INVITE_CODE_ALPHABET)

    def test_alphabet_excludes_ambiguous_symbols(self):
        for symbol in "01IO":
            assert symbol not in INVITE_CODE_ALPHABET

    def test_normalize_uppercases_and_strips(self):
        assert normalize_invite_code("  abc234 ") == "ABC234"

    def test_is_valid_invite_code(self):
        assert is_valid_invite_code("ABC234")
        assert not is_valid_invite_code("ABC23")
        assert not is_valid_invite_code("ABC2340")
        assert not is_valid_invite_code("ABC10O")

    def test_invite_stores_canonical_code(self):
        invite = Invite(household_id=uuid4(), code="abc234")
        assert invite.code == "ABC234"
        assert invite.is_open

    def test_revoke_keeps_first_timestamp(self):
        invite = Invite(household_id=uuid4(), code="ABC234")
        invite.revoke(NOW)
        invite.revoke(NOW + timedelta(hours=1))
        assert invite.revoked_at == NOW
        assert not invite.is_open

    def test_negative_used_count_rejected(self):
        with pytest.raises(ValueError):
            Invite(household_id=uuid4(), code="ABC234", used_count=-1)


class TestHouseholdAndMembership:
    def test_deactivate_sets_timestamp(self):
        household = Household(name="Home", owner_user_id=uuid4())
        household.deactivate(NOW)
        assert household.is_active is False
        assert household.deactivated_at == NOW

    def test_close_stint(self):
        membership = Membership(
            user_id=uuid4(), household_id=uuid4(), role=MemberRole.OWNER, valid_from=NOW
        )
        assert membership.is_current
        assert membership.is_owner

        membership.close(NOW + timedelta(days=1))

        assert not membership.is_current
        assert membership.valid_to == NOW + timedelta(days=1)

    def test_closed_stint_cannot_be_closed_again(self):
        membership = Membership(user_id=uuid4(), household_id=uuid4())
        membership.close(NOW)
        with pytest.raises(ValueError):
            membership.close(NOW)


class TestComputeEntitlement:
    def test_no_subscriptions_is_free(self):
        household_id = uuid4()
        entitlement = compute_entitlement(household_id, [], NOW)
        assert entitlement.plan == Plan.FREE
        assert entitlement.expires_at is None

    def test_active_subscription_is_premium_until_period_end(self):
        household_id = uuid4()
        end = NOW + timedelta(days=30)
        entitlement = compute_entitlement(
            household_id, [_subscription(household_id, current_period_end_at=end)], NOW
        )
        assert entitlement.plan == Plan.PREMIUM
        assert entitlement.expires_at == end

    def test_cancelled_but_unexpired_still_funds(self):
        household_id = uuid4()
        sub = _subscription(
            household_id,
            status=SubscriptionStatus.CANCELLED,
            current_period_end_at=NOW + timedelta(days=3),
        )
        assert compute_entitlement(household_id, [sub], NOW).plan == Plan.PREMIUM

    def test_elapsed_period_does_not_fund(self):
        household_id = uuid4()
        sub = _subscription(household_id, current_period_end_at=NOW - timedelta(days=1))
        assert compute_entitlement(household_id, [sub], NOW).plan == Plan.FREE

    def test_expired_status_does_not_fund(self):
        household_id = uuid4()
        sub = _subscription(household_id, status=SubscriptionStatus.EXPIRED)
        assert compute_entitlement(household_id, [sub], NOW).plan == Plan.FREE

    def test_expiry_is_latest_period_end(self):
        household_id = uuid4()
        subs = [
            _subscription(household_id, current_period_end_at=NOW + timedelta(days=5)),
            _subscription(household_id, current_period_end_at=NOW + timedelta(days=40)),
        ]
        entitlement = compute_entitlement(household_id, subs, NOW)
        assert entitlement.expires_at == NOW + timedelta(days=40)

    def test_open_ended_subscription_has_no_expiry(self):
        household_id = uuid4()
        subs = [
            _subscription(household_id, current_period_end_at=NOW + timedelta(days=5)),
            _subscription(household_id, current_period_end_at=None),
        ]
        entitlement = compute_entitlement(household_id, subs, NOW)
        assert entitlement.plan == Plan.PREMIUM
        assert entitlement.expires_at is None

    def test_subscriptions_of_other_households_ignored(self):
        household_id = uuid4()
        sub = _subscription(uuid4())
        assert compute_entitlement(household_id, [sub], NOW).plan == Plan.FREE

    def test_replaying_snapshot_is_identical(self):
        household_id = uuid4()
        subs = [_subscription(household_id, current_period_end_at=NOW + timedelta(days=9))]
        first = compute_entitlement(household_id, subs, NOW)
        second = compute_entitlement(household_id, subs, NOW)
        assert (first.plan, first.expires_at) == (second.plan, second.expires_at)

    def test_effective_plan_downgrades_after_expiry(self):
        entitlement = Entitlement(
            household_id=uuid4(), plan=Plan.PREMIUM, expires_at=NOW + timedelta(days=1)
        )
        assert entitlement.effective_plan(NOW) == Plan.PREMIUM
        assert entitlement.effective_plan(NOW + timedelta(days=2)) == Plan.FREE


class TestSubscriptionEvent:
    def test_insert_affects_new_household(self):
        household_id = uuid4()
        event = SubscriptionEvent.inserted(_subscription(household_id))
        assert event.affected_household_ids() == [household_id]

    def test_insert_of_floating_affects_nothing(self):
        event = SubscriptionEvent.inserted(_subscription(None))
        assert event.affected_household_ids() == []

    def test_move_affects_both_households(self):
        old_home, new_home = uuid4(), uuid4()
        old = _subscription(old_home)
        new = Subscription(**{**old.__dict__, "household_id": new_home})
        event = SubscriptionEvent.updated(old, new)
        assert event.affected_household_ids() == [old_home, new_home]

    def test_status_change_affects_current_household(self):
        household_id = uuid4()
        old = _subscription(household_id)
        new = Subscription(**{**old.__dict__, "status": SubscriptionStatus.EXPIRED})
        event = SubscriptionEvent.updated(old, new)
        assert event.affected_household_ids() == [household_id]

    def test_unchanged_update_affects_nothing(self):
        old = _subscription(uuid4())
        event = SubscriptionEvent.updated(old, old)
        assert event.affected_household_ids() == []

    def test_delete_affects_old_household(self):
        household_id = uuid4()
        event = SubscriptionEvent.deleted(_subscription(household_id))
        assert event.affected_household_ids() == [household_id]


class TestParseDeltas:
    def test_accepts_names_and_enum_keys(self):
        parsed = parse_deltas({"chore_photos": 2, UsageMetric.ACTIVE_EXPENSES: -1})
        assert parsed == {UsageMetric.CHORE_PHOTOS: 2, UsageMetric.ACTIVE_EXPENSES: -1}

    def test_unknown_metric_rejected(self):
        with pytest.raises(InvalidQuotaDeltaError):
            parse_deltas({"active_chores": 1})

    @pytest.mark.parametrize("value", [1.5, "1", True, None])
    def test_non_integer_delta_rejected(self, value):
        with pytest.raises(InvalidQuotaDeltaError):
            parse_deltas({"chore_photos": value})


class TestAvatarCatalog:
    def test_catalog_ids_are_stable(self):
        first = [avatar.id for avatar in default_avatar_catalog()]
        second = [avatar.id for avatar in default_avatar_catalog()]
        assert first == second

    def test_animals_sort_before_plants(self):
        categories = [avatar.category for avatar in default_avatar_catalog()]
        first_plant = categories.index(AvatarCategory.PLANT)
        assert all(c == AvatarCategory.PLANT for c in categories[first_plant:])

    def test_free_plan_only_allows_animals(self):
        assert allowed_avatar_categories(Plan.FREE) == {AvatarCategory.ANIMAL}
        assert AvatarCategory.PLANT in allowed_avatar_categories(Plan.PREMIUM)

    def test_profile_deactivation(self):
        profile = Profile(user_id=uuid4())
        assert profile.is_active
        profile.deactivate()
        assert not profile.is_active
