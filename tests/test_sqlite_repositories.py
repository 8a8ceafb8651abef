import threading
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from household_core.domain.entitlements import Entitlement, Plan
from household_core.domain.households import (
    Household,
    JoinRequestResolution,
    MemberCapJoinRequest,
    MemberRole,
    Membership,
)
from household_core.domain.invites import Invite
from household_core.domain.profiles import Profile, default_avatar_catalog
from household_core.domain.usage import UsageMetric
from household_core.exceptions import (
    DuplicateInviteCodeError,
    IntegrityError,
    OpenStintConflictError,
)
from household_core.repositories.interfaces import Repositories
from household_core.repositories.sqlite import SQLiteDatabase, build_repositories

NOW = datetime(2026, 5, 1, 9, 30, tzinfo=UTC)


@pytest.fixture
def household(repos: Repositories) -> Household:
    household = Household(name="Birch Lane", owner_user_id=uuid4())
    repos.households.add(household)
    return household


class TestSQLiteDatabase:
    def test_initialize_is_idempotent(self, db: SQLiteDatabase, repos: Repositories):
        db.initialize()

        assert len(list(repos.avatars.list_all())) == len(default_avatar_catalog())
        assert repos.usage.get_plan_limits(Plan.FREE) == {
            UsageMetric.ACTIVE_MEMBERS: 4,
            UsageMetric.ACTIVE_EXPENSES: 10,
            UsageMetric.CHORE_PHOTOS: 15,
            UsageMetric.SHOPPING_ITEM_PHOTOS: 10,
        }
        assert repos.usage.get_plan_limits(Plan.PREMIUM) == {}

    def test_transaction_rolls_back_on_error(self, db: SQLiteDatabase, repos: Repositories):
        household = Household(name="Ghost", owner_user_id=uuid4())

        with pytest.raises(RuntimeError):
            with db.transaction():
                repos.households.add(household)
                raise RuntimeError("boom")

        assert repos.households.get(household.id) is None

    def test_nested_transaction_joins_outer(self, db: SQLiteDatabase, repos: Repositories):
        household = Household(name="Nested", owner_user_id=uuid4())

        with pytest.raises(RuntimeError):
            with db.transaction():
                with db.transaction():
                    repos.households.add(household)
                raise RuntimeError("outer fails after inner finished")

        assert repos.households.get(household.id) is None

    def test_shared_memory_reads_wait_for_open_transaction(self):
        database = SQLiteDatabase(":memory:", check_same_thread=False)
        database.initialize()
        repos = build_repositories(database)
        household = Household(name="Uncommitted", owner_user_id=uuid4())
        inserted = threading.Event()
        seen: list[Household | None] = []

        def read_from_other_thread() -> None:
            inserted.wait(timeout=5)
            seen.append(repos.households.get(household.id))

        reader = threading.Thread(target=read_from_other_thread)
        reader.start()
        with pytest.raises(RuntimeError):
            with database.transaction():
                repos.households.add(household)
                inserted.set()
                reader.join(timeout=0.2)
                raise RuntimeError("rolled back")
        reader.join(timeout=5)

        assert seen == [None]
        database.close()

    def test_file_database_uses_wal(self, tmp_path):
        database = SQLiteDatabase(tmp_path / "wal.db")
        database.initialize()

        mode = database.get_connection().execute("PRAGMA journal_mode").fetchone()[0]

        assert mode == "wal"
        database.close()


class TestHouseholdRepository:
    def test_round_trip(self, repos: Repositories, household: Household):
        retrieved = repos.households.get(household.id)

        assert retrieved.name == "Birch Lane"
        assert retrieved.owner_user_id == household.owner_user_id
        assert retrieved.is_active

    def test_update_deactivation(self, repos: Repositories, household: Household):
        household.deactivate(NOW)
        repos.households.update(household)

        retrieved = repos.households.get(household.id)
        assert retrieved.is_active is False
        assert retrieved.deactivated_at == NOW

    def test_lock_missing_household(self, db: SQLiteDatabase, repos: Repositories):
        with db.transaction():
            assert repos.households.lock(uuid4()) is None


class TestMembershipRepository:
    def test_second_open_stint_for_user_conflicts(
        self, repos: Repositories, household: Household
    ):
        user_id = uuid4()
        other = Household(name="Other", owner_user_id=uuid4())
        repos.households.add(other)
        repos.memberships.add(Membership(user_id=user_id, household_id=household.id))

        with pytest.raises(OpenStintConflictError):
            repos.memberships.add(Membership(user_id=user_id, household_id=other.id))

    def test_closed_stints_do_not_conflict(self, repos: Repositories, household: Household):
        user_id = uuid4()
        first = Membership(user_id=user_id, household_id=household.id, valid_from=NOW)
        repos.memberships.add(first)
        assert repos.memberships.close(first.id, NOW + timedelta(hours=1))

        repos.memberships.add(Membership(user_id=user_id, household_id=household.id))

        assert len(list(repos.memberships.list_history(household.id))) == 2

    def test_second_current_owner_conflicts(
        self, repos: Repositories, household: Household
    ):
        repos.memberships.add(
            Membership(user_id=uuid4(), household_id=household.id, role=MemberRole.OWNER)
        )

        with pytest.raises(IntegrityError) as exc_info:
            repos.memberships.add(
                Membership(
                    user_id=uuid4(), household_id=household.id, role=MemberRole.OWNER
                )
            )
        assert not isinstance(exc_info.value, OpenStintConflictError)

    def test_close_is_single_shot(self, repos: Repositories, household: Household):
        membership = Membership(user_id=uuid4(), household_id=household.id, valid_from=NOW)
        repos.memberships.add(membership)

        assert repos.memberships.close(membership.id, NOW + timedelta(minutes=5)) is True
        assert repos.memberships.close(membership.id, NOW + timedelta(minutes=9)) is False
        assert repos.memberships.get(membership.id).valid_to == NOW + timedelta(minutes=5)

    def test_list_current_orders_owner_first(
        self, repos: Repositories, household: Household
    ):
        member = Membership(user_id=uuid4(), household_id=household.id, valid_from=NOW)
        owner = Membership(
            user_id=uuid4(),
            household_id=household.id,
            role=MemberRole.OWNER,
            valid_from=NOW + timedelta(minutes=1),
        )
        repos.memberships.add(member)
        repos.memberships.add(owner)

        current = list(repos.memberships.list_current(household.id))

        assert [m.id for m in current] == [owner.id, member.id]
        assert repos.memberships.get_current_owner(household.id).id == owner.id


class TestInviteRepository:
    def test_add_if_no_open_refuses_second_open_invite(
        self, repos: Repositories, household: Household
    ):
        assert repos.invites.add_if_no_open(Invite(household_id=household.id, code="ABC234"))
        assert not repos.invites.add_if_no_open(
            Invite(household_id=household.id, code="XYZ789")
        )
        assert repos.invites.get_open(household.id).code == "ABC234"
        assert not repos.invites.code_exists("XYZ789")

    def test_revoked_invite_frees_the_slot(
        self, repos: Repositories, household: Household
    ):
        first = Invite(household_id=household.id, code="ABC234")
        repos.invites.add_if_no_open(first)
        assert repos.invites.revoke(first.id, NOW)
        assert not repos.invites.revoke(first.id, NOW)

        assert repos.invites.add_if_no_open(Invite(household_id=household.id, code="XYZ789"))

    def test_duplicate_code_across_households(
        self, repos: Repositories, household: Household
    ):
        other = Household(name="Other", owner_user_id=uuid4())
        repos.households.add(other)
        repos.invites.add_if_no_open(Invite(household_id=household.id, code="ABC234"))

        with pytest.raises(DuplicateInviteCodeError):
            repos.invites.add_if_no_open(Invite(household_id=other.id, code="ABC234"))

    def test_increment_used_count(self, repos: Repositories, household: Household):
        invite = Invite(household_id=household.id, code="ABC234")
        repos.invites.add_if_no_open(invite)

        repos.invites.increment_used_count(invite.id)
        repos.invites.increment_used_count(invite.id)

        assert repos.invites.get_by_code("ABC234").used_count == 2


class TestEntitlementAndUsageRepositories:
    def test_entitlement_upsert(self, repos: Repositories, household: Household):
        repos.entitlements.upsert(Entitlement(household_id=household.id))
        repos.entitlements.upsert(
            Entitlement(household_id=household.id, plan=Plan.PREMIUM, expires_at=NOW)
        )

        stored = repos.entitlements.get(household.id)
        assert stored.plan == Plan.PREMIUM
        assert stored.expires_at == NOW

    def test_counts_default_to_zero(self, repos: Repositories, household: Household):
        counts = repos.usage.get_counts(household.id)
        assert counts == {metric: 0 for metric in UsageMetric}

    def test_apply_delta_clamps(self, repos: Repositories, household: Household):
        assert repos.usage.apply_delta(household.id, UsageMetric.CHORE_PHOTOS, 2) == 2
        assert repos.usage.apply_delta(household.id, UsageMetric.CHORE_PHOTOS, -7) == 0


class TestProfileRepository:
    def test_avatars_in_use_only_counts_current_members(
        self, repos: Repositories, household: Household
    ):
        catalog = list(repos.avatars.list_all())
        staying, leaving = uuid4(), uuid4()
        for user_id, avatar in ((staying, catalog[0]), (leaving, catalog[1])):
            repos.profiles.upsert(Profile(user_id=user_id, avatar_id=avatar.id))
        repos.memberships.add(Membership(user_id=staying, household_id=household.id))
        gone = Membership(user_id=leaving, household_id=household.id, valid_from=NOW)
        repos.memberships.add(gone)
        repos.memberships.close(gone.id, NOW + timedelta(days=1))

        in_use = repos.profiles.list_avatar_ids_in_use(household.id)

        assert in_use == {catalog[0].id}
        assert repos.profiles.list_avatar_ids_in_use(
            household.id, exclude_user_id=staying
        ) == set()


class TestJoinRequestRepository:
    def test_one_open_request_per_joiner(self, repos: Repositories, household: Household):
        joiner = uuid4()
        first = repos.join_requests.add_or_get_open(
            MemberCapJoinRequest(household_id=household.id, joiner_user_id=joiner, created_at=NOW)
        )
        again = repos.join_requests.add_or_get_open(
            MemberCapJoinRequest(household_id=household.id, joiner_user_id=joiner)
        )

        assert again.id == first.id
        assert again.created_at == NOW
        assert again.is_open

    def test_list_open_is_oldest_first(self, repos: Repositories, household: Household):
        later = MemberCapJoinRequest(
            household_id=household.id, joiner_user_id=uuid4(), created_at=NOW + timedelta(hours=1)
        )
        earlier = MemberCapJoinRequest(
            household_id=household.id, joiner_user_id=uuid4(), created_at=NOW
        )
        for request in (later, earlier):
            repos.join_requests.add_or_get_open(request)

        pending = list(repos.join_requests.list_open(household.id))

        assert [r.id for r in pending] == [earlier.id, later.id]

    def test_resolve_selected_then_rest(self, repos: Repositories, household: Household):
        joiner = uuid4()
        first = repos.join_requests.add_or_get_open(
            MemberCapJoinRequest(household_id=household.id, joiner_user_id=joiner)
        )
        other = repos.join_requests.add_or_get_open(
            MemberCapJoinRequest(household_id=household.id, joiner_user_id=uuid4())
        )

        joined = repos.join_requests.resolve(
            household.id, JoinRequestResolution.JOINED, NOW, [first.id]
        )
        dismissed = repos.join_requests.resolve(
            household.id, JoinRequestResolution.OWNER_DISMISSED, NOW
        )

        assert (joined, dismissed) == (1, 1)
        assert list(repos.join_requests.list_open(household.id)) == []
        reopened = repos.join_requests.add_or_get_open(
            MemberCapJoinRequest(household_id=household.id, joiner_user_id=joiner)
        )
        assert reopened.id not in (first.id, other.id)

    def test_resolve_with_no_ids_is_noop(self, repos: Repositories, household: Household):
        repos.join_requests.add_or_get_open(
            MemberCapJoinRequest(household_id=household.id, joiner_user_id=uuid4())
        )

        assert repos.join_requests.resolve(household.id, JoinRequestResolution.JOINED, NOW, []) == 0
        assert len(list(repos.join_requests.list_open(household.id))) == 1
