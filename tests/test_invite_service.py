import threading
from collections.abc import Iterator
from uuid import UUID, uuid4

import pytest

from household_core.config import Environment, Settings
from household_core.container import Container
from household_core.domain.invites import is_valid_invite_code
from household_core.exceptions import (
    ForbiddenError,
    NotFoundError,
    NotMemberError,
    StateChangedRetryError,
    UnauthenticatedError,
)
from household_core.repositories.interfaces import Repositories
from household_core.repositories.sqlite import SQLiteDatabase, SQLiteInviteRepository
from household_core.services.interfaces import HouseholdCreated
from household_core.services.invites import InviteServiceImpl


def _open_invites(repos: Repositories, household_id: UUID) -> list:
    return [i for i in repos.invites.list_by_household(household_id) if i.is_open]


class TestIssueInitial:
    def test_household_starts_with_one_open_invite(
        self, repos: Repositories, home: HouseholdCreated
    ):
        open_invites = _open_invites(repos, home.household.id)
        assert [i.id for i in open_invites] == [home.invite.id]
        assert is_valid_invite_code(home.invite.code)

    def test_second_issue_returns_existing_open_invite(
        self, container: Container, home: HouseholdCreated
    ):
        invite = container.invite_service.issue_initial(home.household.id)
        assert invite.id == home.invite.id


class TestRotate:
    def test_rotate_replaces_code(
        self,
        container: Container,
        repos: Repositories,
        home: HouseholdCreated,
        owner_id: UUID,
    ):
        result = container.invite_service.rotate(owner_id, home.household.id)

        assert result.invite_code != home.invite.code
        assert repos.invites.get(home.invite.id).revoked_at is not None
        open_invites = _open_invites(repos, home.household.id)
        assert [i.id for i in open_invites] == [result.invite_id]

    def test_rotate_without_open_invite_issues_one(
        self,
        container: Container,
        repos: Repositories,
        home: HouseholdCreated,
        owner_id: UUID,
    ):
        container.invite_service.revoke(owner_id, home.household.id)

        result = container.invite_service.rotate(owner_id, home.household.id)

        assert repos.invites.get_open(home.household.id).id == result.invite_id

    def test_member_cannot_rotate(
        self,
        container: Container,
        home_with_member: HouseholdCreated,
        member_id: UUID,
    ):
        with pytest.raises(ForbiddenError):
            container.invite_service.rotate(member_id, home_with_member.household.id)

    def test_rotate_requires_caller(self, container: Container, home: HouseholdCreated):
        with pytest.raises(UnauthenticatedError):
            container.invite_service.rotate(None, home.household.id)

    def test_rotate_unknown_household(self, container: Container, owner_id: UUID):
        with pytest.raises(NotFoundError):
            container.invite_service.rotate(owner_id, uuid4())

    def test_previously_issued_code_is_regenerated(
        self,
        repos: Repositories,
        home: HouseholdCreated,
        owner_id: UUID,
    ):
        codes = iter([home.invite.code, home.invite.code, "FRESH2"])
        service = InviteServiceImpl(
            repos.database,
            repos.households,
            repos.memberships,
            repos.invites,
            code_generator=lambda: next(codes),
        )

        result = service.rotate(owner_id, home.household.id)

        assert result.invite_code == "FRESH2"

    def test_gives_up_after_max_attempts(
        self,
        repos: Repositories,
        home: HouseholdCreated,
        owner_id: UUID,
    ):
        service = InviteServiceImpl(
            repos.database,
            repos.households,
            repos.memberships,
            repos.invites,
            code_generator=lambda: home.invite.code,
            max_code_attempts=3,
        )

        with pytest.raises(StateChangedRetryError):
            service.rotate(owner_id, home.household.id)

        # The failed rotation rolled back, so the original code stays open.
        assert repos.invites.get_open(home.household.id).id == home.invite.id


class TestRevoke:
    def test_revoke_open_invite(
        self,
        container: Container,
        repos: Repositories,
        home: HouseholdCreated,
        owner_id: UUID,
    ):
        result = container.invite_service.revoke(owner_id, home.household.id)

        assert result.status == "success"
        assert result.code == "invite_revoked"
        assert result.invite_id == home.invite.id
        assert result.revoked_at is not None
        assert repos.invites.get_open(home.household.id) is None

    def test_revoke_without_open_invite_is_informational(
        self, container: Container, home: HouseholdCreated, owner_id: UUID
    ):
        container.invite_service.revoke(owner_id, home.household.id)

        result = container.invite_service.revoke(owner_id, home.household.id)

        assert result.status == "info"
        assert result.code == "no_active_invite"
        assert result.invite_id is None

    def test_member_cannot_revoke(
        self,
        container: Container,
        home_with_member: HouseholdCreated,
        member_id: UUID,
    ):
        with pytest.raises(ForbiddenError):
            container.invite_service.revoke(member_id, home_with_member.household.id)


class TestGetActive:
    def test_member_sees_active_invite(
        self,
        container: Container,
        home_with_member: HouseholdCreated,
        member_id: UUID,
    ):
        invite = container.invite_service.get_active(
            member_id, home_with_member.household.id
        )
        assert invite.id == home_with_member.invite.id

    def test_outsider_cannot_see_invite(
        self, container: Container, home: HouseholdCreated, outsider_id: UUID
    ):
        with pytest.raises(NotMemberError):
            container.invite_service.get_active(outsider_id, home.household.id)

    def test_no_active_invite(
        self, container: Container, home: HouseholdCreated, owner_id: UUID
    ):
        container.invite_service.revoke(owner_id, home.household.id)
        with pytest.raises(NotFoundError):
            container.invite_service.get_active(owner_id, home.household.id)


class BarrierOnFirstRead(SQLiteInviteRepository):
    """Holds the first get_open of each thread until all rotators have read."""

    def __init__(self, database: SQLiteDatabase, parties: int) -> None:
        super().__init__(database)
        self._barrier = threading.Barrier(parties, timeout=10)
        self._seen = threading.local()

    def get_open(self, household_id):
        invite = super().get_open(household_id)
        if not getattr(self._seen, "done", False):
            self._seen.done = True
            self._barrier.wait()
        return invite


@pytest.fixture
def file_container(tmp_path) -> Iterator[Container]:
    settings = Settings(environment=Environment.TESTING, sqlite_path=tmp_path / "hh.db")
    database = SQLiteDatabase(settings.sqlite_path, check_same_thread=False, timeout=10)
    database.initialize()
    container = Container(settings=settings, database=database)
    yield container
    container.close()


class TestConcurrentRotate:
    def test_concurrent_rotations_converge_on_one_code(self, file_container: Container):
        owner_id = uuid4()
        home = file_container.membership_service.create_household(owner_id, "Race Home")
        repos = file_container.repositories
        service = InviteServiceImpl(
            repos.database,
            repos.households,
            repos.memberships,
            BarrierOnFirstRead(repos.database, parties=2),
        )

        results: list = []
        errors: list = []

        def rotate() -> None:
            try:
                results.append(service.rotate(owner_id, home.household.id))
            except Exception as e:  # surfaced by the assertions below
                errors.append(e)

        threads = [threading.Thread(target=rotate) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(results) == 2
        assert results[0].invite_code == results[1].invite_code
        assert results[0].invite_code != home.invite.code
        open_invites = _open_invites(repos, home.household.id)
        assert len(open_invites) == 1
        assert open_invites[0].code == results[0].invite_code
