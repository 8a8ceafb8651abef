from uuid import UUID, uuid4

import pytest

from household_core.config import Environment, Settings
from household_core.container import Container
from household_core.repositories.interfaces import Repositories
from household_core.repositories.sqlite import SQLiteDatabase, build_repositories
from household_core.services.interfaces import HouseholdCreated


@pytest.fixture
def settings() -> Settings:
    return Settings(environment=Environment.TESTING, sqlite_path=":memory:")


@pytest.fixture
def db() -> SQLiteDatabase:
    database = SQLiteDatabase(":memory:")
    database.initialize()
    return database


@pytest.fixture
def repos(db: SQLiteDatabase) -> Repositories:
    return build_repositories(db)


@pytest.fixture
def container(settings: Settings, db: SQLiteDatabase) -> Container:
    return Container(settings=settings, database=db)


@pytest.fixture
def owner_id() -> UUID:
    return uuid4()


@pytest.fixture
def member_id() -> UUID:
    return uuid4()


@pytest.fixture
def outsider_id() -> UUID:
    return uuid4()


@pytest.fixture
def home(container: Container, owner_id: UUID) -> HouseholdCreated:
    return container.membership_service.create_household(owner_id, "Maple Street")


@pytest.fixture
def home_with_member(
    container: Container, home: HouseholdCreated, member_id: UUID
) -> HouseholdCreated:
    container.membership_service.join(member_id, home.invite.code)
    return home
