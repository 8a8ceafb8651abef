"""Dependency injection container for Household Core.

Services are created lazily on first access and cached, so tests can build
a Container around an in-memory database and get a fully wired graph:

    db = SQLiteDatabase(":memory:")
    db.initialize()
    container = Container(database=db)
    container.membership_service.create_household(user_id, "Home")
"""

from functools import cached_property, lru_cache

from household_core.config import DatabaseType, Settings, get_settings
from household_core.logging_config import get_logger
from household_core.repositories.interfaces import Database, Repositories
from household_core.services.avatars import AvatarServiceImpl
from household_core.services.collaborators import (
    ChoreCollaborator,
    LoggingChoreCollaborator,
)
from household_core.services.entitlements import EntitlementSyncServiceImpl
from household_core.services.invites import InviteServiceImpl
from household_core.services.membership import MembershipServiceImpl
from household_core.services.subscriptions import SubscriptionServiceImpl
from household_core.services.usage import QuotaServiceImpl

logger = get_logger(__name__)


class Container:
    """Wires repositories and services for one database.

    Pass a database to reuse one that is already initialized; otherwise it
    is created from settings on first access.
    """

    def __init__(
        self, settings: Settings | None = None, database: Database | None = None
    ) -> None:
        self._settings = settings or get_settings()
        if database is not None:
            self.__dict__["database"] = database
        logger.debug(
            "container_created",
            database_type=self._settings.database_type.value,
            environment=self._settings.environment.value,
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    @cached_property
    def database(self) -> Database:
        """SQLite for development and tests, PostgreSQL for production."""
        if self._settings.database_type == DatabaseType.POSTGRES:
            return self._create_postgres_database()
        return self._create_sqlite_database()

    def _create_sqlite_database(self) -> Database:
        from household_core.repositories.sqlite import SQLiteDatabase

        db_path = str(self._settings.sqlite_path)
        logger.info("initializing_sqlite_database", path=db_path)

        # Request handlers run on a thread pool; file databases still get a
        # connection per thread.
        db = SQLiteDatabase(
            db_path,
            check_same_thread=False,
            timeout=self._settings.sqlite_busy_timeout,
        )
        db.initialize()
        return db

    def _create_postgres_database(self) -> Database:
        from household_core.repositories.postgres import PostgresDatabase

        url = self._settings.database_url
        if not url:
            raise ValueError("database_url must be set when database_type is postgres")

        logger.info(
            "initializing_postgres_database",
            # Credentials stay out of the log
            host=url.split("@")[-1].split("/")[0] if "@" in url else "localhost",
        )

        db = PostgresDatabase(url)
        db.initialize()
        return db

    @cached_property
    def repositories(self) -> Repositories:
        from household_core.repositories import postgres, sqlite

        if isinstance(self.database, postgres.PostgresDatabase):
            return postgres.build_repositories(self.database)
        if isinstance(self.database, sqlite.SQLiteDatabase):
            return sqlite.build_repositories(self.database)
        raise TypeError(f"Unsupported database: {type(self.database).__name__}")

    @cached_property
    def quota_service(self) -> QuotaServiceImpl:
        repos = self.repositories
        return QuotaServiceImpl(
            repos.database,
            repos.households,
            repos.memberships,
            repos.entitlements,
            repos.usage,
        )

    @cached_property
    def entitlement_service(self) -> EntitlementSyncServiceImpl:
        repos = self.repositories
        service = EntitlementSyncServiceImpl(
            repos.database, repos.households, repos.subscriptions, repos.entitlements
        )
        # Resolved at call time; the membership service depends on this one.
        service.on_upgrade(
            lambda household_id: self.membership_service.process_join_requests(
                household_id
            )
        )
        return service

    @cached_property
    def subscription_service(self) -> SubscriptionServiceImpl:
        repos = self.repositories
        service = SubscriptionServiceImpl(
            repos.database, repos.subscriptions, repos.memberships
        )
        service.subscribe(self.entitlement_service.handle)
        return service

    @cached_property
    def invite_service(self) -> InviteServiceImpl:
        repos = self.repositories
        return InviteServiceImpl(
            repos.database,
            repos.households,
            repos.memberships,
            repos.invites,
            max_code_attempts=self._settings.invite_code_generation_attempts,
        )

    @cached_property
    def avatar_service(self) -> AvatarServiceImpl:
        repos = self.repositories
        return AvatarServiceImpl(
            repos.households,
            repos.memberships,
            repos.profiles,
            repos.avatars,
            self.quota_service,
        )

    @cached_property
    def chore_collaborator(self) -> ChoreCollaborator:
        return LoggingChoreCollaborator()

    @cached_property
    def membership_service(self) -> MembershipServiceImpl:
        repos = self.repositories
        return MembershipServiceImpl(
            repos.database,
            repos.households,
            repos.memberships,
            repos.profiles,
            repos.join_requests,
            invite_service=self.invite_service,
            quota_service=self.quota_service,
            entitlement_service=self.entitlement_service,
            subscription_service=self.subscription_service,
            avatar_service=self.avatar_service,
            chore_collaborator=self.chore_collaborator,
        )

    def close(self) -> None:
        """Close the database if it was opened."""
        database = self.__dict__.get("database")
        if database is not None:
            logger.info("closing_database_connection")
            database.close()

    def __enter__(self) -> "Container":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


_container: Container | None = None


@lru_cache
def get_container() -> Container:
    """Global container singleton, created lazily from environment settings.

    Tests build a Container directly, or override this function as a
    FastAPI dependency.
    """
    global _container
    if _container is None:
        _container = Container()
    return _container


def reset_container() -> None:
    """Close and drop the global container."""
    global _container
    if _container is not None:
        _container.close()
        _container = None
    get_container.cache_clear()


# FastAPI dependency functions
def get_membership_service() -> MembershipServiceImpl:
    return get_container().membership_service


def get_invite_service() -> InviteServiceImpl:
    return get_container().invite_service


def get_quota_service() -> QuotaServiceImpl:
    return get_container().quota_service


def get_subscription_service() -> SubscriptionServiceImpl:
    return get_container().subscription_service
