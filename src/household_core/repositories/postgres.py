"""PostgreSQL implementations of repository interfaces."""

from __future__ import annotations

import contextlib
import threading
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import psycopg2
import psycopg2.errors
import psycopg2.extensions
import psycopg2.extras

from household_core.domain.entitlements import (
    Entitlement,
    Plan,
    Subscription,
    SubscriptionStatus,
    SubscriptionStore,
)
from household_core.domain.households import (
    Household,
    JoinRequestResolution,
    MemberCapJoinRequest,
    MemberRole,
    Membership,
)
from household_core.domain.invites import Invite
from household_core.domain.profiles import (
    Avatar,
    AvatarCategory,
    Profile,
    default_avatar_catalog,
)
from household_core.domain.usage import DEFAULT_PLAN_LIMITS, UsageMetric
from household_core.exceptions import (
    DuplicateInviteCodeError,
    IntegrityError,
    OpenStintConflictError,
)
from household_core.repositories.interfaces import (
    AvatarRepository,
    Database,
    EntitlementRepository,
    HouseholdRepository,
    InviteRepository,
    JoinRequestRepository,
    MembershipRepository,
    ProfileRepository,
    Repositories,
    SubscriptionRepository,
    UsageCounterRepository,
)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _to_uuid(value: str | None) -> UUID | None:
    return UUID(value) if value else None


class PostgresDatabase(Database):
    """PostgreSQL database connection manager.

    Each thread gets its own autocommit connection; transaction() wraps
    statements in an explicit BEGIN/COMMIT so HouseholdRepository.lock can
    hold SELECT ... FOR UPDATE until the unit of work ends.
    """

    def __init__(self, connection_string: str) -> None:
        self._connection_string = connection_string
        self._local = threading.local()
        self._connections: list[psycopg2.extensions.connection] = []
        self._registry_lock = threading.Lock()

    def get_connection(self) -> psycopg2.extensions.connection:
        """Get or create the connection for the calling thread."""
        conn = getattr(self._local, "connection", None)
        if conn is None or conn.closed:
            conn = psycopg2.connect(
                self._connection_string,
                cursor_factory=psycopg2.extras.RealDictCursor,
            )
            conn.autocommit = True
            self._local.connection = conn
            with self._registry_lock:
                self._connections.append(conn)
        return conn

    def in_transaction(self) -> bool:
        return getattr(self._local, "depth", 0) > 0

    @contextlib.contextmanager
    def transaction(self) -> Iterator[psycopg2.extensions.connection]:
        conn = self.get_connection()
        depth = getattr(self._local, "depth", 0)
        self._local.depth = depth + 1
        try:
            if depth:
                yield conn
                return
            with conn.cursor() as cur:
                cur.execute("BEGIN")
            try:
                yield conn
            except BaseException:
                if not conn.closed:
                    with conn.cursor() as cur:
                        cur.execute("ROLLBACK")
                raise
            with conn.cursor() as cur:
                cur.execute("COMMIT")
        finally:
            self._local.depth = depth

    def close(self) -> None:
        with self._registry_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            if not conn.closed:
                conn.close()
        self._local = threading.local()

    def initialize(self) -> None:
        """Create all database tables and seed reference data."""
        conn = self.get_connection()
        with conn.cursor() as cur:
            cur.execute(
                """
                -- Households table
                CREATE TABLE IF NOT EXISTS households (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    owner_user_id TEXT NOT NULL,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    deactivated_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK (is_active = (deactivated_at IS NULL))
                );

                -- Membership stints table
                CREATE TABLE IF NOT EXISTS memberships (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    household_id TEXT NOT NULL REFERENCES households(id),
                    role TEXT NOT NULL CHECK (role IN ('owner', 'member')),
                    valid_from TEXT NOT NULL,
                    valid_to TEXT,
                    is_current BOOLEAN GENERATED ALWAYS AS (valid_to IS NULL) STORED,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK (valid_to IS NULL OR valid_to >= valid_from)
                );
                CREATE UNIQUE INDEX IF NOT EXISTS uq_memberships_one_current_per_user
                    ON memberships(user_id) WHERE valid_to IS NULL;
                CREATE UNIQUE INDEX IF NOT EXISTS uq_memberships_one_owner_per_household
                    ON memberships(household_id) WHERE valid_to IS NULL AND role = 'owner';
                CREATE INDEX IF NOT EXISTS idx_memberships_household
                    ON memberships(household_id, valid_to);

                -- Invites table
                CREATE TABLE IF NOT EXISTS invites (
                    id TEXT PRIMARY KEY,
                    household_id TEXT NOT NULL REFERENCES households(id),
                    code TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    revoked_at TEXT,
                    used_count INTEGER NOT NULL DEFAULT 0 CHECK (used_count >= 0),
                    CONSTRAINT uq_invites_code UNIQUE (code)
                );
                CREATE UNIQUE INDEX IF NOT EXISTS uq_invites_one_open_per_household
                    ON invites(household_id) WHERE revoked_at IS NULL;

                -- Entitlements table
                CREATE TABLE IF NOT EXISTS entitlements (
                    household_id TEXT PRIMARY KEY REFERENCES households(id),
                    plan TEXT NOT NULL CHECK (plan IN ('free', 'premium')),
                    expires_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                -- Subscriptions table
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    household_id TEXT REFERENCES households(id),
                    entitlement_key TEXT NOT NULL,
                    store TEXT NOT NULL
                        CHECK (store IN ('app_store', 'play_store', 'stripe', 'promotional')),
                    product_id TEXT NOT NULL,
                    status TEXT NOT NULL
                        CHECK (status IN ('active', 'cancelled', 'expired', 'inactive')),
                    current_period_end_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (user_id, entitlement_key)
                );
                CREATE INDEX IF NOT EXISTS idx_subscriptions_household
                    ON subscriptions(household_id);

                -- Usage counters table
                CREATE TABLE IF NOT EXISTS usage_counters (
                    household_id TEXT NOT NULL REFERENCES households(id),
                    metric TEXT NOT NULL,
                    count INTEGER NOT NULL DEFAULT 0 CHECK (count >= 0),
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (household_id, metric)
                );

                -- Plan limits table
                CREATE TABLE IF NOT EXISTS plan_limits (
                    plan TEXT NOT NULL,
                    metric TEXT NOT NULL,
                    max_value INTEGER NOT NULL CHECK (max_value >= 0),
                    PRIMARY KEY (plan, metric)
                );

                -- Avatars table
                CREATE TABLE IF NOT EXISTS avatars (
                    id TEXT PRIMARY KEY,
                    storage_path TEXT NOT NULL UNIQUE,
                    category TEXT NOT NULL CHECK (category IN ('animal', 'plant')),
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                -- Profiles table
                CREATE TABLE IF NOT EXISTS profiles (
                    user_id TEXT PRIMARY KEY,
                    username TEXT,
                    avatar_id TEXT REFERENCES avatars(id),
                    deactivated_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                -- Join requests blocked by the member cap
                CREATE TABLE IF NOT EXISTS member_cap_join_requests (
                    id TEXT PRIMARY KEY,
                    household_id TEXT NOT NULL REFERENCES households(id),
                    joiner_user_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    resolved_at TEXT,
                    resolution TEXT CHECK (resolution IN (
                        'joined', 'joiner_superseded', 'home_inactive',
                        'invite_missing', 'owner_dismissed'
                    )),
                    CHECK ((resolved_at IS NULL) = (resolution IS NULL))
                );
                CREATE UNIQUE INDEX IF NOT EXISTS uq_member_cap_requests_open
                    ON member_cap_join_requests(household_id, joiner_user_id)
                    WHERE resolved_at IS NULL;
                """
            )
            for plan, limits in DEFAULT_PLAN_LIMITS.items():
                for metric, max_value in limits.items():
                    cur.execute(
                        """
                        INSERT INTO plan_limits (plan, metric, max_value)
                        VALUES (%s, %s, %s)
                        ON CONFLICT DO NOTHING
                        """,
                        (plan.value, metric.value, max_value),
                    )
            for avatar in default_avatar_catalog():
                cur.execute(
                    """
                    INSERT INTO avatars (id, storage_path, category, sort_order, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (
                        str(avatar.id),
                        avatar.storage_path,
                        avatar.category.value,
                        avatar.sort_order,
                        avatar.created_at.isoformat(),
                    ),
                )

    def drop_all(self) -> None:
        """Drop every table. Used by the test suite."""
        conn = self.get_connection()
        with conn.cursor() as cur:
            cur.execute(
                """
                DROP TABLE IF EXISTS member_cap_join_requests, profiles, avatars, plan_limits,
                    usage_counters, subscriptions, entitlements, invites, memberships,
                    households CASCADE
                """
            )


class _PostgresRepository:
    def __init__(self, database: PostgresDatabase) -> None:
        self._db = database

    def _fetchone(self, sql: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        conn = self._db.get_connection()
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        conn = self._db.get_connection()
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchall()

    def _execute(self, sql: str, params: tuple[Any, ...]) -> int:
        conn = self._db.get_connection()
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount


class PostgresHouseholdRepository(_PostgresRepository, HouseholdRepository):
    def add(self, household: Household) -> None:
        self._execute(
            """
            INSERT INTO households (id, name, owner_user_id, is_active, deactivated_at,
                                    created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                str(household.id),
                household.name,
                str(household.owner_user_id),
                household.is_active,
                _to_iso(household.deactivated_at),
                household.created_at.isoformat(),
                household.updated_at.isoformat(),
            ),
        )

    def get(self, household_id: UUID) -> Household | None:
        row = self._fetchone(
            "SELECT * FROM households WHERE id = %s", (str(household_id),)
        )
        return self._row_to_household(row) if row else None

    def lock(self, household_id: UUID) -> Household | None:
        row = self._fetchone(
            "SELECT * FROM households WHERE id = %s FOR UPDATE", (str(household_id),)
        )
        return self._row_to_household(row) if row else None

    def list_all(self) -> Iterable[Household]:
        rows = self._fetchall("SELECT * FROM households ORDER BY created_at")
        return [self._row_to_household(row) for row in rows]

    def update(self, household: Household) -> None:
        self._execute(
            """
            UPDATE households SET
                name = %s,
                owner_user_id = %s,
                is_active = %s,
                deactivated_at = %s,
                updated_at = %s
            WHERE id = %s
            """,
            (
                household.name,
                str(household.owner_user_id),
                household.is_active,
                _to_iso(household.deactivated_at),
                household.updated_at.isoformat(),
                str(household.id),
            ),
        )

    def _row_to_household(self, row: dict[str, Any]) -> Household:
        return Household(
            name=row["name"],
            owner_user_id=UUID(row["owner_user_id"]),
            id=UUID(row["id"]),
            is_active=row["is_active"],
            deactivated_at=_from_iso(row["deactivated_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


class PostgresMembershipRepository(_PostgresRepository, MembershipRepository):
    def add(self, membership: Membership) -> None:
        try:
            self._execute(
                """
                INSERT INTO memberships (id, user_id, household_id, role, valid_from,
                                         valid_to, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    str(membership.id),
                    str(membership.user_id),
                    str(membership.household_id),
                    membership.role.value,
                    membership.valid_from.isoformat(),
                    _to_iso(membership.valid_to),
                    membership.created_at.isoformat(),
                    membership.updated_at.isoformat(),
                ),
            )
        except psycopg2.errors.UniqueViolation as e:
            if e.diag.constraint_name == "uq_memberships_one_current_per_user":
                raise OpenStintConflictError(membership.user_id) from e
            raise IntegrityError(
                str(e), context={"membership_id": str(membership.id)}
            ) from e

    def close(self, membership_id: UUID, at: datetime) -> bool:
        rowcount = self._execute(
            """
            UPDATE memberships SET valid_to = %s, updated_at = %s
            WHERE id = %s AND valid_to IS NULL
            """,
            (at.isoformat(), at.isoformat(), str(membership_id)),
        )
        return rowcount == 1

    def get(self, membership_id: UUID) -> Membership | None:
        row = self._fetchone(
            "SELECT * FROM memberships WHERE id = %s", (str(membership_id),)
        )
        return self._row_to_membership(row) if row else None

    def get_current_for_user(self, user_id: UUID) -> Membership | None:
        row = self._fetchone(
            "SELECT * FROM memberships WHERE user_id = %s AND valid_to IS NULL",
            (str(user_id),),
        )
        return self._row_to_membership(row) if row else None

    def get_current(self, household_id: UUID, user_id: UUID) -> Membership | None:
        row = self._fetchone(
            """
            SELECT * FROM memberships
            WHERE household_id = %s AND user_id = %s AND valid_to IS NULL
            """,
            (str(household_id), str(user_id)),
        )
        return self._row_to_membership(row) if row else None

    def get_current_owner(self, household_id: UUID) -> Membership | None:
        row = self._fetchone(
            """
            SELECT * FROM memberships
            WHERE household_id = %s AND role = 'owner' AND valid_to IS NULL
            """,
            (str(household_id),),
        )
        return self._row_to_membership(row) if row else None

    def list_current(self, household_id: UUID) -> Iterable[Membership]:
        rows = self._fetchall(
            """
            SELECT * FROM memberships
            WHERE household_id = %s AND valid_to IS NULL
            ORDER BY CASE role WHEN 'owner' THEN 0 ELSE 1 END, valid_from
            """,
            (str(household_id),),
        )
        return [self._row_to_membership(row) for row in rows]

    def list_history(self, household_id: UUID) -> Iterable[Membership]:
        rows = self._fetchall(
            """
            SELECT * FROM memberships WHERE household_id = %s
            ORDER BY valid_from, created_at
            """,
            (str(household_id),),
        )
        return [self._row_to_membership(row) for row in rows]

    def _row_to_membership(self, row: dict[str, Any]) -> Membership:
        return Membership(
            user_id=UUID(row["user_id"]),
            household_id=UUID(row["household_id"]),
            role=MemberRole(row["role"]),
            id=UUID(row["id"]),
            valid_from=datetime.fromisoformat(row["valid_from"]),
            valid_to=_from_iso(row["valid_to"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


class PostgresInviteRepository(_PostgresRepository, InviteRepository):
    def add_if_no_open(self, invite: Invite) -> bool:
        conn = self._db.get_connection()
        # A failed statement aborts the surrounding transaction, so a code
        # collision is rolled back to a savepoint and the caller may retry.
        use_savepoint = self._db.in_transaction()
        with conn.cursor() as cur:
            if use_savepoint:
                cur.execute("SAVEPOINT invite_insert")
            try:
                cur.execute(
                    """
                    INSERT INTO invites (id, household_id, code, created_at, revoked_at,
                                         used_count)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (household_id) WHERE revoked_at IS NULL DO NOTHING
                    """,
                    (
                        str(invite.id),
                        str(invite.household_id),
                        invite.code,
                        invite.created_at.isoformat(),
                        _to_iso(invite.revoked_at),
                        invite.used_count,
                    ),
                )
            except psycopg2.errors.UniqueViolation as e:
                if use_savepoint:
                    cur.execute("ROLLBACK TO SAVEPOINT invite_insert")
                if e.diag.constraint_name == "uq_invites_code":
                    raise DuplicateInviteCodeError(invite.code) from e
                raise IntegrityError(
                    str(e), context={"invite_id": str(invite.id)}
                ) from e
            if use_savepoint:
                cur.execute("RELEASE SAVEPOINT invite_insert")
            return cur.rowcount == 1

    def get(self, invite_id: UUID) -> Invite | None:
        row = self._fetchone("SELECT * FROM invites WHERE id = %s", (str(invite_id),))
        return self._row_to_invite(row) if row else None

    def get_open(self, household_id: UUID) -> Invite | None:
        row = self._fetchone(
            """
            SELECT * FROM invites
            WHERE household_id = %s AND revoked_at IS NULL
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (str(household_id),),
        )
        return self._row_to_invite(row) if row else None

    def get_by_code(self, code: str) -> Invite | None:
        row = self._fetchone("SELECT * FROM invites WHERE code = %s", (code,))
        return self._row_to_invite(row) if row else None

    def code_exists(self, code: str) -> bool:
        return self._fetchone("SELECT 1 FROM invites WHERE code = %s", (code,)) is not None

    def revoke(self, invite_id: UUID, at: datetime) -> bool:
        rowcount = self._execute(
            "UPDATE invites SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL",
            (at.isoformat(), str(invite_id)),
        )
        return rowcount == 1

    def increment_used_count(self, invite_id: UUID) -> None:
        self._execute(
            "UPDATE invites SET used_count = used_count + 1 WHERE id = %s",
            (str(invite_id),),
        )

    def list_by_household(self, household_id: UUID) -> Iterable[Invite]:
        rows = self._fetchall(
            "SELECT * FROM invites WHERE household_id = %s ORDER BY created_at",
            (str(household_id),),
        )
        return [self._row_to_invite(row) for row in rows]

    def _row_to_invite(self, row: dict[str, Any]) -> Invite:
        return Invite(
            household_id=UUID(row["household_id"]),
            code=row["code"],
            id=UUID(row["id"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            revoked_at=_from_iso(row["revoked_at"]),
            used_count=row["used_count"],
        )


class PostgresEntitlementRepository(_PostgresRepository, EntitlementRepository):
    def get(self, household_id: UUID) -> Entitlement | None:
        row = self._fetchone(
            "SELECT * FROM entitlements WHERE household_id = %s", (str(household_id),)
        )
        if row is None:
            return None
        return Entitlement(
            household_id=UUID(row["household_id"]),
            plan=Plan(row["plan"]),
            expires_at=_from_iso(row["expires_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def upsert(self, entitlement: Entitlement) -> None:
        self._execute(
            """
            INSERT INTO entitlements (household_id, plan, expires_at, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (household_id) DO UPDATE SET
                plan = EXCLUDED.plan,
                expires_at = EXCLUDED.expires_at,
                updated_at = EXCLUDED.updated_at
            """,
            (
                str(entitlement.household_id),
                entitlement.plan.value,
                _to_iso(entitlement.expires_at),
                entitlement.created_at.isoformat(),
                entitlement.updated_at.isoformat(),
            ),
        )


class PostgresSubscriptionRepository(_PostgresRepository, SubscriptionRepository):
    def add(self, subscription: Subscription) -> None:
        self._execute(
            """
            INSERT INTO subscriptions (id, user_id, household_id, entitlement_key, store,
                                       product_id, status, current_period_end_at,
                                       created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                str(subscription.id),
                str(subscription.user_id),
                str(subscription.household_id) if subscription.household_id else None,
                subscription.entitlement_key,
                subscription.store.value,
                subscription.product_id,
                subscription.status.value,
                _to_iso(subscription.current_period_end_at),
                subscription.created_at.isoformat(),
                subscription.updated_at.isoformat(),
            ),
        )

    def get(self, subscription_id: UUID) -> Subscription | None:
        row = self._fetchone(
            "SELECT * FROM subscriptions WHERE id = %s", (str(subscription_id),)
        )
        return self._row_to_subscription(row) if row else None

    def get_by_key(self, user_id: UUID, entitlement_key: str) -> Subscription | None:
        row = self._fetchone(
            "SELECT * FROM subscriptions WHERE user_id = %s AND entitlement_key = %s",
            (str(user_id), entitlement_key),
        )
        return self._row_to_subscription(row) if row else None

    def update(self, subscription: Subscription) -> None:
        self._execute(
            """
            UPDATE subscriptions SET
                household_id = %s,
                store = %s,
                product_id = %s,
                status = %s,
                current_period_end_at = %s,
                updated_at = %s
            WHERE id = %s
            """,
            (
                str(subscription.household_id) if subscription.household_id else None,
                subscription.store.value,
                subscription.product_id,
                subscription.status.value,
                _to_iso(subscription.current_period_end_at),
                subscription.updated_at.isoformat(),
                str(subscription.id),
            ),
        )

    def delete(self, subscription_id: UUID) -> None:
        self._execute(
            "DELETE FROM subscriptions WHERE id = %s", (str(subscription_id),)
        )

    def list_for_user(self, user_id: UUID) -> Iterable[Subscription]:
        rows = self._fetchall(
            "SELECT * FROM subscriptions WHERE user_id = %s ORDER BY created_at",
            (str(user_id),),
        )
        return [self._row_to_subscription(row) for row in rows]

    def list_for_household(self, household_id: UUID) -> Iterable[Subscription]:
        rows = self._fetchall(
            "SELECT * FROM subscriptions WHERE household_id = %s ORDER BY created_at",
            (str(household_id),),
        )
        return [self._row_to_subscription(row) for row in rows]

    def _row_to_subscription(self, row: dict[str, Any]) -> Subscription:
        return Subscription(
            user_id=UUID(row["user_id"]),
            entitlement_key=row["entitlement_key"],
            store=SubscriptionStore(row["store"]),
            product_id=row["product_id"],
            status=SubscriptionStatus(row["status"]),
            current_period_end_at=_from_iso(row["current_period_end_at"]),
            household_id=_to_uuid(row["household_id"]),
            id=UUID(row["id"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


class PostgresUsageCounterRepository(_PostgresRepository, UsageCounterRepository):
    def get_counts(self, household_id: UUID) -> dict[UsageMetric, int]:
        rows = self._fetchall(
            "SELECT metric, count FROM usage_counters WHERE household_id = %s",
            (str(household_id),),
        )
        counts = {metric: 0 for metric in UsageMetric}
        for row in rows:
            counts[UsageMetric(row["metric"])] = row["count"]
        return counts

    def apply_delta(self, household_id: UUID, metric: UsageMetric, delta: int) -> int:
        row = self._fetchone(
            """
            INSERT INTO usage_counters (household_id, metric, count, updated_at)
            VALUES (%s, %s, GREATEST(0, %s), %s)
            ON CONFLICT (household_id, metric) DO UPDATE SET
                count = GREATEST(0, usage_counters.count + %s),
                updated_at = EXCLUDED.updated_at
            RETURNING count
            """,
            (
                str(household_id),
                metric.value,
                delta,
                datetime.now(UTC).isoformat(),
                delta,
            ),
        )
        assert row is not None
        return row["count"]

    def get_plan_limits(self, plan: Plan) -> dict[UsageMetric, int]:
        rows = self._fetchall(
            "SELECT metric, max_value FROM plan_limits WHERE plan = %s", (plan.value,)
        )
        return {UsageMetric(row["metric"]): row["max_value"] for row in rows}


class PostgresProfileRepository(_PostgresRepository, ProfileRepository):
    def get(self, user_id: UUID) -> Profile | None:
        row = self._fetchone(
            "SELECT * FROM profiles WHERE user_id = %s", (str(user_id),)
        )
        if row is None:
            return None
        return Profile(
            user_id=UUID(row["user_id"]),
            username=row["username"],
            avatar_id=_to_uuid(row["avatar_id"]),
            deactivated_at=_from_iso(row["deactivated_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def upsert(self, profile: Profile) -> None:
        self._execute(
            """
            INSERT INTO profiles (user_id, username, avatar_id, deactivated_at,
                                  created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id) DO UPDATE SET
                username = EXCLUDED.username,
                avatar_id = EXCLUDED.avatar_id,
                deactivated_at = EXCLUDED.deactivated_at,
                updated_at = EXCLUDED.updated_at
            """,
            (
                str(profile.user_id),
                profile.username,
                str(profile.avatar_id) if profile.avatar_id else None,
                _to_iso(profile.deactivated_at),
                profile.created_at.isoformat(),
                profile.updated_at.isoformat(),
            ),
        )

    def list_avatar_ids_in_use(
        self, household_id: UUID, exclude_user_id: UUID | None = None
    ) -> set[UUID]:
        rows = self._fetchall(
            """
            SELECT p.avatar_id FROM memberships m
            JOIN profiles p ON p.user_id = m.user_id
            WHERE m.household_id = %s
              AND m.valid_to IS NULL
              AND m.user_id <> %s
              AND p.avatar_id IS NOT NULL
            """,
            (str(household_id), str(exclude_user_id) if exclude_user_id else ""),
        )
        return {UUID(row["avatar_id"]) for row in rows}


class PostgresAvatarRepository(_PostgresRepository, AvatarRepository):
    def add(self, avatar: Avatar) -> None:
        self._execute(
            """
            INSERT INTO avatars (id, storage_path, category, sort_order, created_at)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (
                str(avatar.id),
                avatar.storage_path,
                avatar.category.value,
                avatar.sort_order,
                avatar.created_at.isoformat(),
            ),
        )

    def get(self, avatar_id: UUID) -> Avatar | None:
        row = self._fetchone("SELECT * FROM avatars WHERE id = %s", (str(avatar_id),))
        return self._row_to_avatar(row) if row else None

    def list_all(self) -> Iterable[Avatar]:
        rows = self._fetchall("SELECT * FROM avatars ORDER BY sort_order, created_at")
        return [self._row_to_avatar(row) for row in rows]

    def _row_to_avatar(self, row: dict[str, Any]) -> Avatar:
        return Avatar(
            storage_path=row["storage_path"],
            category=AvatarCategory(row["category"]),
            id=UUID(row["id"]),
            sort_order=row["sort_order"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )


class PostgresJoinRequestRepository(_PostgresRepository, JoinRequestRepository):
    def add_or_get_open(self, request: MemberCapJoinRequest) -> MemberCapJoinRequest:
        # The no-op update makes RETURNING yield the existing open row.
        row = self._fetchone(
            """
            INSERT INTO member_cap_join_requests
                (id, household_id, joiner_user_id, created_at, resolved_at, resolution)
            VALUES (%s, %s, %s, %s, NULL, NULL)
            ON CONFLICT (household_id, joiner_user_id) WHERE resolved_at IS NULL
            DO UPDATE SET household_id = EXCLUDED.household_id
            RETURNING *
            """,
            (
                str(request.id),
                str(request.household_id),
                str(request.joiner_user_id),
                request.created_at.isoformat(),
            ),
        )
        return self._row_to_request(row)

    def list_open(self, household_id: UUID) -> Iterable[MemberCapJoinRequest]:
        rows = self._fetchall(
            """
            SELECT * FROM member_cap_join_requests
            WHERE household_id = %s AND resolved_at IS NULL
            ORDER BY created_at, id
            """,
            (str(household_id),),
        )
        return [self._row_to_request(row) for row in rows]

    def resolve(
        self,
        household_id: UUID,
        resolution: JoinRequestResolution,
        at: datetime,
        request_ids: Iterable[UUID] | None = None,
    ) -> int:
        sql = """
            UPDATE member_cap_join_requests
            SET resolved_at = %s, resolution = %s
            WHERE household_id = %s AND resolved_at IS NULL
        """
        params: tuple[Any, ...] = (at.isoformat(), resolution.value, str(household_id))
        if request_ids is not None:
            sql += " AND id = ANY(%s)"
            params += ([str(request_id) for request_id in request_ids],)
        return self._execute(sql, params)

    def _row_to_request(self, row: dict[str, Any]) -> MemberCapJoinRequest:
        return MemberCapJoinRequest(
            household_id=UUID(row["household_id"]),
            joiner_user_id=UUID(row["joiner_user_id"]),
            id=UUID(row["id"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            resolved_at=_from_iso(row["resolved_at"]),
            resolution=JoinRequestResolution(row["resolution"])
            if row["resolution"]
            else None,
        )


def build_repositories(database: PostgresDatabase) -> Repositories:
    return Repositories(
        database=database,
        households=PostgresHouseholdRepository(database),
        memberships=PostgresMembershipRepository(database),
        invites=PostgresInviteRepository(database),
        entitlements=PostgresEntitlementRepository(database),
        subscriptions=PostgresSubscriptionRepository(database),
        usage=PostgresUsageCounterRepository(database),
        profiles=PostgresProfileRepository(database),
        avatars=PostgresAvatarRepository(database),
        join_requests=PostgresJoinRequestRepository(database),
    )
