"""SQLite implementations of repository interfaces."""

from __future__ import annotations

import contextlib
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import UUID

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


class _FetchedRows:
    """Rows read under the shared-connection lock, with the cursor API repositories use."""

    def __init__(self, rows: list[sqlite3.Row], rowcount: int) -> None:
        self._rows = rows
        self._position = 0
        self.rowcount = rowcount

    def fetchone(self) -> sqlite3.Row | None:
        if self._position >= len(self._rows):
            return None
        row = self._rows[self._position]
        self._position += 1
        return row

    def fetchall(self) -> list[sqlite3.Row]:
        rows = self._rows[self._position :]
        self._position = len(self._rows)
        return rows

    def __iter__(self) -> Iterator[sqlite3.Row]:
        return iter(self.fetchall())


class _SharedConnection:
    """The single in-memory connection, with every statement run under a lock.

    A thread inside transaction() already holds the lock, so its statements
    proceed; any other thread waits until that transaction ends instead of
    reading or writing inside it.
    """

    def __init__(self, conn: sqlite3.Connection, lock: threading.RLock) -> None:
        self._conn = conn
        self._lock = lock

    @property
    def in_transaction(self) -> bool:
        return self._conn.in_transaction

    def execute(self, sql: str, parameters: Any = ()) -> _FetchedRows:
        with self._lock:
            cursor = self._conn.execute(sql, parameters)
            return _FetchedRows(cursor.fetchall(), cursor.rowcount)

    def executescript(self, script: str) -> None:
        with self._lock:
            self._conn.executescript(script)


class SQLiteDatabase(Database):
    """SQLite database connection manager.

    Connections run in autocommit mode; transaction() opens BEGIN IMMEDIATE
    so writers serialize on the database write lock. File databases give
    every thread its own connection. An in-memory database lives inside a
    single connection, so it is shared: every statement on it, inside a
    transaction or not, runs under one re-entrant lock that a transaction
    holds until it ends.
    """

    def __init__(
        self,
        path: str | Path = ":memory:",
        check_same_thread: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self._path = str(path)
        self._check_same_thread = check_same_thread
        self._timeout = timeout
        self._is_memory = self._path == ":memory:"
        self._shared: _SharedConnection | None = None
        self._shared_lock = threading.RLock()
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._registry_lock = threading.Lock()

    @property
    def path(self) -> str:
        return self._path

    def _connect(self, check_same_thread: bool) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._path,
            timeout=self._timeout,
            check_same_thread=check_same_thread,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        with self._registry_lock:
            self._connections.append(conn)
        return conn

    def get_connection(self) -> sqlite3.Connection | _SharedConnection:
        """Get or create the connection for the calling thread."""
        if self._is_memory:
            with self._shared_lock:
                if self._shared is None:
                    self._shared = _SharedConnection(
                        self._connect(self._check_same_thread), self._shared_lock
                    )
                return self._shared
        conn = getattr(self._local, "connection", None)
        if conn is None:
            conn = self._connect(check_same_thread=True)
            self._local.connection = conn
        return conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection | _SharedConnection]:
        guard = self._shared_lock if self._is_memory else contextlib.nullcontext()
        with guard:
            conn = self.get_connection()
            depth = getattr(self._local, "depth", 0)
            self._local.depth = depth + 1
            try:
                if depth:
                    yield conn
                    return
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                self._local.depth = depth

    def close(self) -> None:
        with self._registry_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            with contextlib.suppress(sqlite3.ProgrammingError):
                conn.close()
        self._shared = None
        self._local = threading.local()

    def initialize(self) -> None:
        """Create all database tables and seed reference data."""
        conn = self.get_connection()
        if not self._is_memory:
            conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(
            """
            -- Households table
            CREATE TABLE IF NOT EXISTS households (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                owner_user_id TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                deactivated_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK ((is_active = 1) = (deactivated_at IS NULL))
            );

            -- Membership stints table
            CREATE TABLE IF NOT EXISTS memberships (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                household_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('owner', 'member')),
                valid_from TEXT NOT NULL,
                valid_to TEXT,
                is_current INTEGER GENERATED ALWAYS AS (valid_to IS NULL) VIRTUAL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK (valid_to IS NULL OR valid_to >= valid_from),
                FOREIGN KEY (household_id) REFERENCES households(id)
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
                household_id TEXT NOT NULL,
                code TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL,
                revoked_at TEXT,
                used_count INTEGER NOT NULL DEFAULT 0 CHECK (used_count >= 0),
                FOREIGN KEY (household_id) REFERENCES households(id)
            );
            CREATE UNIQUE INDEX IF NOT EXISTS uq_invites_one_open_per_household
                ON invites(household_id) WHERE revoked_at IS NULL;

            -- Entitlements table
            CREATE TABLE IF NOT EXISTS entitlements (
                household_id TEXT PRIMARY KEY,
                plan TEXT NOT NULL CHECK (plan IN ('free', 'premium')),
                expires_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (household_id) REFERENCES households(id)
            );

            -- Subscriptions table
            CREATE TABLE IF NOT EXISTS subscriptions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                household_id TEXT,
                entitlement_key TEXT NOT NULL,
                store TEXT NOT NULL
                    CHECK (store IN ('app_store', 'play_store', 'stripe', 'promotional')),
                product_id TEXT NOT NULL,
                status TEXT NOT NULL
                    CHECK (status IN ('active', 'cancelled', 'expired', 'inactive')),
                current_period_end_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(user_id, entitlement_key),
                FOREIGN KEY (household_id) REFERENCES households(id)
            );
            CREATE INDEX IF NOT EXISTS idx_subscriptions_household
                ON subscriptions(household_id);

            -- Usage counters table
            CREATE TABLE IF NOT EXISTS usage_counters (
                household_id TEXT NOT NULL,
                metric TEXT NOT NULL,
                count INTEGER NOT NULL DEFAULT 0 CHECK (count >= 0),
                updated_at TEXT NOT NULL,
                PRIMARY KEY (household_id, metric),
                FOREIGN KEY (household_id) REFERENCES households(id)
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
                avatar_id TEXT,
                deactivated_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (avatar_id) REFERENCES avatars(id)
            );

            -- Join requests blocked by the member cap
            CREATE TABLE IF NOT EXISTS member_cap_join_requests (
                id TEXT PRIMARY KEY,
                household_id TEXT NOT NULL,
                joiner_user_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                resolved_at TEXT,
                resolution TEXT CHECK (resolution IN (
                    'joined', 'joiner_superseded', 'home_inactive',
                    'invite_missing', 'owner_dismissed'
                )),
                CHECK ((resolved_at IS NULL) = (resolution IS NULL)),
                FOREIGN KEY (household_id) REFERENCES households(id)
            );
            CREATE UNIQUE INDEX IF NOT EXISTS uq_member_cap_requests_open
                ON member_cap_join_requests(household_id, joiner_user_id)
                WHERE resolved_at IS NULL;
            """
        )
        self._seed(conn)

    def _seed(self, conn: sqlite3.Connection | _SharedConnection) -> None:
        for plan, limits in DEFAULT_PLAN_LIMITS.items():
            for metric, max_value in limits.items():
                conn.execute(
                    """
                    INSERT INTO plan_limits (plan, metric, max_value)
                    VALUES (?, ?, ?)
                    ON CONFLICT DO NOTHING
                    """,
                    (plan.value, metric.value, max_value),
                )
        for avatar in default_avatar_catalog():
            conn.execute(
                """
                INSERT INTO avatars (id, storage_path, category, sort_order, created_at)
                VALUES (?, ?, ?, ?, ?)
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


class SQLiteHouseholdRepository(HouseholdRepository):
    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def add(self, household: Household) -> None:
        conn = self._db.get_connection()
        conn.execute(
            """
            INSERT INTO households (id, name, owner_user_id, is_active, deactivated_at,
                                    created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(household.id),
                household.name,
                str(household.owner_user_id),
                1 if household.is_active else 0,
                _to_iso(household.deactivated_at),
                household.created_at.isoformat(),
                household.updated_at.isoformat(),
            ),
        )

    def get(self, household_id: UUID) -> Household | None:
        conn = self._db.get_connection()
        row = conn.execute(
            "SELECT * FROM households WHERE id = ?", (str(household_id),)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_household(row)

    def lock(self, household_id: UUID) -> Household | None:
        # BEGIN IMMEDIATE already holds the database write lock.
        return self.get(household_id)

    def list_all(self) -> Iterable[Household]:
        conn = self._db.get_connection()
        rows = conn.execute("SELECT * FROM households ORDER BY created_at").fetchall()
        return [self._row_to_household(row) for row in rows]

    def update(self, household: Household) -> None:
        conn = self._db.get_connection()
        conn.execute(
            """
            UPDATE households SET
                name = ?,
                owner_user_id = ?,
                is_active = ?,
                deactivated_at = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                household.name,
                str(household.owner_user_id),
                1 if household.is_active else 0,
                _to_iso(household.deactivated_at),
                household.updated_at.isoformat(),
                str(household.id),
            ),
        )

    def _row_to_household(self, row: sqlite3.Row) -> Household:
        return Household(
            name=row["name"],
            owner_user_id=UUID(row["owner_user_id"]),
            id=UUID(row["id"]),
            is_active=bool(row["is_active"]),
            deactivated_at=_from_iso(row["deactivated_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


class SQLiteMembershipRepository(MembershipRepository):
    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def add(self, membership: Membership) -> None:
        conn = self._db.get_connection()
        try:
            conn.execute(
                """
                INSERT INTO memberships (id, user_id, household_id, role, valid_from,
                                         valid_to, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
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
        except sqlite3.IntegrityError as e:
            if "memberships.user_id" in str(e):
                raise OpenStintConflictError(membership.user_id) from e
            raise IntegrityError(
                str(e), context={"membership_id": str(membership.id)}
            ) from e

    def close(self, membership_id: UUID, at: datetime) -> bool:
        conn = self._db.get_connection()
        cursor = conn.execute(
            """
            UPDATE memberships SET valid_to = ?, updated_at = ?
            WHERE id = ? AND valid_to IS NULL
            """,
            (at.isoformat(), at.isoformat(), str(membership_id)),
        )
        return cursor.rowcount == 1

    def get(self, membership_id: UUID) -> Membership | None:
        conn = self._db.get_connection()
        row = conn.execute(
            "SELECT * FROM memberships WHERE id = ?", (str(membership_id),)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_membership(row)

    def get_current_for_user(self, user_id: UUID) -> Membership | None:
        conn = self._db.get_connection()
        row = conn.execute(
            "SELECT * FROM memberships WHERE user_id = ? AND valid_to IS NULL",
            (str(user_id),),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_membership(row)

    def get_current(self, household_id: UUID, user_id: UUID) -> Membership | None:
        conn = self._db.get_connection()
        row = conn.execute(
            """
            SELECT * FROM memberships
            WHERE household_id = ? AND user_id = ? AND valid_to IS NULL
            """,
            (str(household_id), str(user_id)),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_membership(row)

    def get_current_owner(self, household_id: UUID) -> Membership | None:
        conn = self._db.get_connection()
        row = conn.execute(
            """
            SELECT * FROM memberships
            WHERE household_id = ? AND role = 'owner' AND valid_to IS NULL
            """,
            (str(household_id),),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_membership(row)

    def list_current(self, household_id: UUID) -> Iterable[Membership]:
        conn = self._db.get_connection()
        rows = conn.execute(
            """
            SELECT * FROM memberships
            WHERE household_id = ? AND valid_to IS NULL
            ORDER BY CASE role WHEN 'owner' THEN 0 ELSE 1 END, valid_from
            """,
            (str(household_id),),
        ).fetchall()
        return [self._row_to_membership(row) for row in rows]

    def list_history(self, household_id: UUID) -> Iterable[Membership]:
        conn = self._db.get_connection()
        rows = conn.execute(
            """
            SELECT * FROM memberships WHERE household_id = ?
            ORDER BY valid_from, created_at
            """,
            (str(household_id),),
        ).fetchall()
        return [self._row_to_membership(row) for row in rows]

    def _row_to_membership(self, row: sqlite3.Row) -> Membership:
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


class SQLiteInviteRepository(InviteRepository):
    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def add_if_no_open(self, invite: Invite) -> bool:
        conn = self._db.get_connection()
        try:
            cursor = conn.execute(
                """
                INSERT INTO invites (id, household_id, code, created_at, revoked_at, used_count)
                VALUES (?, ?, ?, ?, ?, ?)
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
        except sqlite3.IntegrityError as e:
            if "invites.code" in str(e):
                raise DuplicateInviteCodeError(invite.code) from e
            raise IntegrityError(str(e), context={"invite_id": str(invite.id)}) from e
        return cursor.rowcount == 1

    def get(self, invite_id: UUID) -> Invite | None:
        conn = self._db.get_connection()
        row = conn.execute(
            "SELECT * FROM invites WHERE id = ?", (str(invite_id),)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_invite(row)

    def get_open(self, household_id: UUID) -> Invite | None:
        conn = self._db.get_connection()
        row = conn.execute(
            """
            SELECT * FROM invites
            WHERE household_id = ? AND revoked_at IS NULL
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (str(household_id),),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_invite(row)

    def get_by_code(self, code: str) -> Invite | None:
        conn = self._db.get_connection()
        row = conn.execute("SELECT * FROM invites WHERE code = ?", (code,)).fetchone()
        if row is None:
            return None
        return self._row_to_invite(row)

    def code_exists(self, code: str) -> bool:
        conn = self._db.get_connection()
        row = conn.execute("SELECT 1 FROM invites WHERE code = ?", (code,)).fetchone()
        return row is not None

    def revoke(self, invite_id: UUID, at: datetime) -> bool:
        conn = self._db.get_connection()
        cursor = conn.execute(
            "UPDATE invites SET revoked_at = ? WHERE id = ? AND revoked_at IS NULL",
            (at.isoformat(), str(invite_id)),
        )
        return cursor.rowcount == 1

    def increment_used_count(self, invite_id: UUID) -> None:
        conn = self._db.get_connection()
        conn.execute(
            "UPDATE invites SET used_count = used_count + 1 WHERE id = ?",
            (str(invite_id),),
        )

    def list_by_household(self, household_id: UUID) -> Iterable[Invite]:
        conn = self._db.get_connection()
        rows = conn.execute(
            "SELECT * FROM invites WHERE household_id = ? ORDER BY created_at",
            (str(household_id),),
        ).fetchall()
        return [self._row_to_invite(row) for row in rows]

    def _row_to_invite(self, row: sqlite3.Row) -> Invite:
        return Invite(
            household_id=UUID(row["household_id"]),
            code=row["code"],
            id=UUID(row["id"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            revoked_at=_from_iso(row["revoked_at"]),
            used_count=row["used_count"],
        )


class SQLiteEntitlementRepository(EntitlementRepository):
    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def get(self, household_id: UUID) -> Entitlement | None:
        conn = self._db.get_connection()
        row = conn.execute(
            "SELECT * FROM entitlements WHERE household_id = ?", (str(household_id),)
        ).fetchone()
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
        conn = self._db.get_connection()
        conn.execute(
            """
            INSERT INTO entitlements (household_id, plan, expires_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (household_id) DO UPDATE SET
                plan = excluded.plan,
                expires_at = excluded.expires_at,
                updated_at = excluded.updated_at
            """,
            (
                str(entitlement.household_id),
                entitlement.plan.value,
                _to_iso(entitlement.expires_at),
                entitlement.created_at.isoformat(),
                entitlement.updated_at.isoformat(),
            ),
        )


class SQLiteSubscriptionRepository(SubscriptionRepository):
    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def add(self, subscription: Subscription) -> None:
        conn = self._db.get_connection()
        conn.execute(
            """
            INSERT INTO subscriptions (id, user_id, household_id, entitlement_key, store,
                                       product_id, status, current_period_end_at,
                                       created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
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
        conn = self._db.get_connection()
        row = conn.execute(
            "SELECT * FROM subscriptions WHERE id = ?", (str(subscription_id),)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_subscription(row)

    def get_by_key(self, user_id: UUID, entitlement_key: str) -> Subscription | None:
        conn = self._db.get_connection()
        row = conn.execute(
            "SELECT * FROM subscriptions WHERE user_id = ? AND entitlement_key = ?",
            (str(user_id), entitlement_key),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_subscription(row)

    def update(self, subscription: Subscription) -> None:
        conn = self._db.get_connection()
        conn.execute(
            """
            UPDATE subscriptions SET
                household_id = ?,
                store = ?,
                product_id = ?,
                status = ?,
                current_period_end_at = ?,
                updated_at = ?
            WHERE id = ?
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
        conn = self._db.get_connection()
        conn.execute("DELETE FROM subscriptions WHERE id = ?", (str(subscription_id),))

    def list_for_user(self, user_id: UUID) -> Iterable[Subscription]:
        conn = self._db.get_connection()
        rows = conn.execute(
            "SELECT * FROM subscriptions WHERE user_id = ? ORDER BY created_at",
            (str(user_id),),
        ).fetchall()
        return [self._row_to_subscription(row) for row in rows]

    def list_for_household(self, household_id: UUID) -> Iterable[Subscription]:
        conn = self._db.get_connection()
        rows = conn.execute(
            "SELECT * FROM subscriptions WHERE household_id = ? ORDER BY created_at",
            (str(household_id),),
        ).fetchall()
        return [self._row_to_subscription(row) for row in rows]

    def _row_to_subscription(self, row: sqlite3.Row) -> Subscription:
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


class SQLiteUsageCounterRepository(UsageCounterRepository):
    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def get_counts(self, household_id: UUID) -> dict[UsageMetric, int]:
        conn = self._db.get_connection()
        rows = conn.execute(
            "SELECT metric, count FROM usage_counters WHERE household_id = ?",
            (str(household_id),),
        ).fetchall()
        counts = {metric: 0 for metric in UsageMetric}
        for row in rows:
            counts[UsageMetric(row["metric"])] = row["count"]
        return counts

    def apply_delta(self, household_id: UUID, metric: UsageMetric, delta: int) -> int:
        conn = self._db.get_connection()
        now = datetime.now(UTC).isoformat()
        conn.execute(
            """
            INSERT INTO usage_counters (household_id, metric, count, updated_at)
            VALUES (?, ?, MAX(0, ?), ?)
            ON CONFLICT (household_id, metric) DO UPDATE SET
                count = MAX(0, usage_counters.count + ?),
                updated_at = excluded.updated_at
            """,
            (str(household_id), metric.value, delta, now, delta),
        )
        row = conn.execute(
            "SELECT count FROM usage_counters WHERE household_id = ? AND metric = ?",
            (str(household_id), metric.value),
        ).fetchone()
        return row["count"]

    def get_plan_limits(self, plan: Plan) -> dict[UsageMetric, int]:
        conn = self._db.get_connection()
        rows = conn.execute(
            "SELECT metric, max_value FROM plan_limits WHERE plan = ?", (plan.value,)
        ).fetchall()
        return {UsageMetric(row["metric"]): row["max_value"] for row in rows}


class SQLiteProfileRepository(ProfileRepository):
    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def get(self, user_id: UUID) -> Profile | None:
        conn = self._db.get_connection()
        row = conn.execute(
            "SELECT * FROM profiles WHERE user_id = ?", (str(user_id),)
        ).fetchone()
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
        conn = self._db.get_connection()
        conn.execute(
            """
            INSERT INTO profiles (user_id, username, avatar_id, deactivated_at,
                                  created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (user_id) DO UPDATE SET
                username = excluded.username,
                avatar_id = excluded.avatar_id,
                deactivated_at = excluded.deactivated_at,
                updated_at = excluded.updated_at
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
        conn = self._db.get_connection()
        rows = conn.execute(
            """
            SELECT p.avatar_id FROM memberships m
            JOIN profiles p ON p.user_id = m.user_id
            WHERE m.household_id = ?
              AND m.valid_to IS NULL
              AND m.user_id != ?
              AND p.avatar_id IS NOT NULL
            """,
            (str(household_id), str(exclude_user_id) if exclude_user_id else ""),
        ).fetchall()
        return {UUID(row["avatar_id"]) for row in rows}


class SQLiteAvatarRepository(AvatarRepository):
    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def add(self, avatar: Avatar) -> None:
        conn = self._db.get_connection()
        conn.execute(
            """
            INSERT INTO avatars (id, storage_path, category, sort_order, created_at)
            VALUES (?, ?, ?, ?, ?)
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
        conn = self._db.get_connection()
        row = conn.execute(
            "SELECT * FROM avatars WHERE id = ?", (str(avatar_id),)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_avatar(row)

    def list_all(self) -> Iterable[Avatar]:
        conn = self._db.get_connection()
        rows = conn.execute(
            "SELECT * FROM avatars ORDER BY sort_order, created_at"
        ).fetchall()
        return [self._row_to_avatar(row) for row in rows]

    def _row_to_avatar(self, row: sqlite3.Row) -> Avatar:
        return Avatar(
            storage_path=row["storage_path"],
            category=AvatarCategory(row["category"]),
            id=UUID(row["id"]),
            sort_order=row["sort_order"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )


class SQLiteJoinRequestRepository(JoinRequestRepository):
    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    def add_or_get_open(self, request: MemberCapJoinRequest) -> MemberCapJoinRequest:
        conn = self._db.get_connection()
        conn.execute(
            """
            INSERT INTO member_cap_join_requests
                (id, household_id, joiner_user_id, created_at, resolved_at, resolution)
            VALUES (?, ?, ?, ?, NULL, NULL)
            ON CONFLICT (household_id, joiner_user_id) WHERE resolved_at IS NULL
            DO NOTHING
            """,
            (
                str(request.id),
                str(request.household_id),
                str(request.joiner_user_id),
                request.created_at.isoformat(),
            ),
        )
        row = conn.execute(
            """
            SELECT * FROM member_cap_join_requests
            WHERE household_id = ? AND joiner_user_id = ? AND resolved_at IS NULL
            """,
            (str(request.household_id), str(request.joiner_user_id)),
        ).fetchone()
        return self._row_to_request(row)

    def list_open(self, household_id: UUID) -> Iterable[MemberCapJoinRequest]:
        conn = self._db.get_connection()
        rows = conn.execute(
            """
            SELECT * FROM member_cap_join_requests
            WHERE household_id = ? AND resolved_at IS NULL
            ORDER BY created_at, id
            """,
            (str(household_id),),
        ).fetchall()
        return [self._row_to_request(row) for row in rows]

    def resolve(
        self,
        household_id: UUID,
        resolution: JoinRequestResolution,
        at: datetime,
        request_ids: Iterable[UUID] | None = None,
    ) -> int:
        conn = self._db.get_connection()
        sql = """
            UPDATE member_cap_join_requests
            SET resolved_at = ?, resolution = ?
            WHERE household_id = ? AND resolved_at IS NULL
        """
        params: list[str] = [at.isoformat(), resolution.value, str(household_id)]
        if request_ids is not None:
            ids = [str(request_id) for request_id in request_ids]
            if not ids:
                return 0
            sql += f" AND id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        return conn.execute(sql, params).rowcount

    def _row_to_request(self, row: sqlite3.Row) -> MemberCapJoinRequest:
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


def build_repositories(database: SQLiteDatabase) -> Repositories:
    return Repositories(
        database=database,
        households=SQLiteHouseholdRepository(database),
        memberships=SQLiteMembershipRepository(database),
        invites=SQLiteInviteRepository(database),
        entitlements=SQLiteEntitlementRepository(database),
        subscriptions=SQLiteSubscriptionRepository(database),
        usage=SQLiteUsageCounterRepository(database),
        profiles=SQLiteProfileRepository(database),
        avatars=SQLiteAvatarRepository(database),
        join_requests=SQLiteJoinRequestRepository(database),
    )
