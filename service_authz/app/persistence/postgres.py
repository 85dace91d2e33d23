"""
PostgreSQL policy store for the authorization service.

Groups are versioned rows: every mutation of a group (its name, its members
or its granted permissions) is conditioned on the version read at the start
of the operation, so concurrent writers to the same group cannot silently
overwrite each other. Users are not versioned; they only exist as membership
rows.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence

import asyncpg
import structlog

from shared.logging import get_logger
from ..errors import (
    ConcurrencyError, DatabaseError, GroupNotFoundError, NameExistsError,
    NoUserRecordsDeletedError, PermissionNotFoundError, PolicyReadError
)
from ..policy import Group, Permission, Policy

# Driver failures that are reported as DatabaseError.
DRIVER_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    asyncpg.InternalClientError,
    OSError,
    asyncio.TimeoutError,
)

SELECT_GROUP_VERSION = "SELECT version FROM groups WHERE id = $1"
SELECT_PERMISSION_VERSION = "SELECT version FROM permissions WHERE id = $1"

INCREMENT_GROUP_VERSION = "UPDATE groups SET version = version + 1 WHERE id = $1 AND version = $2"

# Each merge is a single statement: surplus edges are deleted, missing edges
# are inserted and edges present on both sides are left untouched.
MERGE_GROUP_PERMISSIONS = """
    WITH desired AS (
        SELECT DISTINCT unnest($2::int[]) AS permission_id
    ), removed AS (
        DELETE FROM group_permissions gp
        WHERE gp.group_id = $1::int AND gp.permission_id <> ALL($2::int[])
    )
    INSERT INTO group_permissions (group_id, permission_id)
    SELECT $1::int, d.permission_id FROM desired d
    ON CONFLICT DO NOTHING
"""

MERGE_GROUP_USERS = """
    WITH desired AS (
        SELECT DISTINCT unnest($2::text[]) AS user_id
    ), removed AS (
        DELETE FROM subjects s
        WHERE s.group_id = $1::int AND s.id <> ALL($2::text[])
    )
    INSERT INTO subjects (id, group_id)
    SELECT d.user_id, $1::int FROM desired d
    ON CONFLICT DO NOTHING
"""

MERGE_USER_GROUPS = """
    WITH desired AS (
        SELECT DISTINCT unnest($2::int[]) AS group_id
    ), removed AS (
        DELETE FROM subjects s
        WHERE s.id = $1::text AND s.group_id <> ALL($2::int[])
    )
    INSERT INTO subjects (id, group_id)
    SELECT $1::text, d.group_id FROM desired d
    ON CONFLICT DO NOTHING
"""

SELECT_GROUP_USERS = """
    SELECT g.name, s.id AS user_id
    FROM groups g
    LEFT JOIN subjects s ON g.id = s.group_id
"""

SELECT_PERMISSION_GROUPS = """
    SELECT p.name, g.name AS group_name
    FROM permissions p
    LEFT JOIN group_permissions gp ON p.id = gp.permission_id
    LEFT JOIN groups g ON g.id = gp.group_id
"""


class PostgresPolicyStore:
    """PostgreSQL implementation of the policy store.

    The store keeps no state besides the pool and the logger, both injected.
    Every operation acquires one connection for its duration and releases it
    on every exit path. Every operation accepts a ``timeout`` in seconds that
    is applied to each round trip.
    """

    def __init__(self, pool: asyncpg.Pool, logger: Optional[structlog.BoundLogger] = None):
        self.pool = pool
        self.logger = logger or get_logger("authz.persistence.postgres")

    async def create_group(self, name: str, timeout: Optional[float] = None) -> int:
        """Create a group with version 1 and return its id."""
        logger = self.logger.bind(group_name=name, operation="create_group")
        async with self._connection(logger, timeout) as conn:
            group_id = await self._insert_named(
                conn,
                "INSERT INTO groups (name, version) VALUES ($1, 1) RETURNING id",
                name, logger, timeout
            )

        logger.info("Group created", group_id=group_id)
        return group_id

    async def create_permission(self, name: str, timeout: Optional[float] = None) -> int:
        """Create a permission with version 1 and return its id."""
        logger = self.logger.bind(permission_name=name, operation="create_permission")
        async with self._connection(logger, timeout) as conn:
            permission_id = await self._insert_named(
                conn,
                "INSERT INTO permissions (name, version) VALUES ($1, 1) RETURNING id",
                name, logger, timeout
            )

        logger.info("Permission created", permission_id=permission_id)
        return permission_id

    async def get_group_version(self, group_id: int, timeout: Optional[float] = None) -> int:
        """Get the current version of a group."""
        logger = self.logger.bind(group_id=group_id, operation="get_group_version")
        async with self._connection(logger, timeout) as conn:
            return await self._read_group_version(conn, group_id, logger, timeout)

    async def update_group_permissions(
        self,
        group_id: int,
        permission_ids: Sequence[int],
        timeout: Optional[float] = None
    ) -> None:
        """Make the permissions granted to a group exactly ``permission_ids``."""
        logger = self.logger.bind(group_id=group_id, operation="update_group_permissions")
        async with self._connection(logger, timeout) as conn:
            version = await self._read_group_version(conn, group_id, logger, timeout)
            async with self._transaction(conn, logger):
                await self._execute(
                    conn, MERGE_GROUP_PERMISSIONS, (group_id, list(permission_ids)),
                    logger, "Failed to merge group permissions", timeout
                )
                await self._increment_group_version(conn, group_id, version, logger, timeout)

        logger.info("Group permissions updated", version=version + 1)

    async def update_group_users(
        self,
        group_id: int,
        user_ids: Sequence[str],
        timeout: Optional[float] = None
    ) -> None:
        """Make the members of a group exactly ``user_ids``."""
        logger = self.logger.bind(group_id=group_id, operation="update_group_users")
        async with self._connection(logger, timeout) as conn:
            version = await self._read_group_version(conn, group_id, logger, timeout)
            async with self._transaction(conn, logger):
                await self._execute(
                    conn, MERGE_GROUP_USERS, (group_id, list(user_ids)),
                    logger, "Failed to merge group users", timeout
                )
                await self._increment_group_version(conn, group_id, version, logger, timeout)

        logger.info("Group users updated", version=version + 1)

    async def update_user_groups(
        self,
        user_id: str,
        group_ids: Sequence[int],
        timeout: Optional[float] = None
    ) -> None:
        """Make the groups of a user exactly ``group_ids``.

        The user is not a versioned row, so no version check happens here and
        the versions of the affected groups are left unchanged.
        """
        logger = self.logger.bind(user_id=user_id, operation="update_user_groups")
        async with self._connection(logger, timeout) as conn:
            await self._execute(
                conn, MERGE_USER_GROUPS, (user_id, list(group_ids)),
                logger, "Failed to merge user groups", timeout
            )

        logger.info("User groups updated")

    async def change_group_name(
        self,
        group_id: int,
        new_name: str,
        timeout: Optional[float] = None
    ) -> None:
        """Rename a group."""
        logger = self.logger.bind(group_id=group_id, operation="change_group_name")
        async with self._connection(logger, timeout) as conn:
            version = await self._read_group_version(conn, group_id, logger, timeout)
            async with self._transaction(conn, logger):
                try:
                    status = await conn.execute(
                        "UPDATE groups SET name = $1, version = version + 1 WHERE id = $2 AND version = $3",
                        new_name, group_id, version, timeout=timeout
                    )
                except asyncpg.UniqueViolationError as e:
                    logger.warning("Group name already exists", group_name=new_name)
                    raise NameExistsError() from e
                except DRIVER_ERRORS as e:
                    logger.error("Failed to update group name", error=str(e))
                    raise DatabaseError() from e

                if _rows_affected(status) == 0:
                    logger.warning("Failed to update group name due to concurrency issue", version=version)
                    raise ConcurrencyError()

        logger.info("Group renamed", group_name=new_name, version=version + 1)

    async def delete_group(self, group_id: int, timeout: Optional[float] = None) -> None:
        """Delete a group together with its memberships and grants."""
        logger = self.logger.bind(group_id=group_id, operation="delete_group")
        async with self._connection(logger, timeout) as conn:
            version = await self._read_group_version(conn, group_id, logger, timeout)
            async with self._transaction(conn, logger):
                status = await self._execute(
                    conn, "DELETE FROM groups WHERE id = $1 AND version = $2", (group_id, version),
                    logger, "Failed to delete group", timeout
                )
                if _rows_affected(status) == 0:
                    logger.warning("Failed to delete group due to concurrency issue", version=version)
                    raise ConcurrencyError()

        logger.info("Group deleted")

    async def delete_permission(self, permission_id: int, timeout: Optional[float] = None) -> None:
        """Delete a permission together with its grants."""
        logger = self.logger.bind(permission_id=permission_id, operation="delete_permission")
        async with self._connection(logger, timeout) as conn:
            try:
                row = await conn.fetchrow(SELECT_PERMISSION_VERSION, permission_id, timeout=timeout)
            except DRIVER_ERRORS as e:
                logger.error("Failed to query permission version", error=str(e))
                raise DatabaseError() from e

            if row is None:
                logger.warning("Permission not found")
                raise PermissionNotFoundError()

            version = row["version"]
            async with self._transaction(conn, logger):
                status = await self._execute(
                    conn, "DELETE FROM permissions WHERE id = $1 AND version = $2", (permission_id, version),
                    logger, "Failed to delete permission", timeout
                )
                if _rows_affected(status) == 0:
                    logger.warning("Failed to delete permission due to concurrency issue", version=version)
                    raise ConcurrencyError()

        logger.info("Permission deleted")

    async def delete_user(self, user_id: str, timeout: Optional[float] = None) -> None:
        """Delete every membership of a user."""
        logger = self.logger.bind(user_id=user_id, operation="delete_user")
        async with self._connection(logger, timeout) as conn:
            status = await self._execute(
                conn, "DELETE FROM subjects WHERE id = $1", (user_id,),
                logger, "Failed to delete user", timeout
            )

        deleted = _rows_affected(status)
        if deleted == 0:
            logger.warning("No user records found for deletion")
            raise NoUserRecordsDeletedError()

        logger.info("User deleted", memberships=deleted)

    async def read_policy(self, timeout: Optional[float] = None) -> Policy:
        """Read the whole policy.

        Both queries run in one read-only REPEATABLE READ transaction so that
        groups and permissions are read from the same snapshot.
        """
        logger = self.logger.bind(operation="read_policy")
        async with self._connection(logger, timeout) as conn:
            async with self._transaction(conn, logger, isolation="repeatable_read", readonly=True):
                try:
                    group_rows = await conn.fetch(SELECT_GROUP_USERS, timeout=timeout)
                except DRIVER_ERRORS as e:
                    logger.error("Failed to query group users", error=str(e))
                    raise DatabaseError() from e

                try:
                    permission_rows = await conn.fetch(SELECT_PERMISSION_GROUPS, timeout=timeout)
                except DRIVER_ERRORS as e:
                    logger.error("Failed to query permission groups", error=str(e))
                    raise DatabaseError() from e

        try:
            group_users = _collect(group_rows, "name", "user_id")
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.error("Failed to read group users", error=str(e))
            raise PolicyReadError() from e

        try:
            permission_groups = _collect(permission_rows, "name", "group_name")
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.error("Failed to read permission groups", error=str(e))
            raise PolicyReadError() from e

        return Policy(
            permissions=[Permission(name=name, groups=groups) for name, groups in permission_groups.items()],
            groups=[Group(name=name, users=users) for name, users in group_users.items()]
        )

    @asynccontextmanager
    async def _connection(
        self,
        logger: structlog.BoundLogger,
        timeout: Optional[float]
    ) -> AsyncIterator[asyncpg.Connection]:
        try:
            conn = await self.pool.acquire(timeout=timeout)
        except DRIVER_ERRORS as e:
            logger.error("Failed to acquire connection", error=str(e))
            raise DatabaseError() from e

        try:
            yield conn
        finally:
            await self.pool.release(conn)

    @asynccontextmanager
    async def _transaction(
        self,
        conn: asyncpg.Connection,
        logger: structlog.BoundLogger,
        **options
    ) -> AsyncIterator[None]:
        """Run the block in a transaction.

        Any exception, cancellation included, rolls the transaction back
        before it propagates. A failed rollback is only logged.
        """
        transaction = conn.transaction(**options)
        try:
            await transaction.start()
        except DRIVER_ERRORS as e:
            logger.error("Failed to start transaction", error=str(e))
            raise DatabaseError() from e

        try:
            yield
        except BaseException:
            await _rollback(transaction, logger)
            raise

        try:
            await transaction.commit()
        except DRIVER_ERRORS as e:
            logger.error("Failed to commit transaction", error=str(e))
            await _rollback(transaction, logger)
            raise DatabaseError() from e

    async def _read_group_version(
        self,
        conn: asyncpg.Connection,
        group_id: int,
        logger: structlog.BoundLogger,
        timeout: Optional[float]
    ) -> int:
        try:
            row = await conn.fetchrow(SELECT_GROUP_VERSION, group_id, timeout=timeout)
        except DRIVER_ERRORS as e:
            logger.error("Failed to query group version", error=str(e))
            raise DatabaseError() from e

        if row is None:
            logger.warning("Group not found")
            raise GroupNotFoundError()

        return row["version"]

    async def _increment_group_version(
        self,
        conn: asyncpg.Connection,
        group_id: int,
        version: int,
        logger: structlog.BoundLogger,
        timeout: Optional[float]
    ) -> None:
        status = await self._execute(
            conn, INCREMENT_GROUP_VERSION, (group_id, version),
            logger, "Failed to update group version", timeout
        )
        if _rows_affected(status) == 0:
            logger.warning("Failed to update group version due to concurrency issue", version=version)
            raise ConcurrencyError()

    async def _insert_named(
        self,
        conn: asyncpg.Connection,
        query: str,
        name: str,
        logger: structlog.BoundLogger,
        timeout: Optional[float]
    ) -> int:
        try:
            return await conn.fetchval(query, name, timeout=timeout)
        except asyncpg.UniqueViolationError as e:
            logger.warning("Name already exists")
            raise NameExistsError() from e
        except DRIVER_ERRORS as e:
            logger.error("Failed to insert row", error=str(e))
            raise DatabaseError() from e

    async def _execute(
        self,
        conn: asyncpg.Connection,
        query: str,
        args: Iterable,
        logger: structlog.BoundLogger,
        failure: str,
        timeout: Optional[float]
    ) -> str:
        try:
            return await conn.execute(query, *args, timeout=timeout)
        except DRIVER_ERRORS as e:
            logger.error(failure, error=str(e))
            raise DatabaseError() from e


async def _rollback(transaction, logger: structlog.BoundLogger) -> None:
    try:
        await transaction.rollback()
    except DRIVER_ERRORS as e:
        logger.error("Failed to rollback transaction", error=str(e))


def _rows_affected(status: str) -> int:
    """Get the row count from a command status such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


def _collect(rows: Iterable, key: str, companion: str) -> Dict[str, List[str]]:
    """Fold ``(name, value-or-NULL)`` rows into ``name -> [values]``.

    A NULL companion comes from the outer join and records the entity with
    an empty collection.
    """
    collected: Dict[str, List[str]] = {}
    for row in rows:
        values = collected.setdefault(row[key], [])
        value = row[companion]
        if value is not None:
            values.append(value)
    return collected
