"""
Authorization policy store entry point.

Wires a connection pool to the policy store, bootstraps the schema and runs
an example round of calls against it.
"""

import asyncio
from typing import Optional

import asyncpg

from shared.config import ServiceConfig, get_config
from shared.logging import configure_logging, get_logger
from .errors import NameExistsError, PolicyError
from .persistence import PostgresPolicyStore, create_schema

EXAMPLE_GROUP = "new_group"
EXAMPLE_PERMISSION = "new_permission"


async def create_pool(config: ServiceConfig) -> asyncpg.Pool:
    """Create the PostgreSQL connection pool."""
    return await asyncpg.create_pool(
        config.postgres_dsn,
        min_size=config.pool_min_size,
        max_size=config.pool_max_size,
        command_timeout=config.command_timeout
    )


async def _ensure_id(pool: asyncpg.Pool, create, table: str, name: str) -> int:
    """Create a named row, or look up its id when the name is taken."""
    try:
        return await create(name)
    except NameExistsError:
        async with pool.acquire() as conn:
            return await conn.fetchval(f"SELECT id FROM {table} WHERE name = $1", name)


async def run(config: Optional[ServiceConfig] = None) -> None:
    """Run the example calls against the configured database."""
    config = config or get_config("authz")
    configure_logging(config.service_name, config.log_level)
    logger = get_logger("authz.main")

    try:
        pool = await create_pool(config)
    except (asyncpg.PostgresError, OSError) as e:
        logger.error("Failed to connect to database", error=str(e))
        raise

    try:
        store = PostgresPolicyStore(pool, get_logger("authz.persistence.postgres"))
        await create_schema(pool)

        group_id = await _ensure_id(pool, store.create_group, "groups", EXAMPLE_GROUP)
        permission_id = await _ensure_id(pool, store.create_permission, "permissions", EXAMPLE_PERMISSION)

        await store.update_group_permissions(group_id, [permission_id])
        logger.info("Group permissions updated successfully", group_id=group_id, permission_id=permission_id)

        policy = await store.read_policy()
        logger.info("Policy read", groups=len(policy.groups), permissions=len(policy.permissions))
    except PolicyError as e:
        logger.error("Policy store error", **e.to_response().model_dump())
        raise
    finally:
        await pool.close()


def main() -> None:
    """Console script entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
