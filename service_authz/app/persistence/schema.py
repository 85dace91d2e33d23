"""
PostgreSQL schema for the policy store.
"""

from typing import Optional

import asyncpg
import structlog

from shared.logging import get_logger
from ..errors import DatabaseError
from .postgres import DRIVER_ERRORS

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS permissions (
        id INT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
        name VARCHAR(255) NOT NULL UNIQUE,
        version INT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS groups (
        id INT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
        name VARCHAR(255) NOT NULL UNIQUE,
        version INT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS subjects (
        id VARCHAR(255),
        group_id INT,
        PRIMARY KEY (id, group_id),
        FOREIGN KEY (group_id) REFERENCES groups(id) ON DELETE CASCADE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS group_permissions (
        group_id INT,
        permission_id INT,
        PRIMARY KEY (group_id, permission_id),
        FOREIGN KEY (group_id) REFERENCES groups(id) ON DELETE CASCADE,
        FOREIGN KEY (permission_id) REFERENCES permissions(id) ON DELETE CASCADE
    );
    """,
)


async def create_schema(
    pool: asyncpg.Pool,
    logger: Optional[structlog.BoundLogger] = None,
    timeout: Optional[float] = None,
) -> None:
    """Create the policy tables if they don't exist."""
    logger = (logger or get_logger("authz.persistence.schema")).bind(operation="create_schema")
    try:
        async with pool.acquire(timeout=timeout) as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement, timeout=timeout)
    except DRIVER_ERRORS as e:
        logger.error("Failed to create schema", error=str(e))
        raise DatabaseError() from e
    
    logger.info("Schema ready")
