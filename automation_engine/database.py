"""Database connection and migration management."""

from pathlib import Path
from typing import Optional

import asyncpg
import structlog

from automation_engine.config import Settings, get_settings

logger = structlog.get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).parent.parent / "migrations"


async def create_pool(settings: Optional[Settings] = None) -> asyncpg.Pool:
    """Create the database connection pool.

    Every command is bounded by ``store_timeout_seconds``.

    Returns:
        asyncpg connection pool
    """
    settings = settings or get_settings()

    try:
        pool = await asyncpg.create_pool(
            settings.postgres_url,
            min_size=2,
            max_size=10,
            command_timeout=settings.store_timeout_seconds,
            timeout=settings.store_timeout_seconds,
        )
        logger.info("database_pool_created", min_size=2, max_size=10)
        return pool
    except Exception as e:
        logger.error("database_pool_creation_failed", error=str(e))
        raise


async def close_pool(pool: Optional[asyncpg.Pool]) -> None:
    """Close the database connection pool."""
    if pool is not None:
        await pool.close()
        logger.info("database_pool_closed")


async def run_migrations(pool: asyncpg.Pool, migrations_dir: Path = MIGRATIONS_DIR) -> int:
    """Run all SQL migrations in order.

    Migrations are idempotent (IF NOT EXISTS) and can be re-run safely.

    Returns:
        Number of migration files applied
    """
    if not migrations_dir.exists():
        logger.warning("migrations_directory_not_found", path=str(migrations_dir))
        return 0

    migration_files = sorted(migrations_dir.glob("*.sql"))

    if not migration_files:
        logger.info("no_migrations_found")
        return 0

    async with pool.acquire() as conn:
        for migration_file in migration_files:
            try:
                await conn.execute(migration_file.read_text())
                logger.info("migration_applied", file=migration_file.name)
            except Exception as e:
                logger.error("migration_failed", file=migration_file.name, error=str(e))
                raise

    return len(migration_files)


async def health_check(pool: asyncpg.Pool) -> bool:
    """Check database connectivity.

    Returns:
        True if database is healthy, False otherwise
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1")
            return result == 1
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return False
