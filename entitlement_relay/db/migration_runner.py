"""
Migration Runner - Applies Alembic migrations at application startup.

Several replicas may boot at once against the same database, so the upgrade
runs under a PostgreSQL advisory lock and re-reads the revision after
acquiring it.
"""

from pathlib import Path

from sqlalchemy import Connection, create_engine, text
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from entitlement_relay.config import settings

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"

# Arbitrary, shared by every replica of this service
MIGRATION_LOCK_ID = 0x52454C4159


def sync_database_url() -> str:
    """The configured URL with the asyncpg driver swapped for psycopg2."""
    return settings.database_url.replace("asyncpg", "psycopg2")


def _current_revision(conn: Connection) -> str | None:
    return MigrationContext.configure(conn).get_current_revision()


def run_migrations() -> None:
    """
    Upgrade the schema to head if it is behind.

    Raises:
        RuntimeError: If the upgrade fails; the service must not start on a stale schema
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    sync_url = sync_database_url()
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    head = ScriptDirectory.from_config(alembic_cfg).get_current_head()

    engine = create_engine(sync_url)
    try:
        with engine.connect() as conn:
            if _current_revision(conn) == head:
                logger.info("database_schema_up_to_date", revision=head)
                return

            conn.execute(text("SELECT pg_advisory_lock(:id)"), {"id": MIGRATION_LOCK_ID})
            try:
                current = _current_revision(conn)
                conn.commit()
                if current == head:
                    logger.info("database_schema_migrated_by_peer", revision=head)
                    return

                logger.info("running_migrations", current=current, head=head)
                command.upgrade(alembic_cfg, "head")
                logger.info("migrations_complete", revision=_current_revision(conn))
            finally:
                conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": MIGRATION_LOCK_ID})
    except Exception as e:
        logger.error("migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e
    finally:
        engine.dispose()
