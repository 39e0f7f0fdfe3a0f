"""
Migration Runner - Applies Alembic migrations at application startup.

Enabled with RUN_MIGRATIONS_ON_STARTUP; otherwise run `alembic upgrade head`
as a deploy step.
"""

import logging
from pathlib import Path

from sqlalchemy import Engine, create_engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

logger = logging.getLogger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def sync_database_url(database_url: str) -> str:
    """Alembic's command API is synchronous: swap asyncpg for psycopg2."""
    return database_url.replace("+asyncpg", "+psycopg2")


def _get_current_revision(engine: Engine) -> str | None:
    """Get the current database revision."""
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str | None:
    """Get the head revision from migration scripts."""
    script = ScriptDirectory.from_config(alembic_cfg)
    return script.get_current_head()


def run_migrations(database_url: str) -> None:
    """
    Run pending Alembic migrations.

    Does nothing when the schema is already at head.

    Raises:
        RuntimeError: a migration failed
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("Alembic config not found at %s, skipping migrations", ALEMBIC_INI_PATH)
        return

    sync_url = sync_database_url(database_url)
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))

    try:
        engine = create_engine(sync_url)
        try:
            current = _get_current_revision(engine)
            head = _get_head_revision(alembic_cfg)

            if current == head:
                logger.info("Database schema is up to date (revision: %s)", current)
                return

            logger.info("Running migrations from %s to %s", current, head)
            command.upgrade(alembic_cfg, "head")

            logger.info(
                "Migrations complete. Database now at revision: %s",
                _get_current_revision(engine),
            )
        finally:
            engine.dispose()

    except Exception as e:
        logger.error("Migration failed: %s", e)
        raise RuntimeError(f"Database migration failed: {e}") from e
