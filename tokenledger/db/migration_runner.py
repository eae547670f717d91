"""
Migration Runner - Applies pending Alembic migrations.

Used at deploy time and by the monthly allocation script before it touches
the users table.
"""

from pathlib import Path

from sqlalchemy import Engine, create_engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from tokenledger.config import settings
from tokenledger.observability.logging import get_logger

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def get_sync_database_url(url: str | None = None) -> str:
    """Convert the asyncpg URL to a psycopg2 one; Alembic's command API is synchronous."""
    return (url or settings.database_url).replace("+asyncpg", "+psycopg2")


def _get_current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _load_config(sync_url: str) -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    return alembic_cfg


def run_migrations() -> None:
    """
    Run pending Alembic migrations.

    Only upgrades when the database is behind the head revision.

    Raises:
        RuntimeError: alembic.ini is missing or the upgrade failed
    """
    if not ALEMBIC_INI_PATH.exists():
        raise RuntimeError(f"Alembic config not found at {ALEMBIC_INI_PATH}")

    sync_url = get_sync_database_url()
    alembic_cfg = _load_config(sync_url)
    engine = create_engine(sync_url)

    try:
        current = _get_current_revision(engine)
        head = ScriptDirectory.from_config(alembic_cfg).get_current_head()

        if current == head:
            logger.info("database_schema_up_to_date", revision=current)
            return

        logger.info("migrations_starting", current=current, head=head)
        command.upgrade(alembic_cfg, "head")
        logger.info("migrations_complete", revision=_get_current_revision(engine))

    except Exception as e:
        logger.error("migration_failed", error=str(e), exc_info=True)
        raise RuntimeError(f"Database migration failed: {e}") from e
    finally:
        engine.dispose()
