"""Programmatic Alembic migrations for the workflow database."""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy.engine import Engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

logger = logging.getLogger(__name__)

# src/ai_workflow/storage/ -> repository root holding alembic.ini and alembic/
_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def migration_config(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision(db_path: Path) -> str | None:
    return ScriptDirectory.from_config(migration_config(db_path)).get_current_head()


def current_revision(engine: Engine) -> str | None:
    """Revision stamped in ``alembic_version``, or None for a fresh database."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()


def upgrade_head(db_path: Path, *, engine: Engine | None = None) -> bool:
    """Bring the database to the latest revision.

    With ``engine`` given, a database already at head is left untouched so
    repeated CLI invocations skip the Alembic environment entirely.
    Returns True when migrations ran.
    """

    config = migration_config(db_path)
    if engine is not None:
        head = ScriptDirectory.from_config(config).get_current_head()
        if current_revision(engine) == head:
            return False
    logger.info("Upgrading %s to the latest schema revision", db_path)
    command.upgrade(config, "head")
    return True
