"""Programmatic Alembic migrations for the content factory SQLite schema."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    """Alembic config bound to ``db_path`` with the project's migration scripts."""

    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision(db_path: Path) -> str | None:
    return ScriptDirectory.from_config(alembic_config(db_path)).get_current_head()


def current_revision(engine: Engine) -> str | None:
    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()


def upgrade_head(db_path: Path, engine: Engine) -> str | None:
    """Migrate ``db_path`` to the latest revision and return it.

    A database already at head is left untouched.
    """

    head = head_revision(db_path)
    current = current_revision(engine)
    if current == head:
        return current
    logger.info("Migrating %s from %s to %s", db_path, current or "empty schema", head)
    command.upgrade(alembic_config(db_path), "head")
    return current_revision(engine)
