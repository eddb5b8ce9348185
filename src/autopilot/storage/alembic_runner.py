"""Run the autopilot schema migrations programmatically."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

_ROOT_DIR = Path(__file__).resolve().parents[3]


def migration_config(db_path: Path) -> Config:
    """Alembic config pointing at the repository migrations and the given database."""

    config = Config(str(_ROOT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(_ROOT_DIR / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Create the database directory if needed and migrate to head."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    command.upgrade(migration_config(db_path), "head")
