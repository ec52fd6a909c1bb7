"""Run the ledger's Alembic migrations programmatically.

The scripts live next to the library sources in ``libs/ledger_db/alembic``;
``upgrade`` points an in-memory Alembic config at them, so no ``alembic.ini``
is needed.
"""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext

from .client import _database_url, get_engine

# libs/ledger_db/src/ledger_db/migrations.py -> libs/ledger_db/alembic
SCRIPT_LOCATION = Path(__file__).resolve().parents[2] / "alembic"


def alembic_config(*, database_url: str | None = None) -> Config:
    if not (SCRIPT_LOCATION / "env.py").is_file():
        raise RuntimeError(f"migration scripts not found at {SCRIPT_LOCATION}")
    cfg = Config()
    cfg.set_main_option("script_location", str(SCRIPT_LOCATION))
    # ConfigParser interpolation treats '%' as special.
    cfg.set_main_option("sqlalchemy.url", _database_url(database_url).replace("%", "%%"))
    return cfg


def upgrade(*, database_url: str | None = None, revision: str = "head") -> None:
    command.upgrade(alembic_config(database_url=database_url), revision)


def current_revision(*, database_url: str | None = None) -> str | None:
    with get_engine(database_url=database_url).connect() as conn:
        return MigrationContext.configure(conn).get_current_revision()


__all__ = ["SCRIPT_LOCATION", "alembic_config", "current_revision", "upgrade"]
