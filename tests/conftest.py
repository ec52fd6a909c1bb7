"""Pytest configuration for test isolation.

Every test gets its own file-backed SQLite database (in-memory databases are
per-connection, and the engine pools connections). ``DATABASE_URL`` points at
it so code paths that read the environment hit the same file, and the cached
engines are disposed afterwards so no pool outlives its test.

The process-scoped categorizer built by ``transaction_ingest.api`` keeps an
in-memory merchant cache; it is rebuilt per test so cache hits never leak
between tests. ``OPENAI_API_KEY`` is removed so the external classifier tier
is only present where a test installs it explicitly.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from ledger_db.client import dispose_engines

from tests.helpers.db import bootstrap_sqlite_db


@pytest.fixture()
def database_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[str]:
    url = bootstrap_sqlite_db(tmp_path / "ledger.sqlite3")
    monkeypatch.setenv("DATABASE_URL", url)
    yield url
    dispose_engines()


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    from transaction_ingest.api import default_categorizer

    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    for name in ("DUPLICATE_WINDOW_DAYS", "RECONCILIATION_WINDOW_DAYS", "LOG_LEVEL"):
        monkeypatch.delenv(f"TRANSACTION_INGEST_{name}", raising=False)
    default_categorizer.cache_clear()
    yield
    default_categorizer.cache_clear()
