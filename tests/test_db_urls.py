from __future__ import annotations

from pathlib import Path

import pytest

from zetra_sync.db_urls import (
    extract_sqlite_db_file_path,
    normalize_database_url_for_alembic,
    normalize_database_url_for_async,
)


@pytest.mark.parametrize(
    "raw, runtime, alembic",
    [
        ("sqlite:///./dev.db", "sqlite+aiosqlite:///./dev.db", "sqlite:///./dev.db"),
        ("sqlite+aiosqlite:///x.db", "sqlite+aiosqlite:///x.db", "sqlite:///x.db"),
        ("postgres://u:p@h/db", "postgresql+psycopg://u:p@h/db", "postgresql+psycopg://u:p@h/db"),
        (
            "postgresql+psycopg2://u:p@h/db",
            "postgresql+psycopg://u:p@h/db",
            "postgresql+psycopg://u:p@h/db",
        ),
    ],
)
def test_normalize_database_urls(raw: str, runtime: str, alembic: str) -> None:
    assert normalize_database_url_for_async(raw) == runtime
    assert normalize_database_url_for_alembic(raw) == alembic


def test_extract_sqlite_db_file_path() -> None:
    assert extract_sqlite_db_file_path("sqlite:///./data/dev.db") == Path("./data/dev.db")
    assert extract_sqlite_db_file_path("sqlite:////abs/dev.db?mode=rwc") == Path("/abs/dev.db")
    assert extract_sqlite_db_file_path("sqlite:///:memory:") is None
    assert extract_sqlite_db_file_path("postgresql://u@h/db") is None
