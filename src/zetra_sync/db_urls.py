from __future__ import annotations

from pathlib import Path
from urllib.parse import unquote


def _canonical_postgres(url: str) -> str:
    # PostgreSQL：兼容 postgres:// 与默认 driver（psycopg2），统一落到 psycopg3
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://") :]
    if url.startswith("postgresql://"):
        return "postgresql+psycopg://" + url[len("postgresql://") :]
    if url.startswith("postgresql+psycopg2://"):
        return url.replace("postgresql+psycopg2://", "postgresql+psycopg://", 1)
    return url


def normalize_database_url_for_async(database_url: str) -> str:
    """将 DATABASE_URL 规范化为「运行时可用的异步 driver」。

    约定：
    - SQLite：sqlite+aiosqlite://...
    - PostgreSQL：postgresql+psycopg://... （psycopg3 自带 async 支持，兼容 SQLAlchemy AsyncEngine）
    """
    url = (database_url or "").strip()
    if not url:
        return url

    if url.startswith("sqlite://") and "+aiosqlite" not in url:
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    return _canonical_postgres(url)


def normalize_database_url_for_alembic(database_url: str) -> str:
    """Alembic 使用同步 engine 连接数据库（engine_from_config）。

    为避免 Alembic 误用异步 driver（如 aiosqlite）导致迁移失败，这里做同步 driver 规范化：
    - sqlite+aiosqlite:// -> sqlite://
    - postgresql:// -> postgresql+psycopg:// （强制 psycopg3，避免落回 psycopg2）
    """
    url = (database_url or "").strip()
    if not url:
        return url

    if url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite+aiosqlite://", "sqlite://", 1)

    return _canonical_postgres(url)


def extract_sqlite_db_file_path(database_url: str) -> Path | None:
    """从 SQLite DATABASE_URL 推断本地数据库文件路径（尽力而为）。

    不处理：内存库、非 sqlite URL（均返回 None）。
    """
    # 仅用于文件路径推断，因此忽略 query/fragment。
    url = (database_url or "").strip().split("#", 1)[0].split("?", 1)[0]
    if not url.lower().startswith("sqlite") or url.lower().endswith(":memory:"):
        return None

    sep = url.find("://")
    if sep == -1:
        return None

    # sqlite:///rel.db -> "/rel.db", sqlite:////abs.db -> "//abs.db"
    rest = url[sep + 3 :]
    file_path = unquote(rest[1:] if rest.startswith("/") else rest)
    if not file_path or file_path == ":memory:":
        return None
    return Path(file_path)


def ensure_sqlite_parent_dir(database_url: str) -> None:
    """确保 SQLite 数据库文件的父目录存在（例如 `sqlite:///./.data/dev.db` 的 `.data/`）。"""
    path = extract_sqlite_db_file_path(database_url)
    # `dev.db` -> parent = "."，无需创建
    if path is None or str(path.parent) in {"", "."}:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
