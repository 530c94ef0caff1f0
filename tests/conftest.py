from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path

import pytest

from zetra_sync.config import settings
from zetra_sync.db import dispose_engine, dispose_engine_cache, init_db, reset_engine_cache, session_scope
from zetra_sync.domain.operations import SyncOperation
from zetra_sync.domain.validator import compute_checksum
from zetra_sync.models import User


@pytest.fixture
def anyio_backend() -> str:
    # The service runs on SQLAlchemy's asyncio engine (aiosqlite); asyncio only.
    return "asyncio"


@pytest.fixture(autouse=True)
async def _dispose_engine_per_test(  # pyright: ignore[reportUnusedFunction]
    anyio_backend: object,  # noqa: ARG001
) -> AsyncGenerator[None, None]:
    # Close aiosqlite worker threads while the per-test event loop is alive.
    _ = anyio_backend
    yield
    await dispose_engine()


def pytest_sessionfinish(session: object, exitstatus: int) -> None:  # noqa: ARG001
    _ = session, exitstatus
    dispose_engine_cache()


@pytest.fixture
async def sqlite_db(tmp_path: Path, anyio_backend: object) -> Path:  # noqa: ARG001
    # Per-test sqlite DB keeps tests isolated and deterministic.
    path = tmp_path / "sync.db"
    settings.database_url = f"sqlite:///{path}"
    reset_engine_cache()
    await init_db()
    return path


CreateUser = Callable[..., Awaitable[User]]


@pytest.fixture
def create_user(sqlite_db: Path) -> CreateUser:  # noqa: ARG001
    async def _create(
        username: str = "alice", *, org_id: str = "org-1", token: str | None = None
    ) -> User:
        async with session_scope() as session:
            user = User(
                username=username,
                org_id=org_id,
                api_token=token or f"tok-{username}",
                is_active=True,
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            assert user.id is not None
            return user

    return _create


@pytest.fixture
async def user(create_user: CreateUser) -> User:
    return await create_user("alice")


MakeOp = Callable[..., SyncOperation]


@pytest.fixture
def make_op() -> MakeOp:
    def _make(
        op_id: str,
        *,
        entity_id: str = "e1",
        kind: str = "UPDATE",
        payload: dict[str, object] | None = None,
        declared_version: int = 0,
        entity_type: str = "task",
        device_id: str = "dev-a",
        user_id: int = 1,
        client_timestamp_ms: int = 0,
        checksum: str | None = None,
    ) -> SyncOperation:
        body = dict(payload or {})
        return SyncOperation(
            id=op_id,
            entity_type=entity_type,
            entity_id=entity_id,
            kind=kind,
            payload=body,
            client_timestamp_ms=client_timestamp_ms,
            declared_version=declared_version,
            checksum=checksum if checksum is not None else compute_checksum(body),
            device_id=device_id,
            user_id=user_id,
        )

    return _make
