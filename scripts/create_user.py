from __future__ import annotations

import argparse
import asyncio
import json
import secrets

from sqlmodel import select

from zetra_sync.db import init_db, session_scope
from zetra_sync.models import User


async def create_user(*, username: str, org_id: str, token: str | None) -> User:
    async with session_scope() as session:
        existing = (await session.exec(select(User).where(User.username == username))).first()
        if existing is not None:
            raise SystemExit(f"user already exists: {username}")
        user = User(username=username, org_id=org_id, api_token=token or secrets.token_urlsafe(32))
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


async def main() -> None:
    parser = argparse.ArgumentParser(description="Create a sync API user with a bearer token.")
    parser.add_argument("username")
    parser.add_argument("--org", required=True, help="Tenant (organization) id")
    parser.add_argument("--token", default=None, help="Explicit API token (default: random)")
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create tables first (local SQLite only; use Alembic elsewhere).",
    )
    args = parser.parse_args()

    if args.init_db:
        await init_db()
    user = await create_user(username=args.username, org_id=args.org, token=args.token)
    print(
        json.dumps(
            {"id": user.id, "username": user.username, "orgId": user.org_id, "token": user.api_token},
            ensure_ascii=False,
        )
    )


if __name__ == "__main__":
    asyncio.run(main())
