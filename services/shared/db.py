"""
Shared - SQLAlchemy async helpers used by the Sql*Store implementations

Each service owns its own database (database per service); only the
plumbing is shared.
"""

import json
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker


def make_engine(database_url: str) -> tuple[AsyncEngine, sessionmaker]:
    engine = create_async_engine(database_url, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, async_session


def dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def loads(value: Any) -> Any:
    """JSONB comes back decoded from asyncpg but as text from other drivers."""
    if isinstance(value, str):
        return json.loads(value)
    return value


async def run_ddl(async_session: sessionmaker, statements: list[str]) -> None:
    async with async_session() as session:
        for statement in statements:
            await session.execute(text(statement))
        await session.commit()


async def ping(async_session: sessionmaker) -> None:
    async with async_session() as session:
        await session.execute(text("SELECT 1"))
