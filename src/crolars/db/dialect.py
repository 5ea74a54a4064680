"""Dialect-aware INSERT constructs for upserts that run on PostgreSQL and SQLite."""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def insert_for(db: AsyncSession, model: Any):  # noqa: ANN401
    """Return an INSERT supporting ``on_conflict_do_*`` for the session's dialect."""
    if db.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


async def insert_ignore(db: AsyncSession, model: Any, index_elements: list[str], **values: Any) -> int | None:  # noqa: ANN401
    """INSERT ... ON CONFLICT DO NOTHING. Returns the new primary key, or None on conflict."""
    pk = model.__mapper__.primary_key[0]
    stmt = (
        insert_for(db, model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=index_elements)
        .returning(pk)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()
