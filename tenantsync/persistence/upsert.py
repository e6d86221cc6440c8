from __future__ import annotations

from typing import Any, Sequence

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession


# Postgres caps bind parameters per statement at 32767.
_MAX_BIND_PARAMS = 30000


def _insert_for(session: AsyncSession, table: Any) -> Any:
    # Pick the dialect-specific INSERT that supports ON CONFLICT.
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")
    if dialect_name == "postgresql":
        return pg_insert(table)
    if dialect_name == "sqlite":
        return sqlite_insert(table)
    raise RuntimeError(f"upsert not supported for dialect {dialect_name!r}")


async def upsert_rows(
    session: AsyncSession,
    table: Any,
    rows: Sequence[dict[str, Any]],
    *,
    index_elements: Sequence[str],
    update_columns: Sequence[str],
) -> int:
    # Multi-row INSERT ... ON CONFLICT DO UPDATE; replays of the same rows converge.
    if not rows:
        return 0
    chunk_size = max(1, _MAX_BIND_PARAMS // max(1, len(rows[0])))
    for start in range(0, len(rows), chunk_size):
        stmt = _insert_for(session, table).values(list(rows[start : start + chunk_size]))
        stmt = stmt.on_conflict_do_update(
            index_elements=list(index_elements),
            set_={column: getattr(stmt.excluded, column) for column in update_columns},
        )
        await session.execute(stmt)
    return len(rows)


async def insert_ignore(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    *,
    index_elements: Sequence[str],
) -> bool:
    # INSERT ... ON CONFLICT DO NOTHING; returns True when this call created the row.
    stmt = _insert_for(session, table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=list(index_elements))
    result: CursorResult = await session.execute(stmt)
    return bool(result.rowcount)
