"""RecordStore: durable keyed storage of LogicalRecords in PostgreSQL.

Multi-process safe: every write is a single INSERT ... ON CONFLICT DO UPDATE,
so PostgreSQL's row lock is the serialization point for concurrent upserts
to the same id. Terminal records are fenced: the conflict branch only fires
while the stored row is still pending.
"""

from __future__ import annotations

from datetime import UTC

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.delivery.record import Fragment, LogicalRecord, Role, TerminalState
from src.store.models import LogicalRecordRow

logger = structlog.get_logger()


class RecordStore:
    """Durable keyed store for LogicalRecords (upsert keyed on id)."""

    def __init__(self, db_session_factory: async_sessionmaker) -> None:
        self._db: async_sessionmaker = db_session_factory

    async def upsert(self, record: LogicalRecord) -> bool:
        """Insert or overwrite the mutable fields of ``record`` in one statement.

        Returns False when the stored row is already terminal and the write was
        fenced off (late writer after another terminal write won).
        """
        values = {
            "id": record.id,
            "role": record.role.value,
            "content": record.content,
            "structured_fragments": [f.to_dict() for f in record.structured_fragments],
            "terminal_state": record.terminal_state.value,
            "error_reason": record.error_reason,
            "interrupted": record.interrupted,
            "created_at": record.created_at,
        }
        stmt = pg_insert(LogicalRecordRow).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "content": stmt.excluded.content,
                "structured_fragments": stmt.excluded.structured_fragments,
                "terminal_state": stmt.excluded.terminal_state,
                "error_reason": stmt.excluded.error_reason,
                "interrupted": stmt.excluded.interrupted,
                "updated_at": func.now(),
            },
            where=LogicalRecordRow.terminal_state == TerminalState.pending.value,
        ).returning(LogicalRecordRow.id)

        async with self._db() as db_session:
            result = await db_session.execute(stmt)
            written = result.scalar_one_or_none() is not None
            await db_session.commit()

        if not written:
            logger.warning(
                "record_upsert_fenced",
                record_id=record.id,
                terminal_state=record.terminal_state.value,
            )
        return written

    async def get(self, record_id: str) -> LogicalRecord | None:
        async with self._db() as db_session:
            result = await db_session.execute(
                select(LogicalRecordRow).where(LogicalRecordRow.id == record_id)
            )
            row = result.scalar_one_or_none()
        return _row_to_record(row) if row is not None else None

    async def list_recent(
        self, limit: int, *, completed_only: bool = False
    ) -> list[LogicalRecord]:
        """Return the most recent ``limit`` records, oldest first."""
        if limit <= 0:
            return []
        stmt = select(LogicalRecordRow).order_by(LogicalRecordRow.created_at.desc())
        if completed_only:
            stmt = stmt.where(LogicalRecordRow.terminal_state == TerminalState.completed.value)
        stmt = stmt.limit(limit)
        async with self._db() as db_session:
            result = await db_session.execute(stmt)
            rows = result.scalars().all()
        return [_row_to_record(r) for r in reversed(rows)]


def _row_to_record(row: LogicalRecordRow) -> LogicalRecord:
    created_at = row.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    return LogicalRecord(
        id=row.id,
        role=Role(row.role),
        content=row.content or "",
        structured_fragments=[Fragment.from_dict(f) for f in (row.structured_fragments or [])],
        created_at=created_at,
        terminal_state=TerminalState(row.terminal_state),
        error_reason=row.error_reason,
    )
