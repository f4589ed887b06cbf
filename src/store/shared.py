"""SharedStore: suite-scoped key/value rows shared across processes.

Narrow interface (get / set / compare_and_swap). Atomicity holds within one
key only; callers must not assume two keys change together.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.store.models import SharedValueRow

logger = structlog.get_logger()


class SharedStore:
    """Key/value store scoped to one suite (namespace)."""

    def __init__(self, db_session_factory: async_sessionmaker, suite: str) -> None:
        self._db: async_sessionmaker = db_session_factory
        self._suite = suite

    @property
    def suite(self) -> str:
        return self._suite

    async def get(self, key: str) -> dict[str, Any] | None:
        async with self._db() as db_session:
            result = await db_session.execute(
                select(SharedValueRow.value).where(
                    SharedValueRow.suite == self._suite,
                    SharedValueRow.key == key,
                )
            )
            return result.scalar_one_or_none()

    async def set(self, key: str, value: dict[str, Any]) -> None:
        """Unconditional last-writer-wins upsert."""
        stmt = pg_insert(SharedValueRow).values(suite=self._suite, key=key, value=value)
        stmt = stmt.on_conflict_do_update(
            index_elements=["suite", "key"],
            set_={"value": stmt.excluded.value, "updated_at": func.now()},
        )
        async with self._db() as db_session:
            await db_session.execute(stmt)
            await db_session.commit()

    async def compare_and_swap(
        self,
        key: str,
        expected: dict[str, Any] | None,
        new: dict[str, Any],
    ) -> bool:
        """Atomically replace ``expected`` with ``new``.

        expected=None means "key must be absent". Returns True when the swap
        happened, False when another writer changed the key first.
        """
        async with self._db() as db_session:
            if expected is None:
                stmt = (
                    pg_insert(SharedValueRow)
                    .values(suite=self._suite, key=key, value=new)
                    .on_conflict_do_nothing(index_elements=["suite", "key"])
                    .returning(SharedValueRow.key)
                )
            else:
                stmt = (
                    update(SharedValueRow)
                    .where(
                        SharedValueRow.suite == self._suite,
                        SharedValueRow.key == key,
                        SharedValueRow.value == expected,
                    )
                    .values(value=new, updated_at=func.now())
                    .returning(SharedValueRow.key)
                )
            result = await db_session.execute(stmt)
            swapped = result.scalar_one_or_none() is not None
            await db_session.commit()

        if not swapped:
            logger.debug("shared_value_cas_lost", suite=self._suite, key=key)
        return swapped
