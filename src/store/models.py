"""SQLAlchemy 2.0 async models for the durable keyed store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.constants import DB_SCHEMA


class Base(DeclarativeBase):
    pass


class LogicalRecordRow(Base):
    __tablename__ = "logical_records"
    __table_args__ = (
        Index("idx_logical_records_created_at", "created_at"),
        {"schema": DB_SCHEMA},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    role: Mapped[str] = mapped_column(String(16))
    content: Mapped[str] = mapped_column(Text, default="")
    structured_fragments: Mapped[list] = mapped_column(JSONB, default=list)
    terminal_state: Mapped[str] = mapped_column(String(16), default="pending")
    error_reason: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    interrupted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SharedValueRow(Base):
    """Suite-scoped key/value row standing in for a cross-process shared dictionary."""

    __tablename__ = "shared_values"
    __table_args__ = {"schema": DB_SCHEMA}

    suite: Mapped[str] = mapped_column(String(128), primary_key=True)
    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[dict] = mapped_column(JSONB)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
