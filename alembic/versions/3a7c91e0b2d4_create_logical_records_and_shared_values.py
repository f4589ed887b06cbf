"""create logical_records and shared_values

Revision ID: 3a7c91e0b2d4
Revises:
Create Date: 2026-10-12 09:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "3a7c91e0b2d4"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "logical_records",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column(
            "structured_fragments",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("terminal_state", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.PrimaryKeyConstraint("id"),
        schema="handoff",
    )
    op.create_index(
        "idx_logical_records_created_at",
        "logical_records",
        ["created_at"],
        unique=False,
        schema="handoff",
    )
    op.create_table(
        "shared_values",
        sa.Column("suite", sa.String(length=128), nullable=False),
        sa.Column("key", sa.String(length=128), nullable=False),
        sa.Column("value", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.PrimaryKeyConstraint("suite", "key"),
        schema="handoff",
    )


def downgrade() -> None:
    op.drop_table("shared_values", schema="handoff")
    op.drop_index("idx_logical_records_created_at", table_name="logical_records", schema="handoff")
    op.drop_table("logical_records", schema="handoff")
