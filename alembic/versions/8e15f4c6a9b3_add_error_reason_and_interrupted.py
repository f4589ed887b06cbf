"""add error_reason and interrupted to logical_records

Revision ID: 8e15f4c6a9b3
Revises: 3a7c91e0b2d4
Create Date: 2026-10-14 16:05:00.000000

Failed deliveries keep their partial content; the reason goes in its own
column. interrupted mirrors terminal_state = 'interrupted' for readers that
only look at a flag.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "8e15f4c6a9b3"
down_revision: Union[str, Sequence[str], None] = "3a7c91e0b2d4"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "logical_records",
        sa.Column("error_reason", sa.Text(), nullable=True),
        schema="handoff",
    )
    op.add_column(
        "logical_records",
        sa.Column("interrupted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        schema="handoff",
    )
    op.execute(
        """
        UPDATE handoff.logical_records
        SET interrupted = TRUE
        WHERE terminal_state = 'interrupted'
        """
    )


def downgrade() -> None:
    op.drop_column("logical_records", "interrupted", schema="handoff")
    op.drop_column("logical_records", "error_reason", schema="handoff")
