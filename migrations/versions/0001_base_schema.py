"""Base schema: key-value store

Revision ID: 0001_base_schema
Revises: 
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001_base_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # favorites, search history and cache envelopes all live here, one JSON value per key
    op.create_table(
        "kv_store",
        sa.Column("key", sa.Text(), nullable=False),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index("ix_kv_store_updated_at", "kv_store", ["updated_at"])


def downgrade() -> None:
    op.drop_index("ix_kv_store_updated_at", table_name="kv_store")
    op.drop_table("kv_store")
