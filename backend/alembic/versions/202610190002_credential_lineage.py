"""auth credentials: link each rotated credential to its predecessor

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:00:02
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: Union[str, None] = "202610190001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Batch mode so SQLite can add the foreign key.
    with op.batch_alter_table("auth_credentials") as batch_op:
        batch_op.add_column(sa.Column("parent_id", sa.Integer(), nullable=True))
        batch_op.create_foreign_key(
            "fk_auth_credentials_parent_id",
            "auth_credentials",
            ["parent_id"],
            ["id"],
            ondelete="SET NULL",
        )
        batch_op.create_index("idx_auth_credentials_parent_id", ["parent_id"])


def downgrade() -> None:
    with op.batch_alter_table("auth_credentials") as batch_op:
        batch_op.drop_index("idx_auth_credentials_parent_id")
        batch_op.drop_constraint("fk_auth_credentials_parent_id", type_="foreignkey")
        batch_op.drop_column("parent_id")
