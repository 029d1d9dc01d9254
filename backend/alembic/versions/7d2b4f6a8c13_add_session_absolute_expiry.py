"""add session absolute expiry

Revision ID: 7d2b4f6a8c13
Revises: 3c1e7a9b5d20
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "7d2b4f6a8c13"
down_revision: Union[str, Sequence[str], None] = "3c1e7a9b5d20"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    with op.batch_alter_table("user_sessions", schema=None) as batch_op:
        batch_op.add_column(sa.Column("absolute_expires_at", sa.String(length=26), nullable=True))

    # Existing sessions keep their current idle deadline as a hard limit.
    op.execute(
        "UPDATE user_sessions SET absolute_expires_at = expires_at WHERE absolute_expires_at IS NULL"
    )

    with op.batch_alter_table("user_sessions", schema=None) as batch_op:
        batch_op.alter_column("absolute_expires_at", existing_type=sa.String(length=26), nullable=False)


def downgrade() -> None:
    """Downgrade schema."""
    with op.batch_alter_table("user_sessions", schema=None) as batch_op:
        batch_op.drop_column("absolute_expires_at")
