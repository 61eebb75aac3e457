"""add registration_pending_tx_hash to training_jobs

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19 14:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0002"
down_revision: Union[str, Sequence[str], None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add registration_pending_tx_hash column."""
    op.add_column(
        "training_jobs",
        sa.Column("registration_pending_tx_hash", sa.String(length=66), nullable=True),
    )


def downgrade() -> None:
    """Remove registration_pending_tx_hash column."""
    op.drop_column("training_jobs", "registration_pending_tx_hash")
