"""create training_jobs and training_images

Revision ID: 0001
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

training_job_status = sa.Enum(
    "PENDING",
    "STARTING",
    "PROCESSING",
    "SUCCEEDED",
    "FAILED",
    "CANCELED",
    name="trainingjobstatus",
)
image_registration_status = sa.Enum(
    "PENDING", "REGISTERED", "FAILED", name="imageregistrationstatus"
)


def upgrade() -> None:
    """Create training job provenance tables."""
    op.create_table(
        "training_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("replicate_job_id", sa.String(length=255), nullable=True),
        sa.Column("status", training_job_status, nullable=False),
        sa.Column("trigger_word", sa.String(length=255), nullable=True),
        sa.Column("input_images_url", sa.String(), nullable=True),
        sa.Column("captioning", sa.String(length=50), nullable=True),
        sa.Column("training_steps", sa.Integer(), nullable=True),
        sa.Column("output_model_url", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("logs", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("predict_time", sa.Float(), nullable=True),
        sa.Column("total_time", sa.Float(), nullable=True),
        sa.Column("ip_id", sa.String(length=66), nullable=True),
        sa.Column("parent_ip_ids", sa.JSON(), nullable=True),
        sa.Column("registration_tx_hash", sa.String(length=66), nullable=True),
        sa.Column("registered_at", sa.DateTime(), nullable=True),
        sa.Column("registration_failed", sa.Boolean(), nullable=False),
        sa.Column("registration_error", sa.String(length=1000), nullable=True),
        sa.Column("registration_failed_at", sa.DateTime(), nullable=True),
        sa.Column("registration_claim", sa.String(length=64), nullable=True),
        sa.Column("registration_claimed_at", sa.DateTime(), nullable=True),
        sa.Column("is_hidden", sa.Boolean(), nullable=False),
        sa.Column("hidden_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_training_jobs_replicate_job_id"),
        "training_jobs",
        ["replicate_job_id"],
        unique=True,
    )
    op.create_index(op.f("ix_training_jobs_status"), "training_jobs", ["status"])
    op.create_index(op.f("ix_training_jobs_trigger_word"), "training_jobs", ["trigger_word"])
    op.create_index(op.f("ix_training_jobs_completed_at"), "training_jobs", ["completed_at"])
    op.create_index(op.f("ix_training_jobs_ip_id"), "training_jobs", ["ip_id"])

    op.create_table(
        "training_images",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("training_job_id", sa.Uuid(), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False),
        sa.Column("original_filename", sa.String(length=255), nullable=True),
        sa.Column("story_ip_id", sa.String(length=66), nullable=True),
        sa.Column("story_tx_hash", sa.String(length=66), nullable=True),
        sa.Column("registration_status", image_registration_status, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["training_job_id"], ["training_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_training_images_training_job_id"), "training_images", ["training_job_id"]
    )
    op.create_index(op.f("ix_training_images_story_ip_id"), "training_images", ["story_ip_id"])
    op.create_index(
        op.f("ix_training_images_registration_status"),
        "training_images",
        ["registration_status"],
    )


def downgrade() -> None:
    """Drop training job provenance tables."""
    op.drop_index(op.f("ix_training_images_registration_status"), table_name="training_images")
    op.drop_index(op.f("ix_training_images_story_ip_id"), table_name="training_images")
    op.drop_index(op.f("ix_training_images_training_job_id"), table_name="training_images")
    op.drop_table("training_images")

    op.drop_index(op.f("ix_training_jobs_ip_id"), table_name="training_jobs")
    op.drop_index(op.f("ix_training_jobs_completed_at"), table_name="training_jobs")
    op.drop_index(op.f("ix_training_jobs_trigger_word"), table_name="training_jobs")
    op.drop_index(op.f("ix_training_jobs_status"), table_name="training_jobs")
    op.drop_index(op.f("ix_training_jobs_replicate_job_id"), table_name="training_jobs")
    op.drop_table("training_jobs")

    training_job_status.drop(op.get_bind(), checkfirst=True)
    image_registration_status.drop(op.get_bind(), checkfirst=True)
