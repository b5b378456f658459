"""Add food review runs and suggestions.

Revision ID: 3c7d0e5a9f12
Revises:
Create Date: 2026-03-01 09:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "3c7d0e5a9f12"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    json_type = sa.JSON().with_variant(postgresql.JSONB, "postgresql")
    op.create_table(
        "review_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="running"),
        sa.Column("run_by", sa.String(length=320), nullable=True),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("summary", json_type, nullable=False, server_default=sa.text("'{}'")),
        sa.Column("active_slot", sa.String(length=32), nullable=True),
        sa.Column("error_message", sa.String(length=512), nullable=True),
        sa.UniqueConstraint("active_slot", name="uq_review_runs_active_slot"),
    )
    op.create_index(
        "ix_review_runs_status_started_at",
        "review_runs",
        ["status", "started_at"],
    )

    op.create_table(
        "review_suggestions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "run_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("review_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "food_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("foods.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("food_name", sa.Text(), nullable=False),
        sa.Column("suggested_action", sa.String(length=16), nullable=False),
        sa.Column(
            "target_food_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("foods.id"),
            nullable=True,
        ),
        sa.Column("target_food_name", sa.Text(), nullable=True),
        sa.Column("extracted_unit", sa.String(length=64), nullable=True),
        sa.Column("extracted_quantity", sa.Numeric(), nullable=True),
        sa.Column("ai_reasoning", sa.Text(), nullable=True),
        sa.Column("ingredient_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
    )
    op.create_index("ix_review_suggestions_run_id", "review_suggestions", ["run_id"])
    op.create_index(
        "ix_review_suggestions_run_id_action",
        "review_suggestions",
        ["run_id", "suggested_action"],
    )


def downgrade() -> None:
    op.drop_index("ix_review_suggestions_run_id_action", table_name="review_suggestions")
    op.drop_index("ix_review_suggestions_run_id", table_name="review_suggestions")
    op.drop_table("review_suggestions")
    op.drop_index("ix_review_runs_status_started_at", table_name="review_runs")
    op.drop_table("review_runs")
