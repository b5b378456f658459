from __future__ import annotations

from datetime import datetime, timezone
import uuid
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, JSON, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class ReviewRunStatus:
    RUNNING = "running"
    PENDING_APPROVAL = "pending_approval"
    FAILED = "failed"
    # Written by the approval workflow once suggestions have been applied.
    APPLIED = "applied"
    PARTIALLY_APPLIED = "partially_applied"

    ACTIVE = (RUNNING, PENDING_APPROVAL)


class SuggestedAction:
    ALIAS = "alias"
    CREATE = "create"
    REJECT = "reject"
    DELETE = "delete"

    ALL = (ALIAS, CREATE, REJECT, DELETE)


class FoodStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# Value of ReviewRun.active_slot while a run holds the lease. Unique, so the
# store refuses a second active run even if two triggers race past the check.
ACTIVE_RUN_SLOT = "food_review"


class ReviewRun(Base):
    __tablename__ = "review_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=ReviewRunStatus.RUNNING)
    run_by: Mapped[Optional[str]] = mapped_column(String(320))
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    total_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    json_type = JSON().with_variant(JSONB, "postgresql")
    summary: Mapped[dict] = mapped_column(json_type, nullable=False, default=dict)
    active_slot: Mapped[Optional[str]] = mapped_column(String(32), unique=True)
    error_message: Mapped[Optional[str]] = mapped_column(String(512))

    __table_args__ = (Index("ix_review_runs_status_started_at", "status", "started_at"),)

    def __repr__(self) -> str:
        return (
            f"ReviewRun(id={self.id}, status={self.status}, "
            f"total_processed={self.total_processed})"
        )


class ReviewSuggestion(Base):
    __tablename__ = "review_suggestions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("review_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    food_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("foods.id", ondelete="CASCADE"), nullable=False
    )
    food_name: Mapped[str] = mapped_column(Text, nullable=False)
    suggested_action: Mapped[str] = mapped_column(String(16), nullable=False)
    target_food_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("foods.id")
    )
    target_food_name: Mapped[Optional[str]] = mapped_column(Text)
    extracted_unit: Mapped[Optional[str]] = mapped_column(String(64))
    extracted_quantity: Mapped[Optional[float]] = mapped_column(Numeric(asdecimal=False))
    ai_reasoning: Mapped[Optional[str]] = mapped_column(Text)
    ingredient_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_review_suggestions_run_id_action", "run_id", "suggested_action"),
    )


class Food(Base):
    """Catalog entry. Owned by the catalog service; read-only here."""

    __tablename__ = "foods"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=FoodStatus.PENDING)
    canonical_food_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("foods.id")
    )
    created_by: Mapped[Optional[str]] = mapped_column(String(320))
    date_published: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class Ingredient(Base):
    """Recipe ingredient row referencing a food. Read-only here."""

    __tablename__ = "ingredients"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    food_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("foods.id"), index=True
    )
    name: Mapped[Optional[str]] = mapped_column(Text)
    quantity: Mapped[Optional[str]] = mapped_column(String(32))
    measurement: Mapped[Optional[str]] = mapped_column(String(64))
