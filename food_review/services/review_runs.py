from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import SessionFactory
from ..models import (
    ACTIVE_RUN_SLOT,
    ReviewRun,
    ReviewRunStatus,
    ReviewSuggestion,
    SuggestedAction,
    utcnow,
)
from ..observability import bind_review_run
from ..schemas import NormalizationResult, ReviewRunRecord, ReviewSuggestionRecord
from .catalog import (
    PendingFood,
    count_ingredient_references,
    fetch_pending_foods,
    find_canonical_food,
)
from .decision import SuggestionDraft, decide, needs_canonical_lookup
from .normalization import ClassificationError
from .progress import NullProgressSink, ProgressSink

logger = logging.getLogger(__name__)

CONFLICT_IN_PROGRESS = "in_progress"
CONFLICT_AWAITING_APPROVAL = "awaiting_approval"
STUCK_RUN_ERROR = "stuck_run_timeout"
CANCELLED_RUN_ERROR = "cancelled"
_ERROR_MESSAGE_MAX = 512


class Classifier(Protocol):
    async def normalize(self, foods: Sequence[PendingFood]) -> List[NormalizationResult]: ...


class ReviewRunConflict(Exception):
    """Another run already holds the lease."""

    def __init__(self, run_id: str, reason: str) -> None:
        self.run_id = run_id
        self.reason = reason
        super().__init__(f"Review run {run_id} blocks a new run ({reason})")


class ReviewRunInactive(RuntimeError):
    """The run left the running state underneath its executor (e.g. reclaimed as stuck)."""


@dataclass
class ReviewRunOutcome:
    run_id: str
    status: str
    total_processed: int = 0
    suggestions: int = 0
    summary: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# --------------------------------------------------------------------------- lease


async def acquire_run_lease(
    session: AsyncSession,
    *,
    run_by: str,
    stuck_after: timedelta,
    now: datetime | None = None,
) -> ReviewRun:
    """Check for an active run and create a new one in the same transaction.

    A `pending_approval` run always blocks. A `running` run blocks until it is
    older than `stuck_after`, after which it is failed and the new run proceeds.
    """
    now = now or utcnow()
    existing = await _latest_active_run(session)
    if existing is not None:
        if existing.status == ReviewRunStatus.PENDING_APPROVAL:
            raise ReviewRunConflict(str(existing.id), CONFLICT_AWAITING_APPROVAL)
        age = now - as_utc(existing.started_at)
        if age <= stuck_after:
            raise ReviewRunConflict(str(existing.id), CONFLICT_IN_PROGRESS)
        logger.warning(
            "Reclaiming stuck food review run run_id=%s age=%ss processed=%s",
            existing.id,
            int(age.total_seconds()),
            existing.total_processed,
        )
        existing.status = ReviewRunStatus.FAILED
        existing.completed_at = now
        existing.active_slot = None
        existing.error_message = STUCK_RUN_ERROR
        await session.flush()

    # The approval workflow moves runs to applied/partially_applied by status
    # alone, so a finished run can still hold the slot.
    released = await session.execute(
        update(ReviewRun)
        .where(
            ReviewRun.active_slot.is_not(None),
            ReviewRun.status.not_in(ReviewRunStatus.ACTIVE),
        )
        .values(active_slot=None)
        .execution_options(synchronize_session=False)
    )
    if released.rowcount:
        logger.info("Released food review slot held by %s inactive run(s)", released.rowcount)

    run = ReviewRun(
        status=ReviewRunStatus.RUNNING,
        run_by=run_by,
        started_at=now,
        total_processed=0,
        summary={},
        active_slot=ACTIVE_RUN_SLOT,
    )
    session.add(run)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        winner = await _latest_active_run(session)
        winner_id = str(winner.id) if winner is not None else ""
        logger.info("Food review lease lost to concurrent trigger run_id=%s", winner_id)
        raise ReviewRunConflict(winner_id, CONFLICT_IN_PROGRESS)
    await session.refresh(run)
    logger.info("Food review run created run_id=%s run_by=%s", run.id, run_by)
    return run


async def _latest_active_run(session: AsyncSession) -> ReviewRun | None:
    stmt = (
        select(ReviewRun)
        .where(ReviewRun.status.in_(ReviewRunStatus.ACTIVE))
        .order_by(ReviewRun.started_at.desc())
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


# ----------------------------------------------------------------------- execution


async def execute_review_run(
    run_id: UUID | str,
    *,
    sessions: SessionFactory,
    classifier: Classifier,
    limit: int,
    batch_size: int,
    lookup_concurrency: int = 4,
    sink: ProgressSink | None = None,
) -> ReviewRunOutcome:
    """Review up to `limit` pending foods for a run that already holds the lease.

    Batches run one after another; each ends with a durable checkpoint of its
    suggestions and the processed count. A failing batch is skipped (its items
    still count as processed). Anything else that goes wrong fails the run.
    """
    run_uuid = _as_uuid(run_id)
    run_key = str(run_uuid)
    sink = sink or NullProgressSink()
    # Runs execute in their own task, so the binding stays local to this run.
    bind_review_run(run_key)
    processed = 0
    checkpointed = 0
    stored = 0
    try:
        async with sessions() as session:
            pending = await fetch_pending_foods(session, limit)
        logger.info("Food review run started run_id=%s pending=%s", run_key, len(pending))
        sink.started(run_key, len(pending))

        summary: Dict[str, int] = {}
        if pending:
            semaphore = asyncio.Semaphore(max(1, lookup_concurrency))
            for batch_index, batch in enumerate(_chunked(pending, batch_size)):
                drafts = await _review_batch(
                    sessions,
                    batch,
                    classifier=classifier,
                    semaphore=semaphore,
                    run_key=run_key,
                    batch_index=batch_index,
                )
                processed += len(batch)
                stored += await _persist_checkpoint(sessions, run_uuid, drafts, processed)
                checkpointed = processed
                sink.batch(processed, stored)
            summary = await _summarize_run(sessions, run_uuid)

        finalized = await _finalize_run(
            sessions,
            run_uuid,
            status=ReviewRunStatus.PENDING_APPROVAL,
            total_processed=processed,
            summary=summary,
        )
        if not finalized:
            raise ReviewRunInactive(f"Review run {run_key} is no longer running")
    except asyncio.CancelledError:
        logger.warning("Food review run cancelled run_id=%s processed=%s", run_key, processed)
        await mark_run_failed(sessions, run_uuid, CANCELLED_RUN_ERROR)
        sink.error("Review run cancelled")
        raise
    except Exception as exc:
        logger.exception("Food review run failed run_id=%s processed=%s", run_key, processed)
        message = str(exc) or exc.__class__.__name__
        await mark_run_failed(sessions, run_uuid, message)
        sink.error(message)
        return ReviewRunOutcome(
            run_id=run_key,
            status=ReviewRunStatus.FAILED,
            total_processed=checkpointed,
            suggestions=stored,
            error=message,
        )

    logger.info(
        "Food review run completed run_id=%s processed=%s suggestions=%s summary=%s",
        run_key,
        processed,
        stored,
        summary,
    )
    sink.done(run_key, processed, stored, summary)
    return ReviewRunOutcome(
        run_id=run_key,
        status=ReviewRunStatus.PENDING_APPROVAL,
        total_processed=processed,
        suggestions=stored,
        summary=summary,
    )


async def _review_batch(
    sessions: SessionFactory,
    batch: Sequence[PendingFood],
    *,
    classifier: Classifier,
    semaphore: asyncio.Semaphore,
    run_key: str,
    batch_index: int,
) -> List[SuggestionDraft]:
    """Classify and decide one batch. Any failure skips the whole batch."""
    try:
        normalizations = await classifier.normalize(batch)
        if len(normalizations) != len(batch):
            raise ClassificationError(
                f"Classifier returned {len(normalizations)} results for {len(batch)} foods"
            )
        results = await asyncio.gather(
            *(
                _evaluate_item(sessions, semaphore, food, normalization)
                for food, normalization in zip(batch, normalizations)
            ),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)
    except Exception:
        logger.exception(
            "Food review batch failed run_id=%s batch=%s size=%s",
            run_key,
            batch_index,
            len(batch),
        )
        return []


async def _evaluate_item(
    sessions: SessionFactory,
    semaphore: asyncio.Semaphore,
    food: PendingFood,
    normalization: NormalizationResult,
) -> SuggestionDraft:
    async with semaphore:
        async with sessions() as session:
            # Counted live per item; a count can move between batches of one run.
            ingredient_count = await count_ingredient_references(session, food.id)
            match = None
            if needs_canonical_lookup(normalization, ingredient_count):
                match = await find_canonical_food(session, normalization.normalized_name or "")
    return decide(food, normalization, ingredient_count, match)


async def _persist_checkpoint(
    sessions: SessionFactory,
    run_id: UUID,
    drafts: Sequence[SuggestionDraft],
    total_processed: int,
) -> int:
    """Store a batch's suggestions plus the processed count; returns rows stored."""
    async with sessions() as session:
        run = await _require_running(session, run_id)
        session.add_all([_suggestion_row(run_id, draft) for draft in drafts])
        run.total_processed = max(run.total_processed or 0, total_processed)
        try:
            await session.commit()
            return len(drafts)
        except SQLAlchemyError:
            await session.rollback()
            logger.warning(
                "Checkpoint insert failed run_id=%s rows=%s; storing suggestions one by one",
                run_id,
                len(drafts),
            )

    # The run may have been reclaimed while the bulk insert was failing.
    async with sessions() as session:
        await _require_running(session, run_id)

    stored = 0
    for draft in drafts:
        try:
            async with sessions() as session:
                session.add(_suggestion_row(run_id, draft))
                await session.commit()
        except SQLAlchemyError:
            logger.exception(
                "Failed to store review suggestion run_id=%s food_id=%s", run_id, draft.food_id
            )
            continue
        stored += 1

    async with sessions() as session:
        run = await _require_running(session, run_id)
        run.total_processed = max(run.total_processed or 0, total_processed)
        await session.commit()
    return stored


async def _require_running(session: AsyncSession, run_id: UUID) -> ReviewRun:
    run = await session.get(ReviewRun, run_id)
    if run is None:
        raise ReviewRunInactive(f"Review run {run_id} not found")
    if run.status != ReviewRunStatus.RUNNING:
        raise ReviewRunInactive(f"Review run {run_id} is {run.status}")
    return run


def _suggestion_row(run_id: UUID, draft: SuggestionDraft) -> ReviewSuggestion:
    return ReviewSuggestion(run_id=run_id, **asdict(draft))


async def _summarize_run(sessions: SessionFactory, run_id: UUID) -> Dict[str, int]:
    summary = {action: 0 for action in SuggestedAction.ALL}
    async with sessions() as session:
        stmt = (
            select(ReviewSuggestion.suggested_action, func.count(ReviewSuggestion.id))
            .where(ReviewSuggestion.run_id == run_id)
            .group_by(ReviewSuggestion.suggested_action)
        )
        for action, count in await session.execute(stmt):
            summary[action] = int(count)
    return summary


async def _finalize_run(
    sessions: SessionFactory,
    run_id: UUID,
    *,
    status: str,
    **fields: Any,
) -> bool:
    """Move a running run to a terminal status. Terminal runs are left untouched."""
    async with sessions() as session:
        run = await session.get(ReviewRun, run_id)
        if run is None:
            logger.warning("Cannot finalize missing food review run run_id=%s", run_id)
            return False
        if run.status != ReviewRunStatus.RUNNING:
            logger.warning(
                "Food review run already terminal run_id=%s status=%s requested=%s",
                run_id,
                run.status,
                status,
            )
            return False
        run.status = status
        run.completed_at = utcnow()
        if status == ReviewRunStatus.FAILED:
            run.active_slot = None
        for key, value in fields.items():
            setattr(run, key, value)
        await session.commit()
        return True


async def mark_run_failed(sessions: SessionFactory, run_id: UUID | str, message: str) -> bool:
    """Fail a running run, keeping its last checkpointed `total_processed`."""
    try:
        return await _finalize_run(
            sessions,
            _as_uuid(run_id),
            status=ReviewRunStatus.FAILED,
            error_message=message[:_ERROR_MESSAGE_MAX],
        )
    except SQLAlchemyError:
        # The stuck-run timeout reclaims the run on the next trigger.
        logger.exception("Could not mark food review run failed run_id=%s", run_id)
        return False


def _chunked(items: Sequence[PendingFood], size: int) -> Iterator[Sequence[PendingFood]]:
    step = max(1, size)
    for start in range(0, len(items), step):
        yield items[start : start + step]


def _as_uuid(value: UUID | str) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


# -------------------------------------------------------------------------- queries


async def get_review_run(session: AsyncSession, run_id: UUID) -> ReviewRun | None:
    return await session.get(ReviewRun, run_id)


async def list_run_suggestions(
    session: AsyncSession,
    run_id: UUID,
    *,
    action: str | None = None,
) -> List[ReviewSuggestion]:
    stmt = select(ReviewSuggestion).where(ReviewSuggestion.run_id == run_id)
    if action:
        stmt = stmt.where(ReviewSuggestion.suggested_action == action)
    stmt = stmt.order_by(ReviewSuggestion.created_at.asc(), ReviewSuggestion.food_name.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


def serialize_review_run(run: ReviewRun) -> ReviewRunRecord:
    return ReviewRunRecord(
        runId=str(run.id),
        status=run.status,
        runBy=run.run_by,
        startedAt=run.started_at,
        completedAt=run.completed_at,
        totalProcessed=run.total_processed or 0,
        summary={key: int(value) for key, value in (run.summary or {}).items()},
        errorMessage=run.error_message,
    )


def serialize_suggestion(suggestion: ReviewSuggestion) -> ReviewSuggestionRecord:
    return ReviewSuggestionRecord(
        id=str(suggestion.id),
        runId=str(suggestion.run_id),
        foodId=str(suggestion.food_id),
        foodName=suggestion.food_name,
        suggestedAction=suggestion.suggested_action,
        targetFoodId=str(suggestion.target_food_id) if suggestion.target_food_id else None,
        targetFoodName=suggestion.target_food_name,
        extractedUnit=suggestion.extracted_unit,
        extractedQuantity=suggestion.extracted_quantity,
        aiReasoning=suggestion.ai_reasoning,
        ingredientCount=suggestion.ingredient_count or 0,
        status=suggestion.status,
        createdAt=suggestion.created_at,
    )
