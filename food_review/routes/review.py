import logging
from datetime import timedelta
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from ..auth import ReviewActor, require_review_actor
from ..config import Settings, get_settings
from ..db import SessionFactory, get_session, is_configured
from ..models import ReviewRun
from ..ratelimit import limiter, review_trigger_limit
from ..schemas import (
    ReviewRunRecord,
    ReviewSuggestionListResponse,
    ReviewTriggerRequest,
    ReviewTriggerResponse,
    SuggestedActionValue,
)
from ..services.normalization import NormalizationClient
from ..services.progress import QueueProgressSink
from ..services.review_runs import (
    Classifier,
    ReviewRunConflict,
    acquire_run_lease,
    get_review_run,
    list_run_suggestions,
    serialize_review_run,
    serialize_suggestion,
)
from ..services.review_tracker import schedule_review_run

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/food-review", tags=["food-review"])


def get_session_factory() -> SessionFactory:
    if not is_configured():
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database not configured")
    return get_session


def get_classifier(settings: Settings = Depends(get_settings)) -> Classifier:
    if not settings.openai_api_key:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="AI API not configured")
    return NormalizationClient(settings)


@router.post("", response_model=ReviewTriggerResponse)
@limiter.limit(review_trigger_limit)
async def trigger_food_review(
    request: Request,
    payload: Optional[ReviewTriggerRequest] = None,
    actor: ReviewActor = Depends(require_review_actor),
    classifier: Classifier = Depends(get_classifier),
    sessions: SessionFactory = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> ReviewTriggerResponse:
    """Start a review run in the background and return as soon as the run exists."""
    run = await _acquire_lease(sessions, actor, settings)
    schedule_review_run(run.id, sink=None, **_run_options(sessions, classifier, settings, payload))
    return ReviewTriggerResponse(runId=str(run.id), status=run.status)


@router.post("/stream")
@limiter.limit(review_trigger_limit)
async def stream_food_review(
    request: Request,
    payload: Optional[ReviewTriggerRequest] = None,
    actor: ReviewActor = Depends(require_review_actor),
    classifier: Classifier = Depends(get_classifier),
    sessions: SessionFactory = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    """Start a review run and stream its progress as server-sent events.

    Events: `started`, `batch` (after every batch), then `done` or `error`.
    The run does not depend on the stream; a disconnect only stops the events.
    """
    run = await _acquire_lease(sessions, actor, settings)
    sink = QueueProgressSink()
    schedule_review_run(run.id, sink=sink, **_run_options(sessions, classifier, settings, payload))
    return StreamingResponse(
        sink.stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@router.get("/runs/{run_id}", response_model=ReviewRunRecord)
async def get_food_review_run(
    run_id: UUID,
    actor: ReviewActor = Depends(require_review_actor),
    sessions: SessionFactory = Depends(get_session_factory),
) -> ReviewRunRecord:
    async with sessions() as session:
        run = await get_review_run(session, run_id)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Review run not found")
    return serialize_review_run(run)


@router.get("/runs/{run_id}/suggestions", response_model=ReviewSuggestionListResponse)
async def get_food_review_suggestions(
    run_id: UUID,
    action: Optional[SuggestedActionValue] = Query(default=None),
    actor: ReviewActor = Depends(require_review_actor),
    sessions: SessionFactory = Depends(get_session_factory),
) -> ReviewSuggestionListResponse:
    async with sessions() as session:
        run = await get_review_run(session, run_id)
        if run is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Review run not found")
        suggestions = await list_run_suggestions(session, run_id, action=action)
    return ReviewSuggestionListResponse(
        runId=str(run_id),
        suggestions=[serialize_suggestion(suggestion) for suggestion in suggestions],
    )


async def _acquire_lease(sessions: SessionFactory, actor: ReviewActor, settings: Settings) -> ReviewRun:
    async with sessions() as session:
        try:
            return await acquire_run_lease(
                session,
                run_by=actor.run_by,
                stuck_after=timedelta(seconds=settings.review_stuck_run_timeout_seconds),
            )
        except ReviewRunConflict as exc:
            logger.info("Food review trigger rejected reason=%s run_id=%s by=%s", exc.reason, exc.run_id, actor.run_by)
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error": exc.reason, "runId": exc.run_id},
            )


def _run_options(
    sessions: SessionFactory,
    classifier: Classifier,
    settings: Settings,
    payload: Optional[ReviewTriggerRequest],
) -> dict:
    requested = payload.limit if payload and payload.limit else settings.review_default_limit
    return {
        "sessions": sessions,
        "classifier": classifier,
        "limit": min(requested, settings.review_max_limit),
        "batch_size": settings.review_batch_size,
        "lookup_concurrency": settings.review_lookup_concurrency,
    }
