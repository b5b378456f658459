from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Dict, List, Set
from uuid import UUID

from ..db import SessionFactory
from .review_runs import execute_review_run, mark_run_failed

logger = logging.getLogger(__name__)


_active_runs: Dict[str, asyncio.Task] = {}
_cleanup_tasks: Set[asyncio.Task] = set()


def schedule_review_run(run_id: UUID | str, *, sessions: SessionFactory, **kwargs: Any) -> asyncio.Task:
    """Start `execute_review_run` as a tracked task that outlives the triggering request."""
    key = str(run_id)
    existing = _active_runs.get(key)
    if existing is not None and not existing.done():
        logger.debug("Food review run %s already has a background task; reusing it", key)
        return existing

    task = asyncio.create_task(
        execute_review_run(run_id, sessions=sessions, **kwargs),
        name=f"food-review-{key}",
    )
    _active_runs[key] = task
    task.add_done_callback(partial(_on_run_finished, key, sessions))
    logger.info("Food review run scheduled run_id=%s", key)
    return task


def active_review_runs() -> List[str]:
    return [key for key, task in _active_runs.items() if not task.done()]


async def shutdown_review_runs() -> None:
    """Cancel tracked runs; each records its own `failed` state while unwinding."""
    tasks = list(_active_runs.values())
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    if _cleanup_tasks:
        await asyncio.gather(*list(_cleanup_tasks), return_exceptions=True)


def _on_run_finished(run_id: str, sessions: SessionFactory, task: asyncio.Task) -> None:
    if _active_runs.get(run_id) is task:
        _active_runs.pop(run_id, None)
    if task.cancelled():
        logger.warning("Food review run task cancelled run_id=%s", run_id)
        return
    exc = task.exception()
    if exc is None:
        return
    logger.error("Food review run task crashed run_id=%s", run_id, exc_info=exc)
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return
    cleanup = loop.create_task(mark_run_failed(sessions, run_id, f"crashed: {exc}"))
    _cleanup_tasks.add(cleanup)
    cleanup.add_done_callback(_cleanup_tasks.discard)
