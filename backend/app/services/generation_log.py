from __future__ import annotations
"""Generation Log service: append-only writes and the read-backs the workflow needs.

The log is the durable record of which provider job belongs to which
scene/stage, so a restarted worker can pick up a submitted job instead of
paying for a second one. Ordering is by the autoincrement ``id``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.generation_log import GenerationLog, LogEvent, LogLevel
from app.services.errors import StorageFailure, TransientNetwork

logger = logging.getLogger(__name__)

_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

# Events that end the life of a submitted job for its step
_JOB_BOUNDARY_EVENTS = (
    LogEvent.SUBMITTED.value,
    LogEvent.ATTEMPT_FAILED.value,
    LogEvent.COMPLETED.value,
    LogEvent.STALE.value,
    LogEvent.RECOVERED.value,
)
# Relocating a finished job failed with these codes; the job is still good
_JOB_PRESERVING_CODES = {StorageFailure.code, TransientNetwork.code}


@dataclass(frozen=True)
class LoggedJob:
    """A provider job handle as recorded at submission time."""
    job_id: str
    provider: str | None
    attempt: int
    submitted_at: datetime
    log_id: int


def append_log(
    session: AsyncSession,
    *,
    scene_id: str,
    project_id: str,
    step: str,
    level: LogLevel,
    message: str,
    event: LogEvent | None = None,
    provider: str | None = None,
    job_id: str | None = None,
    attempt: int | None = None,
    error_code: str | None = None,
    details: dict[str, Any] | None = None,
    duration_ms: int | None = None,
) -> GenerationLog:
    """Add a log row to ``session``; the caller owns the transaction."""
    entry = GenerationLog(
        scene_id=scene_id,
        project_id=project_id,
        step=str(getattr(step, "value", step)),
        level=level.value,
        event=event.value if event else None,
        message=message,
        provider=provider,
        job_id=job_id,
        attempt=attempt,
        error_code=error_code,
        details=details,
        duration_ms=duration_ms,
    )
    session.add(entry)
    logger.log(
        _PY_LEVELS[level],
        "[scene %s] %s: %s%s",
        scene_id[:8], entry.step, message,
        f" ({provider})" if provider else "",
    )
    return entry


# An operator reset or recovery starts attempt counting over
_RESTART_EVENTS = (LogEvent.RESET.value, LogEvent.RECOVERED.value)


async def _last_reset_id(session: AsyncSession, scene_id: str) -> int:
    last = await session.scalar(
        select(func.max(GenerationLog.id)).where(
            GenerationLog.scene_id == scene_id,
            GenerationLog.event.in_(_RESTART_EVENTS),
        )
    )
    return last or 0


async def active_job(session: AsyncSession, scene_id: str, step: str) -> LoggedJob | None:
    """The submitted job for ``step`` that has not been resolved yet, if any."""
    since = await _last_reset_id(session, scene_id)
    rows = await session.execute(
        select(GenerationLog)
        .where(
            GenerationLog.scene_id == scene_id,
            GenerationLog.step == step,
            GenerationLog.event.in_(_JOB_BOUNDARY_EVENTS),
            GenerationLog.id > since,
        )
        .order_by(GenerationLog.id.desc())
    )
    for entry in rows.scalars():
        if (
            entry.event == LogEvent.ATTEMPT_FAILED.value
            and entry.job_id
            and entry.error_code in _JOB_PRESERVING_CODES
        ):
            continue
        if entry.event == LogEvent.SUBMITTED.value and entry.job_id:
            return LoggedJob(
                job_id=entry.job_id,
                provider=entry.provider,
                attempt=entry.attempt or 1,
                submitted_at=entry.created_at,
                log_id=entry.id,
            )
        return None
    return None


async def last_submitted_job(session: AsyncSession, scene_id: str, step: str) -> LoggedJob | None:
    """Most recent job handle for ``step``, resolved or not (for recovery)."""
    entry = await session.scalar(
        select(GenerationLog)
        .where(
            GenerationLog.scene_id == scene_id,
            GenerationLog.step == step,
            GenerationLog.event == LogEvent.SUBMITTED.value,
            GenerationLog.job_id.is_not(None),
        )
        .order_by(GenerationLog.id.desc())
        .limit(1)
    )
    if entry is None:
        return None
    return LoggedJob(
        job_id=entry.job_id,
        provider=entry.provider,
        attempt=entry.attempt or 1,
        submitted_at=entry.created_at,
        log_id=entry.id,
    )


async def attempts_used(session: AsyncSession, scene_id: str, step: str) -> int:
    """Failed attempts recorded for ``step`` since the scene was last reset."""
    since = await _last_reset_id(session, scene_id)
    count = await session.scalar(
        select(func.count(GenerationLog.id)).where(
            GenerationLog.scene_id == scene_id,
            GenerationLog.step == step,
            GenerationLog.event == LogEvent.ATTEMPT_FAILED.value,
            GenerationLog.id > since,
        )
    )
    return count or 0


async def last_failed_attempt(session: AsyncSession, scene_id: str, step: str) -> GenerationLog | None:
    """Latest ``attempt_failed`` entry for ``step`` since the last reset."""
    since = await _last_reset_id(session, scene_id)
    return await session.scalar(
        select(GenerationLog)
        .where(
            GenerationLog.scene_id == scene_id,
            GenerationLog.step == step,
            GenerationLog.event == LogEvent.ATTEMPT_FAILED.value,
            GenerationLog.id > since,
        )
        .order_by(GenerationLog.id.desc())
        .limit(1)
    )


async def polls_for_job(session: AsyncSession, scene_id: str, job_id: str) -> int:
    count = await session.scalar(
        select(func.count(GenerationLog.id)).where(
            GenerationLog.scene_id == scene_id,
            GenerationLog.job_id == job_id,
            GenerationLog.event == LogEvent.POLLED.value,
        )
    )
    return count or 0


async def scene_for_job(session: AsyncSession, provider: str, job_id: str) -> str | None:
    """Correlate a provider callback with the scene that submitted the job."""
    return await session.scalar(
        select(GenerationLog.scene_id)
        .where(
            GenerationLog.provider == provider,
            GenerationLog.job_id == job_id,
            GenerationLog.event == LogEvent.SUBMITTED.value,
        )
        .order_by(GenerationLog.id.desc())
        .limit(1)
    )


async def list_logs(
    session: AsyncSession,
    scene_id: str,
    *,
    limit: int = 200,
    newest_first: bool = False,
) -> Sequence[GenerationLog]:
    order = GenerationLog.id.desc() if newest_first else GenerationLog.id
    result = await session.execute(
        select(GenerationLog)
        .where(GenerationLog.scene_id == scene_id)
        .order_by(order)
        .limit(limit)
    )
    return result.scalars().all()
