from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from orderflow.config import settings
from orderflow.models import JobQueueEntry, Order
from orderflow.services.job_trace import decode_payload, job_log


logger = logging.getLogger("orderflow.jobs")

OPEN_STATUSES = ("queued", "running", "processing")
TERMINAL_STATUSES = ("completed", "failed")


def dispatch_jobs(job_ids: Iterable[str]) -> int:
    """Hand jobs to the worker pool. Best effort: failures are logged, never raised."""
    from orderflow.tasks import process_render_job

    dispatched = 0
    for job_id in job_ids:
        try:
            process_render_job.delay(job_id)
            dispatched += 1
        except Exception as exc:
            logger.warning("job_dispatch_failed job=%s reason=%s", job_id, exc)
    return dispatched


def claim_job(db: Session, job_id: str) -> bool:
    """Atomically move a job from queued to running. False if another worker won."""
    now = datetime.utcnow()
    outcome = db.execute(
        update(JobQueueEntry)
        .where(JobQueueEntry.id == job_id, JobQueueEntry.status == "queued")
        .values(status="running", started_at=now, updated_at=now)
    )
    db.commit()
    return outcome.rowcount == 1


def record_submission(db: Session, job: JobQueueEntry, *, execution_id: str, result: dict[str, Any]) -> bool:
    """Move a claimed job to processing once the renderer accepted it.

    Conditional on the job still being ``running``: a callback that already
    finished the job is left untouched. ``result`` is merged over whatever the
    job result holds at that point. Returns False when the callback won.
    """
    db.refresh(job)
    if job.status != "running":
        return False
    merged = {**decode_payload(job.result_json), **result}
    outcome = db.execute(
        update(JobQueueEntry)
        .where(JobQueueEntry.id == job.id, JobQueueEntry.status == "running")
        .values(
            status="processing",
            execution_id=execution_id,
            result_json=json.dumps(merged, ensure_ascii=False, default=str),
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(job)
    return outcome.rowcount == 1


def refresh_order_status(db: Session, order_id: str | None) -> str | None:
    if not order_id:
        return None
    order = db.get(Order, order_id)
    if not order:
        return None
    rows = db.execute(
        select(JobQueueEntry.status, func.count())
        .where(JobQueueEntry.order_id == order_id)
        .group_by(JobQueueEntry.status)
    ).all()
    counts = {status: int(total) for status, total in rows}
    total = sum(counts.values())
    if total == 0:
        status = "pending"
    elif any(counts.get(name) for name in OPEN_STATUSES):
        status = "processing"
    elif counts.get("failed", 0) == 0:
        status = "completed"
    elif counts.get("failed", 0) == total:
        status = "failed"
    else:
        status = "partial"
    if order.status != status:
        order.status = status
        order.updated_at = datetime.utcnow()
        db.add(order)
        db.commit()
        logger.info("order_status_update order=%s status=%s counts=%s", order_id, status, counts)
    return status


def set_job_state(
    db: Session,
    job: JobQueueEntry,
    *,
    status: str,
    error: str | None = None,
    error_code: str | None = None,
    result: dict[str, Any] | None = None,
) -> None:
    job.status = status
    job.error = error
    job.error_code = error_code
    if result is not None:
        job.result_json = json.dumps(result, ensure_ascii=False, default=str)
    job.updated_at = datetime.utcnow()
    if status in TERMINAL_STATUSES:
        job.completed_at = datetime.utcnow()
    db.add(job)
    db.commit()
    job_log(job.id, "state_update", status=status, error_code=error_code, retry_count=job.retry_count)
    if status in TERMINAL_STATUSES:
        refresh_order_status(db, job.order_id)


def requeue_or_fail(db: Session, job: JobQueueEntry, *, reason: str, error_code: str = "RENDER_SUBMIT_FAILED") -> str:
    job.retry_count += 1
    if job.retry_count >= job.max_retries:
        set_job_state(
            db,
            job,
            status="failed",
            error=f"{reason} (after {job.retry_count} attempts)",
            error_code=error_code,
        )
        return "failed"
    set_job_state(db, job, status="queued", error=reason, error_code=error_code)
    return "queued"


def _count(db: Session, *conditions) -> int:
    return int(db.scalar(select(func.count()).select_from(JobQueueEntry).where(*conditions)) or 0)


def force_process(
    db: Session,
    *,
    user_id: str | None = None,
    limit: int | None = None,
    stale_minutes: int | None = None,
    dispatch: Callable[[Iterable[str]], int] | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Recovery sweep: redispatch stale queued jobs and recycle stuck running ones.

    Running jobs that never reached the renderer and saw no update past the
    staleness threshold go back to the queue while they have retries left;
    otherwise they fail with a timeout. Jobs already handed to the renderer
    (``processing``) are never reclaimed.
    """
    moment = now or datetime.utcnow()
    threshold = moment - timedelta(minutes=settings.stale_job_minutes if stale_minutes is None else stale_minutes)
    batch = limit or settings.job_sweep_batch_size
    scope = [JobQueueEntry.user_id == user_id] if user_id else []
    send = dispatch or dispatch_jobs

    queued_before = _count(db, JobQueueEntry.status == "queued", *scope)

    stuck = db.scalars(
        select(JobQueueEntry)
        .where(
            JobQueueEntry.status == "running",
            JobQueueEntry.execution_id.is_(None),
            JobQueueEntry.updated_at < threshold,
            *scope,
        )
        .order_by(JobQueueEntry.updated_at.asc())
        .limit(batch)
    ).all()
    requeued_ids: list[str] = []
    failed_ids: list[str] = []
    for job in stuck:
        if job.retry_count < job.max_retries:
            job.retry_count += 1
            job.status = "queued"
            job.error = "Requeued after exceeding the running time threshold"
            job.updated_at = moment
            requeued_ids.append(job.id)
        else:
            job.status = "failed"
            job.error = f"Job timed out after {job.retry_count} retries"
            job.error_code = "TIMEOUT"
            job.updated_at = moment
            job.completed_at = moment
            failed_ids.append(job.id)
        db.add(job)
    db.commit()

    for job_id in requeued_ids:
        job_log(job_id, "sweep_requeued")
    for job_id in failed_ids:
        job_log(job_id, "sweep_failed", error_code="TIMEOUT")
    for order_id in {job.order_id for job in stuck if job.id in failed_ids}:
        refresh_order_status(db, order_id)

    pending = [JobQueueEntry.status == "queued", JobQueueEntry.updated_at <= threshold, *scope]
    if requeued_ids:
        pending.append(JobQueueEntry.id.not_in(requeued_ids))
    stale_queued = db.scalars(
        select(JobQueueEntry.id)
        .where(*pending)
        .order_by(JobQueueEntry.created_at.asc())
        .limit(batch)
    ).all()

    processed = send([*requeued_ids, *stale_queued])
    queued_after = _count(db, JobQueueEntry.status == "queued", *scope)
    logger.info(
        "force_process_done processed=%d failed=%d requeued=%d queued_before=%d queued_after=%d",
        processed,
        len(failed_ids),
        len(requeued_ids),
        queued_before,
        queued_after,
    )
    return {
        "processed": processed,
        "failed": len(failed_ids),
        "requeued": len(requeued_ids),
        "queued_before": queued_before,
        "queued_after": queued_after,
    }


def queue_stats(db: Session, *, user_id: str | None = None, now: datetime | None = None) -> dict[str, Any]:
    moment = now or datetime.utcnow()
    scope = [JobQueueEntry.user_id == user_id] if user_id else []
    rows = db.execute(
        select(JobQueueEntry.status, func.count()).where(*scope).group_by(JobQueueEntry.status)
    ).all()
    counts = {status: 0 for status in (*OPEN_STATUSES, *TERMINAL_STATUSES)}
    counts.update({status: int(total) for status, total in rows})

    oldest_queued = db.scalar(
        select(func.min(JobQueueEntry.created_at)).where(JobQueueEntry.status == "queued", *scope)
    )
    stale_threshold = moment - timedelta(minutes=settings.stale_job_minutes)
    return {
        "counts": counts,
        "completed_24h": _count(
            db,
            JobQueueEntry.status == "completed",
            JobQueueEntry.completed_at >= moment - timedelta(hours=24),
            *scope,
        ),
        "backlog_seconds": int((moment - oldest_queued).total_seconds()) if oldest_queued else None,
        "stuck_running": _count(
            db,
            JobQueueEntry.status.in_(("running", "processing")),
            JobQueueEntry.updated_at < stale_threshold,
            *scope,
        ),
    }
