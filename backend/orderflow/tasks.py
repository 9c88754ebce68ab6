from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Callable

import requests
from pydantic import ValidationError

from orderflow.agent.planner import plan_carousel
from orderflow.celery_app import celery_app
from orderflow.config import settings
from orderflow.db import SessionLocal
from orderflow.models import JobQueueEntry
from orderflow.providers.base import BaseLLMProvider
from orderflow.services.job_payloads import RenderCarouselPayload, RenderImagePayload, parse_job_payload
from orderflow.services.job_queue import (
    claim_job,
    force_process,
    record_submission,
    refresh_order_status,
    requeue_or_fail,
    set_job_state,
)
from orderflow.services.job_trace import decode_payload, job_log, preview_text
from orderflow.services.quota_ledger import BrandNotFound, InsufficientWoofs, QuotaForbidden, consume_woofs
from orderflow.services.render_client import submit_render


logger = logging.getLogger("orderflow.jobs")

Submitter = Callable[..., str]


def _configure_worker_logging() -> None:
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    logger.setLevel(level)
    for name in ("orderflow.providers", "orderflow.quota", "orderflow.planner", "orderflow.webhooks"):
        logging.getLogger(name).setLevel(level)
    if settings.suppress_httpx_info_logs:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("openai").setLevel(logging.WARNING)
        logging.getLogger("anthropic").setLevel(logging.WARNING)


_configure_worker_logging()


def _charge_once(db, job: JobQueueEntry) -> str | None:
    """Consume the job's Woofs unless a previous attempt already did. Returns an error code on refusal."""
    if job.woofs_charged or job.woofs_cost <= 0:
        return None
    if not job.brand_id:
        set_job_state(db, job, status="failed", error="Job has no brand to charge", error_code="QUOTA_FORBIDDEN")
        return "QUOTA_FORBIDDEN"

    # Flag and counter increment land in the same commit.
    job.woofs_charged = job.woofs_cost
    db.add(job)
    try:
        consume_woofs(
            db,
            user_id=job.user_id,
            brand_id=job.brand_id,
            cost=job.woofs_cost,
            reason=job.type,
            metadata={"job_id": job.id, "order_id": job.order_id, "unit_index": job.unit_index},
        )
    except InsufficientWoofs as exc:
        db.rollback()
        set_job_state(db, job, status="failed", error=str(exc), error_code="INSUFFICIENT_WOOFS")
        job_log(job.id, "quota_refused_failed", remaining=exc.remaining, required=exc.required)
        return "INSUFFICIENT_WOOFS"
    except (QuotaForbidden, BrandNotFound) as exc:
        db.rollback()
        set_job_state(db, job, status="failed", error=str(exc), error_code="QUOTA_FORBIDDEN")
        return "QUOTA_FORBIDDEN"
    job_log(job.id, "quota_charged", cost=job.woofs_cost)
    return None


def _carousel_prompt(payload: RenderCarouselPayload) -> str:
    topic = payload.brief.topic or payload.campaign_name
    if payload.brief.angle:
        return f"{topic} (angle : {payload.brief.angle})"
    return topic


def build_render_request(
    job: JobQueueEntry,
    payload: RenderImagePayload | RenderCarouselPayload,
    *,
    provider: BaseLLMProvider | None = None,
) -> dict[str, Any]:
    request: dict[str, Any] = {
        "kind": payload.kind,
        "jobId": job.id,
        "orderId": payload.order_id,
        "brandId": payload.brand_id,
        "campaignName": payload.campaign_name,
        "unitIndex": payload.unit_index,
        "brief": payload.brief.model_dump(),
    }
    if isinstance(payload, RenderCarouselPayload):
        slide_count = payload.brief.num_slides or settings.default_carousel_slides
        prompt = _carousel_prompt(payload)
        result = plan_carousel(prompt, slide_count, brand_kit=payload.brand_kit, provider=provider)
        job_log(
            job.id,
            "planning_done",
            source=result.source,
            attempts=result.attempts,
            warnings=len(result.report.warnings),
            prompt_preview=preview_text(prompt),
        )
        request["plan"] = result.plan.model_dump()
        request["planSource"] = result.source
        request["brandKit"] = payload.brand_kit
    return request


def execute_render_job(
    db,
    job_id: str,
    *,
    submit: Submitter | None = None,
    provider: BaseLLMProvider | None = None,
) -> str:
    """Claim, charge, plan and submit one render job.

    Returns the outcome: ``submitted``, ``queued`` (retry scheduled),
    ``failed``, ``skipped`` (claimed elsewhere or not queued) or ``missing``.
    """
    started_at = perf_counter()
    job = db.get(JobQueueEntry, job_id)
    if not job:
        logger.warning("render_job_missing job=%s", job_id)
        return "missing"
    if not claim_job(db, job_id):
        logger.info("render_job_skipped job=%s status=%s", job_id, job.status)
        return "skipped"
    db.refresh(job)
    job_log(job.id, "render_job_start", type=job.type, unit_index=job.unit_index, retry_count=job.retry_count)

    try:
        payload = parse_job_payload(decode_payload(job.payload_json))
    except ValidationError as exc:
        set_job_state(db, job, status="failed", error=f"Invalid job payload: {exc}", error_code="INVALID_PAYLOAD")
        return "failed"

    if _charge_once(db, job):
        return "failed"

    request = build_render_request(job, payload, provider=provider)
    send = submit or submit_render
    try:
        execution_id = send(request, job_id=job.id, order_id=job.order_id)
    except (requests.RequestException, ValueError) as exc:
        outcome = requeue_or_fail(db, job, reason=f"Render submission failed: {exc}")
        job_log(job.id, "render_submit_failed", reason=str(exc), outcome=outcome)
        return outcome

    recorded = record_submission(
        db,
        job,
        execution_id=execution_id,
        result={"execution_id": execution_id, "status": "processing", "plan_source": request.get("planSource")},
    )
    if not recorded:
        # The render callback landed before the submit call returned.
        job_log(job.id, "rendering_submitted_after_callback", execution_id=execution_id, status=job.status)
        return "submitted"
    job_log(
        job.id,
        "rendering_submitted",
        execution_id=execution_id,
        duration_sec=f"{perf_counter() - started_at:.2f}",
    )
    refresh_order_status(db, job.order_id)
    return "submitted"


@celery_app.task(name="orderflow.tasks.process_render_job")
def process_render_job(job_id: str):
    db = SessionLocal()
    try:
        return execute_render_job(db, job_id)
    except Exception as exc:
        db.rollback()
        job = db.get(JobQueueEntry, job_id)
        if job and job.status == "running":
            set_job_state(db, job, status="failed", error=str(exc), error_code="RENDER_JOB_FAILED")
            job_log(job_id, "render_job_failed", reason=str(exc))
        raise
    finally:
        db.close()


@celery_app.task(name="orderflow.tasks.sweep_stale_jobs")
def sweep_stale_jobs():
    db = SessionLocal()
    try:
        return force_process(db)
    finally:
        db.close()
