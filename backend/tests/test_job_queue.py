from datetime import datetime, timedelta

import requests
from sqlalchemy import select

from orderflow.db import SessionLocal
from orderflow.models import ConversationSession, JobEvent, LibraryAsset, Order, QuotaCounter
from orderflow.providers.mock_provider import MockProvider
from orderflow.services.conversation_flow import CONFIRMING, allocate_context
from orderflow.services.job_queue import claim_job, force_process, queue_stats
from orderflow.services.order_builder import build_order
from orderflow.services.job_trace import decode_payload
from orderflow.services.quota_ledger import current_period, read_used
from orderflow.services.webhook_reconciler import reconcile_render_webhook
from orderflow.tasks import execute_render_job

from conftest import USER_ID


class FakeRenderer:
    def __init__(self, *failures):
        self.failures = list(failures)
        self.requests = []

    def __call__(self, request, *, job_id, order_id=None):
        self.requests.append(request)
        if self.failures:
            raise self.failures.pop(0)
        return f"exec-{job_id[:8]}"


def seed_jobs(db, brand, images=1, carousels=0):
    ctx = allocate_context(images, carousels)
    for brief in ctx.image_briefs:
        brief.objective = "Acquisition"
        brief.format = "4:5"
    for brief in ctx.carousel_briefs:
        brief.topic = "lancement produit X"
        brief.angle = "promo"
        brief.num_slides = 5
    session = ConversationSession(
        id="session-jobs",
        user_id=USER_ID,
        brand_id=brand.id,
        state=CONFIRMING,
        context_json=ctx.model_dump_json(),
    )
    db.add(session)
    db.commit()
    _, jobs, _ = build_order(db, session, ctx)
    return jobs


def event_types(db, job_id):
    return [row.event_type for row in db.scalars(select(JobEvent).where(JobEvent.job_id == job_id)).all()]


def test_claim_is_exclusive(db, brand):
    job = seed_jobs(db, brand)[0]
    assert claim_job(db, job.id) is True
    assert claim_job(db, job.id) is False
    db.refresh(job)
    assert job.status == "running"
    assert job.started_at is not None


def test_image_job_is_charged_and_submitted(db, brand):
    job = seed_jobs(db, brand)[0]
    renderer = FakeRenderer()

    assert execute_render_job(db, job.id, submit=renderer) == "submitted"

    db.refresh(job)
    assert job.status == "processing"
    assert job.execution_id == f"exec-{job.id[:8]}"
    assert job.woofs_charged == 1
    assert read_used(db, brand.id, current_period()) == 1
    assert renderer.requests[0]["brief"]["format"] == "4:5"
    assert db.get(Order, job.order_id).status == "processing"
    assert {"render_job_start", "quota_charged", "rendering_submitted"} <= set(event_types(db, job.id))


def test_carousel_job_carries_a_plan(db, brand):
    job = seed_jobs(db, brand, images=0, carousels=1)[0]
    renderer = FakeRenderer()

    assert execute_render_job(db, job.id, submit=renderer, provider=MockProvider()) == "submitted"

    request = renderer.requests[0]
    assert request["kind"] == "render_carousel"
    assert len(request["plan"]["slides"]) == 5
    assert request["planSource"] in {"generated", "corrected", "fallback"}
    assert read_used(db, brand.id, current_period()) == 10


def test_submit_failure_requeues_without_double_charge(db, brand):
    job = seed_jobs(db, brand)[0]

    outcome = execute_render_job(db, job.id, submit=FakeRenderer(requests.ConnectionError("renderer down")))
    assert outcome == "queued"
    db.refresh(job)
    assert job.status == "queued"
    assert job.retry_count == 1
    assert job.error_code == "RENDER_SUBMIT_FAILED"

    assert execute_render_job(db, job.id, submit=FakeRenderer()) == "submitted"
    assert read_used(db, brand.id, current_period()) == 1


def test_submit_failures_exhaust_retries(db, brand):
    job = seed_jobs(db, brand)[0]
    outcomes = [
        execute_render_job(db, job.id, submit=FakeRenderer(requests.Timeout("slow")))
        for _ in range(3)
    ]
    assert outcomes == ["queued", "queued", "failed"]
    db.refresh(job)
    assert job.status == "failed"
    assert job.completed_at is not None
    assert db.get(Order, job.order_id).status == "failed"


def test_insufficient_woofs_fails_the_job(db, brand):
    job = seed_jobs(db, brand, images=0, carousels=1)[0]
    db.add(QuotaCounter(brand_id=brand.id, period_yyyymm=current_period(), woofs_used=148))
    db.commit()
    renderer = FakeRenderer()

    assert execute_render_job(db, job.id, submit=renderer) == "failed"

    db.refresh(job)
    assert job.status == "failed"
    assert job.error_code == "INSUFFICIENT_WOOFS"
    assert job.woofs_charged == 0
    assert renderer.requests == []
    assert read_used(db, brand.id, current_period()) == 148


def test_job_not_queued_is_skipped(db, brand):
    job = seed_jobs(db, brand)[0]
    claim_job(db, job.id)
    assert execute_render_job(db, job.id, submit=FakeRenderer()) == "skipped"
    assert execute_render_job(db, "missing", submit=FakeRenderer()) == "missing"


def test_sweep_recycles_stale_jobs(db, brand):
    now = datetime.utcnow()
    old = now - timedelta(minutes=10)
    stuck, exhausted, stale, fresh = seed_jobs(db, brand, images=4)

    stuck.status, stuck.updated_at = "running", old
    exhausted.status, exhausted.updated_at, exhausted.retry_count = "running", old, exhausted.max_retries
    stale.updated_at = old
    db.commit()

    sent = []

    def fake_dispatch(job_ids):
        sent.extend(job_ids)
        return len(sent)

    summary = force_process(db, dispatch=fake_dispatch, now=now)

    assert summary == {"processed": 2, "failed": 1, "requeued": 1, "queued_before": 2, "queued_after": 3}
    assert sorted(sent) == sorted([stuck.id, stale.id])
    db.refresh(stuck)
    db.refresh(exhausted)
    assert (stuck.status, stuck.retry_count) == ("queued", 1)
    assert (exhausted.status, exhausted.error_code) == ("failed", "TIMEOUT")
    assert fresh.id not in sent


def test_sweep_leaves_submitted_renders_alone(db, brand):
    job = seed_jobs(db, brand)[0]
    renderer = FakeRenderer()
    assert execute_render_job(db, job.id, submit=renderer) == "submitted"

    sent = []

    def fake_dispatch(job_ids):
        sent.extend(job_ids)
        return len(sent)

    later = datetime.utcnow() + timedelta(minutes=10)
    summary = force_process(db, dispatch=fake_dispatch, now=later)

    assert summary["requeued"] == 0
    assert summary["failed"] == 0
    assert sent == []
    db.refresh(job)
    assert (job.status, job.retry_count) == ("processing", 0)
    assert len(renderer.requests) == 1
    assert queue_stats(db, user_id=USER_ID, now=later)["stuck_running"] == 1


def test_callback_during_submission_keeps_assets(db, brand):
    job = seed_jobs(db, brand)[0]

    def fast_renderer(request, *, job_id, order_id=None):
        other = SessionLocal()
        try:
            reconcile_render_webhook(
                other,
                {
                    "execution_id": "exec-fast",
                    "status": "succeeded",
                    "outputs": [{"secure_url": "https://cdn.example/fast.png", "public_id": "pid-1"}],
                    "meta": {"job_id": job_id},
                },
            )
        finally:
            other.close()
        return "exec-fast"

    assert execute_render_job(db, job.id, submit=fast_renderer) == "submitted"

    db.refresh(job)
    result = decode_payload(job.result_json)
    assert job.status == "completed"
    assert job.execution_id == "exec-fast"
    assert result["asset_id"]
    assert result["status"] == "completed"
    assert db.get(LibraryAsset, result["asset_id"]).external_id == "pid-1"
    assert db.get(Order, job.order_id).status == "completed"


def test_progress_callback_during_submission_is_merged(db, brand):
    job = seed_jobs(db, brand)[0]

    def chatty_renderer(request, *, job_id, order_id=None):
        other = SessionLocal()
        try:
            reconcile_render_webhook(
                other,
                {"execution_id": "exec-slow", "status": "running", "meta": {"job_id": job_id, "progress": 5}},
            )
        finally:
            other.close()
        return "exec-slow"

    assert execute_render_job(db, job.id, submit=chatty_renderer) == "submitted"

    db.refresh(job)
    result = decode_payload(job.result_json)
    assert job.status == "processing"
    assert result["execution_id"] == "exec-slow"
    assert result["meta"]["progress"] == 5


def test_queue_stats(db, brand):
    now = datetime.utcnow()
    running, queued = seed_jobs(db, brand, images=2)
    running.status, running.updated_at = "running", now - timedelta(minutes=30)
    queued.created_at = now - timedelta(minutes=10)
    db.commit()

    stats = queue_stats(db, user_id=USER_ID, now=now)
    assert stats["counts"] == {"queued": 1, "running": 1, "processing": 0, "completed": 0, "failed": 0}
    assert stats["backlog_seconds"] >= 600
    assert stats["stuck_running"] == 1
    assert queue_stats(db, user_id="nobody", now=now)["backlog_seconds"] is None


def test_job_endpoints(api_client, db, brand, dispatched):
    job = seed_jobs(db, brand)[0]
    execute_render_job(db, job.id, submit=FakeRenderer())

    detail = api_client.get(f"/api/jobs/{job.id}")
    assert detail.status_code == 200
    assert detail.json()["execution_id"] == f"exec-{job.id[:8]}"
    assert api_client.get(f"/api/jobs/{job.id}", headers={"X-User-Id": "intruder"}).status_code == 404

    events = api_client.get(f"/api/jobs/{job.id}/events").json()
    assert events[0]["event_type"] == "render_job_start"

    monitor = api_client.get("/api/jobs-monitor").json()
    assert monitor["counts"]["processing"] == 1

    swept = api_client.post("/api/jobs/process", json={"stale_minutes": 0})
    assert swept.status_code == 200
    assert set(swept.json()) == {"processed", "failed", "requeued", "queued_before", "queued_after"}
