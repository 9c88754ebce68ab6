from __future__ import annotations

import logging
from typing import Any

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from orderflow.agent.planner import plan_carousel
from orderflow.config import settings
from orderflow.db import Base, engine, get_db
from orderflow.models import JobQueueEntry, Order, OrderItem
from orderflow.providers.factory import get_provider
from orderflow.schemas import (
    CarouselPlanOut,
    CarouselPlanRequest,
    ChatRequest,
    ChatResponse,
    ConversationOut,
    ForceProcessOut,
    ForceProcessRequest,
    JobEventOut,
    JobOut,
    MaterializeJobsOut,
    OrderItemOut,
    OrderOut,
    QueueMonitorOut,
    QuotaConsumeRequest,
    QuotaOut,
    WebhookAck,
)
from orderflow.services.conversation_service import (
    ConversationConflict,
    ConversationNotFound,
    conversation_snapshot,
    handle_chat_turn,
    load_session,
)
from orderflow.services.job_queue import dispatch_jobs, force_process, queue_stats
from orderflow.services.job_trace import decode_payload, list_job_events
from orderflow.services.order_builder import materialize_jobs
from orderflow.services.quota_ledger import (
    BrandNotFound,
    InsufficientWoofs,
    QuotaForbidden,
    consume_woofs,
    get_quota,
)
from orderflow.services.webhook_reconciler import MissingExecutionId, reconcile_render_webhook

app = FastAPI(title=settings.app_name)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin, "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class _AccessLogPathFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not settings.suppress_job_poll_access_logs:
            return True

        message = record.getMessage()
        if '"GET /api/jobs/' in message or '"GET /api/jobs-monitor' in message:
            return False
        if '"OPTIONS /api/jobs/' in message:
            return False
        return True


def _configure_runtime_logging() -> None:
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    for name in (
        "orderflow",
        "orderflow.jobs",
        "orderflow.providers",
        "orderflow.quota",
        "orderflow.webhooks",
        "orderflow.conversation",
        "orderflow.planner",
    ):
        logging.getLogger(name).setLevel(level)

    if settings.suppress_httpx_info_logs:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("openai").setLevel(logging.WARNING)
        logging.getLogger("anthropic").setLevel(logging.WARNING)

    access_logger = logging.getLogger("uvicorn.access")
    if settings.suppress_job_poll_access_logs and not any(
        isinstance(row, _AccessLogPathFilter) for row in access_logger.filters
    ):
        access_logger.addFilter(_AccessLogPathFilter())


@app.on_event("startup")
def on_startup():
    _configure_runtime_logging()
    Base.metadata.create_all(bind=engine)


def current_user(x_user_id: str | None = Header(default=None)) -> str:
    user_id = str(x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


def _forbidden(message: str) -> JSONResponse:
    return JSONResponse(status_code=403, content={"ok": False, "error": {"code": "FORBIDDEN", "message": message}})


def _insufficient(exc: InsufficientWoofs) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={
            "ok": False,
            "error": {
                "code": "INSUFFICIENT_WOOFS",
                "remaining": exc.remaining,
                "required": exc.required,
                "message": str(exc),
            },
        },
    )


def _owned_order(db: Session, order_id: str, user_id: str) -> Order:
    order = db.get(Order, order_id)
    if not order or order.user_id != user_id:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def _owned_job(db: Session, job_id: str, user_id: str) -> JobQueueEntry:
    job = db.get(JobQueueEntry, job_id)
    if not job or job.user_id != user_id:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post(f"{settings.api_prefix}/chat", response_model=ChatResponse)
def chat(req: ChatRequest, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    try:
        result = handle_chat_turn(
            db,
            user_id=user_id,
            message=req.message,
            conversation_id=req.conversation_id,
            brand_id=req.brand_id,
        )
    except ConversationNotFound:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except BrandNotFound:
        raise HTTPException(status_code=404, detail="Brand not found")
    except QuotaForbidden as exc:
        return _forbidden(str(exc))
    except ConversationConflict:
        raise HTTPException(status_code=409, detail="Conversation was updated concurrently, retry the message")
    return ChatResponse(**result)


@app.get(f"{settings.api_prefix}/conversations/{{conversation_id}}", response_model=ConversationOut)
def get_conversation(conversation_id: str, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    try:
        session = load_session(db, user_id=user_id, conversation_id=conversation_id)
    except ConversationNotFound:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return ConversationOut(**conversation_snapshot(session))


@app.post(f"{settings.api_prefix}/quota/consume")
def quota_consume(req: QuotaConsumeRequest, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    try:
        result = consume_woofs(
            db,
            user_id=user_id,
            brand_id=req.brand_id,
            cost=req.cost_woofs,
            reason=req.reason,
            metadata=req.metadata,
        )
    except BrandNotFound:
        raise HTTPException(status_code=404, detail="Brand not found")
    except QuotaForbidden as exc:
        return _forbidden(str(exc))
    except InsufficientWoofs as exc:
        db.rollback()
        return _insufficient(exc)
    return result.as_dict()


@app.get(f"{settings.api_prefix}/brands/{{brand_id}}/quota", response_model=QuotaOut)
def brand_quota(brand_id: str, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    try:
        return QuotaOut(**get_quota(db, user_id=user_id, brand_id=brand_id))
    except BrandNotFound:
        raise HTTPException(status_code=404, detail="Brand not found")
    except QuotaForbidden as exc:
        return _forbidden(str(exc))


@app.post(f"{settings.api_prefix}/carousel/plan", response_model=CarouselPlanOut)
def carousel_plan(req: CarouselPlanRequest):
    result = plan_carousel(
        req.prompt,
        req.slideCount,
        brand_kit=req.brandKit,
        provider=get_provider(req.provider),
    )
    return CarouselPlanOut(
        plan=result.plan,
        attempts=result.attempts,
        source=result.source,
        fallback=result.fallback,
        lint=result.report.as_dict(),
    )


def _order_out(db: Session, order: Order) -> OrderOut:
    items = db.scalars(
        select(OrderItem).where(OrderItem.order_id == order.id).order_by(OrderItem.sequence_number.asc())
    ).all()
    jobs = db.scalars(
        select(JobQueueEntry)
        .where(JobQueueEntry.order_id == order.id)
        .order_by(JobQueueEntry.type.desc(), JobQueueEntry.unit_index.asc())
    ).all()
    return OrderOut(
        id=order.id,
        campaign_name=order.campaign_name,
        status=order.status,
        brand_id=order.brand_id,
        created_at=order.created_at,
        items=[
            OrderItemOut(id=row.id, type=row.type, status=row.status, brief=decode_payload(row.brief_json))
            for row in items
        ],
        jobs=[JobOut.model_validate(row) for row in jobs],
    )


@app.get(f"{settings.api_prefix}/orders/{{order_id}}", response_model=OrderOut)
def get_order(order_id: str, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return _order_out(db, _owned_order(db, order_id, user_id))


@app.post(f"{settings.api_prefix}/orders/{{order_id}}/jobs", response_model=MaterializeJobsOut)
def build_order_jobs(order_id: str, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    order = _owned_order(db, order_id, user_id)
    jobs, created = materialize_jobs(db, order)
    if created:
        dispatch_jobs(created)
    return MaterializeJobsOut(
        order_id=order.id,
        created=len(created),
        total=len(jobs),
        jobs=[JobOut.model_validate(row) for row in jobs],
    )


@app.get(f"{settings.api_prefix}/jobs/{{job_id}}", response_model=JobOut)
def get_job(job_id: str, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return _owned_job(db, job_id, user_id)


@app.get(f"{settings.api_prefix}/jobs/{{job_id}}/events", response_model=list[JobEventOut])
def get_job_events(
    job_id: str,
    limit: int = Query(default=200, ge=1, le=2000),
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    _owned_job(db, job_id, user_id)
    rows = list_job_events(job_id, limit=limit)
    return [
        JobEventOut(
            id=row.id,
            job_id=row.job_id,
            ts=row.ts,
            stage=row.stage,
            event_type=row.event_type,
            payload=decode_payload(row.payload_json),
            severity=row.severity,
        )
        for row in rows
    ]


@app.get(f"{settings.api_prefix}/jobs-monitor", response_model=QueueMonitorOut)
def jobs_monitor(user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return QueueMonitorOut(**queue_stats(db, user_id=user_id))


@app.post(f"{settings.api_prefix}/jobs/process", response_model=ForceProcessOut)
def process_jobs(
    req: ForceProcessRequest | None = None,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    req = req or ForceProcessRequest()
    return ForceProcessOut(
        **force_process(db, user_id=user_id, limit=req.limit, stale_minutes=req.stale_minutes)
    )


@app.post(f"{settings.api_prefix}/webhooks/render", response_model=WebhookAck)
def render_webhook(body: dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    try:
        outcome = reconcile_render_webhook(db, body)
    except MissingExecutionId:
        raise HTTPException(status_code=400, detail="execution_id is required")
    return WebhookAck(**outcome.as_dict())
