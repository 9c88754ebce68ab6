from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Kpi(BaseModel):
    label: str = ""
    delta: str = ""


class PlanGlobals(BaseModel):
    audience: str
    promise: str
    cta: str
    terminology: list[str] = Field(default_factory=list)
    banned: list[str] = Field(default_factory=list)


class Slide(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = "variant"
    title: str = ""
    subtitle: str | None = None
    punchline: str | None = None
    badge: str | None = None
    bullets: list[str] = Field(default_factory=list)
    cta_primary: str | None = None
    cta_secondary: str | None = None
    note: str | None = None
    kpis: list[Kpi] = Field(default_factory=list)

    @field_validator("bullets", mode="before")
    @classmethod
    def _coerce_bullets(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [row.strip() for row in value.splitlines() if row.strip()]
        return [str(row) for row in value if str(row or "").strip()]

    @field_validator("kpis", mode="before")
    @classmethod
    def _coerce_kpis(cls, value):
        if not isinstance(value, list):
            return []
        return [row for row in value if isinstance(row, dict)]


class CarouselPlan(BaseModel):
    globals: PlanGlobals
    slides: list[Slide] = Field(default_factory=list)
    captions: list[str] = Field(default_factory=list)


class CarouselPlanRequest(BaseModel):
    prompt: str = Field(min_length=3)
    brandKit: dict[str, Any] | None = None
    slideCount: int = Field(default=5, ge=1, le=10)
    provider: str | None = None


class LintReportOut(BaseModel):
    valid: bool
    errors: list[str]
    warnings: list[str]


class CarouselPlanOut(BaseModel):
    plan: CarouselPlan
    attempts: int
    source: Literal["generated", "corrected", "fallback"]
    fallback: bool
    lint: LintReportOut


class ChatRequest(BaseModel):
    message: str = ""
    conversation_id: str | None = None
    brand_id: str | None = None


class ChatResponse(BaseModel):
    response: str
    quick_replies: list[str] = Field(default_factory=list)
    conversation_id: str
    state: str
    context: dict[str, Any]
    order_id: str | None = None


class ConversationOut(BaseModel):
    id: str
    state: str
    brand_id: str | None
    order_id: str | None
    context: dict[str, Any]
    messages: list[dict[str, Any]]
    updated_at: datetime


class QuotaConsumeRequest(BaseModel):
    brand_id: str
    cost_woofs: int = Field(ge=0)
    reason: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class QuotaOut(BaseModel):
    brand_id: str
    period_yyyymm: int
    woofs_limit: int
    woofs_used: int
    remaining_woofs: int


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str | None
    order_item_id: str | None
    type: str
    unit_index: int
    status: str
    error: str | None
    error_code: str | None
    execution_id: str | None
    retry_count: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


class OrderItemOut(BaseModel):
    id: str
    type: str
    status: str
    brief: dict[str, Any]


class OrderOut(BaseModel):
    id: str
    campaign_name: str
    status: str
    brand_id: str | None
    created_at: datetime
    items: list[OrderItemOut] = Field(default_factory=list)
    jobs: list[JobOut] = Field(default_factory=list)


class MaterializeJobsOut(BaseModel):
    order_id: str
    created: int
    total: int
    jobs: list[JobOut]


class JobEventOut(BaseModel):
    id: int
    job_id: str
    ts: datetime
    stage: str
    event_type: str
    payload: dict[str, Any]
    severity: str


class ForceProcessRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=500)
    stale_minutes: int | None = Field(default=None, ge=0, le=1440)


class ForceProcessOut(BaseModel):
    processed: int
    failed: int
    requeued: int
    queued_before: int
    queued_after: int


class QueueMonitorOut(BaseModel):
    counts: dict[str, int]
    completed_24h: int
    backlog_seconds: int | None
    stuck_running: int


class WebhookAck(BaseModel):
    received: bool = True
    job_id: str | None = None
    status: str | None = None
    asset_ids: list[str] = Field(default_factory=list)
    note: str | None = None
