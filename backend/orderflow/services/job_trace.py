from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select

from orderflow.config import settings
from orderflow.db import SessionLocal
from orderflow.models import JobEvent


logger = logging.getLogger("orderflow.jobs")


def _safe_json(value: Any) -> str:
    try:
        return json.dumps(value if value is not None else {}, ensure_ascii=False, default=str)
    except Exception:
        return "{}"


def preview_text(text: str | None, limit: int | None = None) -> str:
    raw = str(text or "").replace("\r", " ").replace("\n", " ").strip()
    if not raw:
        return ""
    cap = int(limit or settings.log_preview_chars)
    if len(raw) <= cap:
        return raw
    return raw[:cap].rstrip() + " ..."


def _event_stage_from_message(message: str) -> str:
    lower = str(message or "").lower()
    if "quota" in lower or "woofs" in lower:
        return "quota"
    if "plan" in lower:
        return "planning"
    if "webhook" in lower:
        return "webhook"
    if "render" in lower or "dispatch" in lower:
        return "rendering"
    if "sweep" in lower or "requeue" in lower:
        return "recovery"
    if "state_update" in lower:
        return "state"
    return "job"


def record_job_event(
    *,
    job_id: str,
    stage: str,
    event_type: str,
    payload: dict[str, Any] | None = None,
    severity: str = "info",
) -> None:
    if not settings.persist_job_events:
        return
    db = SessionLocal()
    try:
        row = JobEvent(
            job_id=job_id,
            ts=datetime.utcnow(),
            stage=stage,
            event_type=event_type,
            payload_json=_safe_json(payload),
            severity=severity,
        )
        db.add(row)
        db.commit()
    except Exception:
        db.rollback()
    finally:
        db.close()


def job_log(job_id: str, message: str, **fields) -> None:
    """Persist a job event row and mirror it to the jobs logger.

    Callers invoke this after committing their own work: the trace row is
    written through a separate session.
    """
    if job_id and job_id != "n/a":
        try:
            record_job_event(
                job_id=job_id,
                stage=_event_stage_from_message(message),
                event_type=message,
                payload=fields,
                severity="warning" if "warning" in message or "failed" in message else "info",
            )
        except Exception:
            # Trace persistence must never break task execution.
            pass

    if not settings.verbose_job_trace and not message.endswith(("_start", "_failed")):
        return
    try:
        details = " ".join(
            f"{key}={json.dumps(value, ensure_ascii=False, default=str)}"
            for key, value in fields.items()
            if value is not None
        )
        if details:
            logger.info("job=%s %s | %s", job_id, message, details)
        else:
            logger.info("job=%s %s", job_id, message)
    except Exception:
        logger.info("job=%s %s | log_error=true", job_id, message)


def list_job_events(job_id: str, *, limit: int = 400) -> list[JobEvent]:
    db = SessionLocal()
    try:
        rows = db.scalars(
            select(JobEvent)
            .where(JobEvent.job_id == job_id)
            .order_by(JobEvent.ts.asc(), JobEvent.id.asc())
            .limit(max(1, min(limit, settings.job_events_page_size)))
        ).all()
        return list(rows)
    finally:
        db.close()


def decode_payload(payload_json: str | None) -> dict[str, Any]:
    if not payload_json:
        return {}
    try:
        parsed = json.loads(payload_json)
        return parsed if isinstance(parsed, dict) else {"value": parsed}
    except Exception:
        return {}


def decode_list(payload_json: str | None) -> list[Any]:
    if not payload_json:
        return []
    try:
        parsed = json.loads(payload_json)
        return parsed if isinstance(parsed, list) else []
    except Exception:
        return []


def encode_payload(value: Any) -> str:
    return _safe_json(value)
