from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orderflow.models import JobQueueEntry, LibraryAsset
from orderflow.services.job_queue import TERMINAL_STATUSES, set_job_state
from orderflow.services.job_trace import decode_payload, job_log
from orderflow.services.payload_aliases import (
    EXECUTION_ID_PATHS,
    dig,
    direct_job_ids,
    execution_id_of,
    external_id_of,
    extract_error_message,
    media_url_of,
    normalize_asset_type,
    normalize_status,
    output_entries,
)


logger = logging.getLogger("orderflow.webhooks")

_SCAN_LIMIT = 50


class MissingExecutionId(ValueError):
    pass


@dataclass
class ReconcileOutcome:
    job_id: str | None
    status: str | None
    asset_ids: list[str] = field(default_factory=list)
    note: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "received": True,
            "job_id": self.job_id,
            "status": self.status,
            "asset_ids": self.asset_ids,
            "note": self.note,
        }


def _job_document(job: JobQueueEntry) -> dict[str, Any]:
    payload = decode_payload(job.payload_json)
    return {
        "payload": payload,
        "result": decode_payload(job.result_json),
        "meta": payload.get("meta") if isinstance(payload.get("meta"), dict) else {},
    }


def find_job(db: Session, execution_id: str, meta: dict[str, Any] | None) -> JobQueueEntry | None:
    """Locate the job a callback belongs to.

    Explicit job ids in ``meta`` win. Then the execution id recorded at
    submission time, then the known echo paths inside stored payloads/results.
    """
    for candidate in direct_job_ids(meta):
        job = db.get(JobQueueEntry, candidate)
        if job:
            return job

    job = db.scalar(select(JobQueueEntry).where(JobQueueEntry.execution_id == execution_id))
    if job:
        return job

    pattern = f"%{execution_id}%"
    candidates = db.scalars(
        select(JobQueueEntry)
        .where(or_(JobQueueEntry.payload_json.like(pattern), JobQueueEntry.result_json.like(pattern)))
        .order_by(JobQueueEntry.created_at.desc())
        .limit(_SCAN_LIMIT)
    ).all()
    for path in EXECUTION_ID_PATHS:
        for row in candidates:
            value = dig(_job_document(row), path)
            if value is not None and str(value) == execution_id:
                return row
    return None


def _link_asset(asset: LibraryAsset, job: JobQueueEntry) -> None:
    asset.user_id = job.user_id
    asset.brand_id = job.brand_id
    asset.order_id = job.order_id
    asset.order_item_id = job.order_item_id
    asset.job_id = job.id


def _upsert_asset(
    db: Session,
    job: JobQueueEntry,
    *,
    media_url: str,
    external_id: str | None,
    entry: dict[str, Any],
    position: int,
    body: dict[str, Any],
) -> LibraryAsset:
    if external_id:
        asset = db.scalar(select(LibraryAsset).where(LibraryAsset.external_id == external_id))
    else:
        asset = db.scalar(
            select(LibraryAsset).where(LibraryAsset.job_id == job.id, LibraryAsset.media_url == media_url)
        )

    asset_type = normalize_asset_type(entry.get("type") or entry.get("resource_type") or body.get("type"), job.type)
    slide_index = entry.get("slide_index", entry.get("slideIndex"))
    if slide_index is None and asset_type == "carousel_slide":
        slide_index = position
    metadata = {
        "execution_id": execution_id_of(body),
        "unit_index": job.unit_index,
        "output": entry,
    }

    if asset is not None:
        _link_asset(asset, job)
        asset.media_url = media_url
        asset.type = asset_type
        asset.slide_index = slide_index
        asset.metadata_json = json.dumps(metadata, ensure_ascii=False, default=str)
        asset.updated_at = datetime.utcnow()
        db.add(asset)
        return asset

    asset = LibraryAsset(
        id=str(uuid4()),
        user_id=job.user_id,
        brand_id=job.brand_id,
        order_id=job.order_id,
        order_item_id=job.order_item_id,
        job_id=job.id,
        type=asset_type,
        media_url=media_url,
        external_id=external_id,
        slide_index=slide_index,
        metadata_json=json.dumps(metadata, ensure_ascii=False, default=str),
    )
    try:
        with db.begin_nested():
            db.add(asset)
    except IntegrityError:
        # Concurrent delivery inserted the same external id first.
        existing = db.scalar(select(LibraryAsset).where(LibraryAsset.external_id == external_id))
        if existing is None:
            raise
        _link_asset(existing, job)
        existing.media_url = media_url
        existing.updated_at = datetime.utcnow()
        db.add(existing)
        return existing
    return asset


def reconcile_render_webhook(db: Session, body: dict[str, Any]) -> ReconcileOutcome:
    execution_id = execution_id_of(body)
    if not execution_id:
        raise MissingExecutionId("execution_id is required")

    meta = body.get("meta") if isinstance(body.get("meta"), dict) else {}
    status = normalize_status(body.get("status"))
    job = find_job(db, execution_id, meta)
    if job is None:
        logger.info("webhook_job_not_found execution_id=%s status=%s", execution_id, status)
        return ReconcileOutcome(job_id=None, status=status, note="job_not_found")

    if not job.execution_id:
        # Located through meta or an echoed payload before the worker stored the id.
        job.execution_id = execution_id

    if status == "failed":
        if job.status == "completed":
            logger.info("webhook_failure_ignored job=%s execution_id=%s reason=already_completed", job.id, execution_id)
            return ReconcileOutcome(job_id=job.id, status=job.status, note="ignored_after_completion")
        message = extract_error_message(body)
        result = {**decode_payload(job.result_json), "execution_id": execution_id, "status": "failed", "meta": meta}
        set_job_state(db, job, status="failed", error=message, error_code="RENDER_FAILED", result=result)
        job_log(job.id, "webhook_render_failed", execution_id=execution_id, error=message)
        return ReconcileOutcome(job_id=job.id, status="failed")

    if status == "processing":
        if job.status in TERMINAL_STATUSES:
            return ReconcileOutcome(job_id=job.id, status=job.status, note="ignored_after_terminal")
        job.result_json = json.dumps(
            {**decode_payload(job.result_json), "execution_id": execution_id, "status": "processing", "meta": meta},
            ensure_ascii=False,
            default=str,
        )
        job.updated_at = datetime.utcnow()
        db.add(job)
        db.commit()
        job_log(job.id, "webhook_render_progress", execution_id=execution_id)
        return ReconcileOutcome(job_id=job.id, status=job.status)

    entries = output_entries(body)
    media = [(entry, media_url_of(entry)) for entry in entries]
    media = [(entry, url) for entry, url in media if url]
    if not media:
        logger.warning("webhook_missing_media_url job=%s execution_id=%s outputs=%d", job.id, execution_id, len(entries))
        job.result_json = json.dumps(
            {
                **decode_payload(job.result_json),
                "execution_id": execution_id,
                "status": "missing_output",
                "meta": meta,
            },
            ensure_ascii=False,
            default=str,
        )
        job.updated_at = datetime.utcnow()
        db.add(job)
        db.commit()
        job_log(job.id, "webhook_missing_media_url_warning", execution_id=execution_id)
        return ReconcileOutcome(job_id=job.id, status=job.status, note="missing_media_url")

    assets = [
        _upsert_asset(
            db,
            job,
            media_url=url,
            external_id=external_id_of(entry),
            entry=entry,
            position=position,
            body=body,
        )
        for position, (entry, url) in enumerate(media)
    ]
    asset_ids = [row.id for row in assets]
    result = {
        "execution_id": execution_id,
        "status": "completed",
        "outputs": [entry for entry, _ in media],
        "asset_id": asset_ids[0],
        "asset_ids": asset_ids,
        "meta": meta,
    }
    set_job_state(db, job, status="completed", result=result)
    job_log(job.id, "webhook_render_completed", execution_id=execution_id, assets=len(asset_ids))
    return ReconcileOutcome(job_id=job.id, status="completed", asset_ids=asset_ids)
