"""Alias tables for loosely-typed render callbacks.

Render backends report the same concept under different keys. Every alias
the reconciler understands lives here.
"""

from __future__ import annotations

from typing import Any

URL_KEYS: tuple[str, ...] = ("secure_url", "url", "href", "output_url", "outputUrl")
EXTERNAL_ID_KEYS: tuple[str, ...] = ("public_id", "publicId", "asset_id", "assetId")
JOB_ID_KEYS: tuple[str, ...] = ("job_id", "jobId", "job_queue_id", "jobQueueId", "id")
EXECUTION_ID_KEYS: tuple[str, ...] = ("execution_id", "executionId")
OUTPUT_KEYS: tuple[str, ...] = ("outputs", "output", "result")

# Places in a job's stored document where a worker may have echoed the execution id.
EXECUTION_ID_PATHS: tuple[tuple[str, ...], ...] = (
    ("meta", "job_id"),
    ("meta", "jobId"),
    ("payload", "job_id"),
    ("payload", "jobId"),
    ("payload", "execution_id"),
    ("payload", "executionId"),
    ("result", "execution_id"),
    ("result", "job_id"),
)

COMPLETED_STATUSES = frozenset({"succeeded", "success", "completed", "complete", "ready", "done"})
FAILED_STATUSES = frozenset({"failed", "failure", "error", "cancelled", "canceled"})


def normalize_status(raw: Any) -> str:
    value = str(raw or "").strip().lower()
    if value in COMPLETED_STATUSES:
        return "completed"
    if value in FAILED_STATUSES:
        return "failed"
    return "processing"


def first_present(mapping: Any, keys: tuple[str, ...]) -> str | None:
    if not isinstance(mapping, dict):
        return None
    for key in keys:
        value = mapping.get(key)
        if isinstance(value, (str, int)) and str(value).strip():
            return str(value).strip()
    return None


def dig(document: Any, path: tuple[str, ...]) -> Any:
    current = document
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def execution_id_of(body: dict[str, Any]) -> str | None:
    return first_present(body, EXECUTION_ID_KEYS)


def output_entries(body: dict[str, Any]) -> list[dict[str, Any]]:
    """Flatten ``outputs | output | result`` into a list of records."""
    for key in OUTPUT_KEYS:
        value = body.get(key)
        if value is None:
            continue
        if isinstance(value, str) and value.strip():
            return [{"url": value.strip()}]
        if isinstance(value, dict):
            if isinstance(value.get("outputs"), list):
                return [row for row in value["outputs"] if isinstance(row, dict)]
            return [value]
        if isinstance(value, list):
            rows: list[dict[str, Any]] = []
            for row in value:
                if isinstance(row, dict):
                    rows.append(row)
                elif isinstance(row, str) and row.strip():
                    rows.append({"url": row.strip()})
            return rows
    return []


def media_url_of(entry: dict[str, Any]) -> str | None:
    return first_present(entry, URL_KEYS)


def external_id_of(entry: dict[str, Any]) -> str | None:
    return first_present(entry, EXTERNAL_ID_KEYS)


def direct_job_ids(meta: Any) -> list[str]:
    if not isinstance(meta, dict):
        return []
    ids: list[str] = []
    for key in JOB_ID_KEYS:
        value = first_present(meta, (key,))
        if value and value not in ids:
            ids.append(value)
    return ids


def extract_error_message(body: dict[str, Any]) -> str:
    error = body.get("error")
    if isinstance(error, str) and error.strip():
        return error.strip()
    if isinstance(error, dict):
        found = first_present(error, ("message", "error", "reason"))
        if found:
            return found
    found = first_present(body.get("meta"), ("error", "error_message", "reason"))
    if found:
        return found
    return "Render failed without an error message"


def normalize_asset_type(raw: Any, job_type: str | None = None) -> str:
    value = str(raw or "").lower()
    if "video" in value:
        return "video"
    if "slide" in value or "carousel" in value:
        return "carousel_slide"
    if job_type == "render_carousel":
        return "carousel_slide"
    return "image"
