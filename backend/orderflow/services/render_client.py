from __future__ import annotations

from typing import Any

import requests

from orderflow.config import settings


def callback_url() -> str:
    if settings.render_callback_url:
        return settings.render_callback_url
    return f"{settings.public_base_url.rstrip('/')}{settings.api_prefix}/webhooks/render"


def submit_render(request: dict[str, Any], *, job_id: str, order_id: str | None = None) -> str:
    """Hand a render request to the rendering backend and return its execution id."""
    payload = {
        **request,
        "callbackUrl": callback_url(),
        "meta": {"job_id": job_id, "order_id": order_id},
    }
    response = requests.post(
        f"{settings.renderer_url.rstrip('/')}/render",
        json=payload,
        timeout=settings.render_timeout_seconds,
    )
    response.raise_for_status()
    body = response.json() if response.content else {}
    execution_id = None
    if isinstance(body, dict):
        execution_id = body.get("execution_id") or body.get("executionId") or body.get("id")
    if not execution_id:
        raise ValueError("Renderer response did not include an execution id")
    return str(execution_id)
