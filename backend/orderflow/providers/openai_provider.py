import json
import logging
from time import perf_counter
from typing import Any

from openai import OpenAI

from orderflow.config import settings
from orderflow.providers.base import BaseLLMProvider, TopicDetection, coerce_topic_detection
from orderflow.services.job_trace import preview_text
from orderflow.services.prompt_templates import build_topic_prompts


logger = logging.getLogger("orderflow.providers")


_NULLABLE_STRING = {"type": ["string", "null"]}

PLAN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "slides": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": ["hero", "problem", "solution", "impact", "cta", "variant"]},
                    "title": {"type": "string"},
                    "subtitle": _NULLABLE_STRING,
                    "punchline": _NULLABLE_STRING,
                    "badge": _NULLABLE_STRING,
                    "bullets": {"type": "array", "items": {"type": "string"}},
                    "cta_primary": _NULLABLE_STRING,
                    "cta_secondary": _NULLABLE_STRING,
                    "note": _NULLABLE_STRING,
                    "kpis": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {"label": {"type": "string"}, "delta": {"type": "string"}},
                            "required": ["label", "delta"],
                            "additionalProperties": False,
                        },
                    },
                },
                "required": [
                    "type",
                    "title",
                    "subtitle",
                    "punchline",
                    "badge",
                    "bullets",
                    "cta_primary",
                    "cta_secondary",
                    "note",
                    "kpis",
                ],
                "additionalProperties": False,
            },
        },
        "captions": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["slides", "captions"],
    "additionalProperties": False,
}

TOPIC_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "topic": {"type": "string"},
        "angle": {"type": ["string", "null"], "enum": ["éducatif", "promo", "témoignage", "storytelling", None]},
        "confidence": {"type": "number"},
    },
    "required": ["topic", "angle", "confidence"],
    "additionalProperties": False,
}


class OpenAIProvider(BaseLLMProvider):
    name = "openai"

    def __init__(self, api_key: str):
        super().__init__()
        self.client = OpenAI(api_key=api_key)

    def _run_structured_request(
        self,
        *,
        system: str,
        user: str,
        output_schema: dict[str, Any],
        schema_name: str,
        request_label: str = "structured",
        retries: int = 2,
    ) -> dict[str, Any]:
        last_error: Exception | None = None

        for attempt in range(retries + 1):
            started = perf_counter()
            logger.info(
                "openai_request_start label=%s model=%s attempt=%d/%d input_chars=%d user_preview=%s",
                request_label,
                settings.openai_model,
                attempt + 1,
                retries + 1,
                len(system) + len(user),
                preview_text(user, 220),
            )
            try:
                response = self.client.responses.create(
                    model=settings.openai_model,
                    input=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    text={
                        "format": {
                            "type": "json_schema",
                            "name": schema_name,
                            "schema": output_schema,
                            "strict": True,
                        }
                    },
                )
                text = (response.output_text or "").strip()
                if not text:
                    raise ValueError("OpenAI returned empty structured output")
                logger.info(
                    "openai_request_done label=%s duration_sec=%.2f output_chars=%d output_preview=%s",
                    request_label,
                    perf_counter() - started,
                    len(text),
                    preview_text(text, 220),
                )
                return json.loads(text)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "openai_request_error label=%s attempt=%d/%d duration_sec=%.2f reason=%s",
                    request_label,
                    attempt + 1,
                    retries + 1,
                    perf_counter() - started,
                    exc,
                )

        if last_error:
            raise last_error
        raise RuntimeError("OpenAI structured request failed with unknown error")

    def generate_carousel_plan(self, *, system: str, user: str, slide_count: int) -> dict:
        self.reset_warnings()
        payload = self._run_structured_request(
            system=system,
            user=user,
            output_schema=PLAN_SCHEMA,
            schema_name="carousel_plan",
            request_label="carousel_plan",
            retries=0,
        )
        logger.info("openai_plan_parsed slides=%d requested=%d", len(payload.get("slides") or []), slide_count)
        return payload

    def classify_topic(self, message: str) -> TopicDetection:
        system, user = build_topic_prompts(message)
        try:
            payload = self._run_structured_request(
                system=system,
                user=user,
                output_schema=TOPIC_SCHEMA,
                schema_name="topic_detection",
                request_label="classify_topic",
                retries=1,
            )
            return coerce_topic_detection(payload, message)
        except Exception as exc:
            self.last_warnings.append(f"OpenAI topic detection failed; neutral confidence used ({exc}).")
            return super().classify_topic(message)
