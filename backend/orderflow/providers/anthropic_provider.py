import json
import logging
import re
import time
from time import perf_counter

from anthropic import Anthropic

from orderflow.config import settings
from orderflow.providers.base import BaseLLMProvider, TopicDetection, coerce_topic_detection
from orderflow.services.job_trace import preview_text
from orderflow.services.prompt_templates import build_topic_prompts


logger = logging.getLogger("orderflow.providers")

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def extract_json(text: str) -> dict:
    raw = str(text or "").strip()
    fenced = _FENCE_RE.search(raw)
    if fenced:
        raw = fenced.group(1).strip()
    start, end = raw.find("{"), raw.rfind("}")
    if start >= 0 and end > start:
        raw = raw[start : end + 1]
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("Expected a JSON object")
    return payload


class AnthropicProvider(BaseLLMProvider):
    name = "anthropic"

    def __init__(self, api_key: str):
        super().__init__()
        self.client = Anthropic(api_key=api_key)

    def _messages_create_with_retry(
        self,
        *,
        request_label: str,
        system: str,
        user: str,
        max_tokens: int,
        temperature: float,
        retries: int = 2,
    ) -> str:
        last_error: Exception | None = None
        for attempt in range(retries + 1):
            started = perf_counter()
            logger.info(
                "anthropic_request_start label=%s model=%s attempt=%d/%d input_chars=%d user_preview=%s",
                request_label,
                settings.anthropic_model,
                attempt + 1,
                retries + 1,
                len(system) + len(user),
                preview_text(user, 220),
            )
            try:
                response = self.client.messages.create(
                    model=settings.anthropic_model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = "".join(block.text for block in response.content if hasattr(block, "text"))
                logger.info(
                    "anthropic_request_done label=%s duration_sec=%.2f output_chars=%d output_preview=%s",
                    request_label,
                    perf_counter() - started,
                    len(text),
                    preview_text(text, 220),
                )
                return text
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "anthropic_request_error label=%s attempt=%d/%d duration_sec=%.2f reason=%s",
                    request_label,
                    attempt + 1,
                    retries + 1,
                    perf_counter() - started,
                    exc,
                )
                if attempt < retries:
                    time.sleep(0.6 * (2**attempt))

        if last_error:
            raise last_error
        raise RuntimeError("Anthropic request failed with unknown error")

    def generate_carousel_plan(self, *, system: str, user: str, slide_count: int) -> dict:
        self.reset_warnings()
        text = self._messages_create_with_retry(
            request_label="carousel_plan",
            system=system,
            user=user,
            max_tokens=settings.anthropic_max_tokens,
            temperature=0.35,
            retries=0,
        )
        payload = extract_json(text)
        logger.info("anthropic_plan_parsed slides=%d requested=%d", len(payload.get("slides") or []), slide_count)
        return payload

    def classify_topic(self, message: str) -> TopicDetection:
        system, user = build_topic_prompts(message)
        try:
            text = self._messages_create_with_retry(
                request_label="classify_topic",
                system=system,
                user=user,
                max_tokens=300,
                temperature=0.0,
                retries=1,
            )
            return coerce_topic_detection(extract_json(text), message)
        except Exception as exc:
            self.last_warnings.append(f"Anthropic topic detection failed; neutral confidence used ({exc}).")
            return super().classify_topic(message)
