from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from orderflow.agent.corrector import auto_correct
from orderflow.agent.linter import LintReport, lint_plan
from orderflow.config import settings
from orderflow.providers.base import BaseLLMProvider
from orderflow.providers.factory import get_provider
from orderflow.schemas import CarouselPlan, PlanGlobals, Slide
from orderflow.services.carousel_fallback import build_fallback_plan, default_captions
from orderflow.services.carousel_rules import archetypes_for_count, merge_globals
from orderflow.services.job_trace import preview_text
from orderflow.services.prompt_templates import build_carousel_prompts, build_correction_prompts


logger = logging.getLogger("orderflow.planner")


@dataclass
class PlanResult:
    plan: CarouselPlan
    attempts: int
    source: str
    report: LintReport
    fixes: list[str] = field(default_factory=list)

    @property
    def fallback(self) -> bool:
        return self.source == "fallback"


def normalize_plan(
    raw: dict[str, Any],
    *,
    globals_: dict[str, Any],
    slide_types: list[str],
    prompt: str,
) -> CarouselPlan:
    """Coerce a generator payload onto the requested slide sequence.

    Slides are padded or trimmed to the requested count and their types are
    forced to the archetype sequence. Globals always come from the merged
    defaults, never from the generator.
    """
    rows = raw.get("slides") if isinstance(raw, dict) else None
    rows = [row for row in (rows or []) if isinstance(row, dict)]
    slides: list[Slide] = []
    for idx, slide_type in enumerate(slide_types):
        payload = dict(rows[idx]) if idx < len(rows) else {}
        payload["type"] = slide_type
        if payload.get("cta") and not payload.get("cta_primary"):
            payload["cta_primary"] = payload["cta"]
        try:
            slides.append(Slide.model_validate(payload))
        except ValidationError:
            slides.append(Slide(type=slide_type))
    captions = raw.get("captions") if isinstance(raw, dict) else None
    if not isinstance(captions, list) or not captions:
        captions = default_captions(prompt, len(slide_types))
    return CarouselPlan(
        globals=PlanGlobals(**globals_),
        slides=slides,
        captions=[str(row) for row in captions],
    )


def plan_carousel(
    prompt: str,
    slide_count: int,
    *,
    brand_kit: dict[str, Any] | None = None,
    provider: BaseLLMProvider | None = None,
    max_attempts: int | None = None,
) -> PlanResult:
    globals_ = merge_globals(brand_kit)
    slide_types = archetypes_for_count(slide_count)
    provider = provider or get_provider()
    attempts_allowed = max(1, max_attempts or settings.max_plan_attempts)
    system, user = build_carousel_prompts(
        prompt=prompt,
        globals_=globals_,
        slide_types=slide_types,
        brand_kit=brand_kit,
    )

    for attempt in range(1, attempts_allowed + 1):
        try:
            raw = provider.generate_carousel_plan(system=system, user=user, slide_count=slide_count)
        except Exception as exc:
            logger.warning(
                "carousel_plan_generation_failed attempt=%d/%d provider=%s reason=%s",
                attempt,
                attempts_allowed,
                provider.name,
                exc,
            )
            continue

        plan = normalize_plan(raw, globals_=globals_, slide_types=slide_types, prompt=prompt)
        report = lint_plan(plan)
        if report.valid:
            logger.info(
                "carousel_plan_accepted attempt=%d source=generated warnings=%d",
                attempt,
                len(report.warnings),
            )
            return PlanResult(plan=plan, attempts=attempt, source="generated", report=report)

        corrected, fixes = auto_correct(plan)
        corrected_report = lint_plan(corrected)
        if corrected_report.valid:
            logger.info(
                "carousel_plan_accepted attempt=%d source=corrected fixes=%d warnings=%d",
                attempt,
                len(fixes),
                len(corrected_report.warnings),
            )
            return PlanResult(
                plan=corrected,
                attempts=attempt,
                source="corrected",
                report=corrected_report,
                fixes=fixes,
            )

        logger.info(
            "carousel_plan_rejected attempt=%d/%d errors=%s",
            attempt,
            attempts_allowed,
            [preview_text(row, 120) for row in corrected_report.errors[:5]],
        )
        system, user = build_correction_prompts(
            prompt=prompt,
            globals_=globals_,
            slide_types=slide_types,
            violations=corrected_report.errors,
            plan=corrected.model_dump(),
        )

    fallback = build_fallback_plan(prompt, slide_count, globals_)
    report = lint_plan(fallback)
    logger.warning(
        "carousel_plan_fallback attempts=%d slide_count=%d fallback_valid=%s",
        attempts_allowed,
        slide_count,
        report.valid,
    )
    return PlanResult(plan=fallback, attempts=attempts_allowed, source="fallback", report=report)
