from __future__ import annotations

import re

from orderflow.schemas import CarouselPlan, Kpi, Slide
from orderflow.services.carousel_rules import CHAR_LIMITS, KPI_UNIT_TOKENS


_MULTIPLIER_RE = re.compile(r"(?<=\d)\s*[xX]\b|\b[xX](?=\s*\d)")


def _truncate(value: str | None, kind: str) -> str | None:
    if value is None:
        return None
    limit = CHAR_LIMITS[kind][1]
    if len(value) <= limit:
        return value
    return value[:limit].rstrip()


def fix_kpi_delta(delta: str) -> str:
    raw = delta.strip()
    if not raw or any(unit in raw for unit in KPI_UNIT_TOKENS):
        return raw
    if _MULTIPLIER_RE.search(raw):
        return _MULTIPLIER_RE.sub("×", raw)
    fixed = f"{raw}%"
    return fixed[: CHAR_LIMITS["kpi_delta"][1]]


def _correct_slide(slide: Slide, canonical_cta: str, fixes: list[str], position: int) -> Slide:
    updated = slide.model_copy(deep=True)
    for name, kind in [("title", "title"), ("subtitle", "subtitle"), ("punchline", "punchline"), ("note", "note")]:
        before = getattr(updated, name)
        after = _truncate(before, kind)
        if after != before:
            setattr(updated, name, after)
            fixes.append(f"slide {position}: truncated {name}")

    bullets = [_truncate(row, "bullet") or "" for row in updated.bullets]
    if bullets != updated.bullets:
        fixes.append(f"slide {position}: truncated bullets")
        updated.bullets = bullets

    kpis: list[Kpi] = []
    for kpi in updated.kpis:
        delta = _truncate(fix_kpi_delta(kpi.delta), "kpi_delta") or ""
        label = _truncate(kpi.label, "kpi_label") or ""
        if delta != kpi.delta or label != kpi.label:
            fixes.append(f"slide {position}: normalized KPI {kpi.label!r}")
        kpis.append(Kpi(label=label, delta=delta))
    updated.kpis = kpis

    if updated.type in {"hero", "cta"}:
        if updated.cta_primary != canonical_cta:
            fixes.append(f"slide {position}: forced primary CTA")
        updated.cta_primary = canonical_cta
    elif updated.cta_primary:
        updated.cta_primary = _truncate(updated.cta_primary, "cta")
    return updated


def auto_correct(plan: CarouselPlan) -> tuple[CarouselPlan, list[str]]:
    """Apply mechanical fixes and return a new plan plus the list of fixes made.

    Over-long fields are truncated to their maximum, KPI deltas get a unit and
    the hero/cta slides receive the canonical CTA. The input plan is left untouched.
    """
    fixes: list[str] = []
    canonical_cta = plan.globals.cta
    slides = [_correct_slide(row, canonical_cta, fixes, idx + 1) for idx, row in enumerate(plan.slides)]
    corrected = plan.model_copy(update={"slides": slides}, deep=True)
    return corrected, fixes
