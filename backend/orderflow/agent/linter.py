from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from orderflow.schemas import CarouselPlan, Slide
from orderflow.services.carousel_rules import CHAR_LIMITS, HYPERBOLES, KPI_UNIT_TOKENS, SOLUTION_KEYWORDS


@dataclass
class LintReport:
    issues: list[dict[str, Any]] = field(default_factory=list)

    @property
    def errors(self) -> list[str]:
        return [row["message"] for row in self.issues if row["severity"] == "error"]

    @property
    def warnings(self) -> list[str]:
        return [row["message"] for row in self.issues if row["severity"] == "warning"]

    @property
    def valid(self) -> bool:
        return not any(row["severity"] == "error" for row in self.issues)

    def add(self, rule: str, severity: str, message: str, slide_index: int | None = None) -> None:
        self.issues.append({"rule": rule, "severity": severity, "message": message, "slide_index": slide_index})

    def as_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": self.errors, "warnings": self.warnings}


def slide_text(slide: Slide) -> str:
    parts: list[str] = [slide.title]
    parts.extend(value for value in [slide.subtitle, slide.punchline, slide.badge] if value)
    parts.extend(slide.bullets)
    parts.extend(value for value in [slide.cta_primary, slide.cta_secondary, slide.note] if value)
    for kpi in slide.kpis:
        parts.extend([kpi.label, kpi.delta])
    return " ".join(part for part in parts if part).lower()


def _find(slides: list[Slide], slide_type: str) -> Slide | None:
    return next((row for row in slides if row.type == slide_type), None)


def _check_promise(plan: CarouselPlan, report: LintReport) -> None:
    anchors = [row for row in plan.slides if row.type in {"solution", "cta"}]
    if not anchors:
        return
    keyword = plan.globals.promise.lower()[:15]
    if not any(keyword in slide_text(row) for row in anchors):
        report.add("R1", "error", f'R1: promise "{plan.globals.promise}" not restated on the solution or cta slide')


def _check_cta(plan: CarouselPlan, report: LintReport) -> None:
    hero = _find(plan.slides, "hero")
    closing = _find(plan.slides, "cta")
    if hero is None or closing is None:
        report.add("R2", "warning", "R2: plan has no hero/cta pair to carry the primary CTA")
        return
    if not hero.cta_primary or not closing.cta_primary:
        report.add("R2", "error", "R2: primary CTA missing on the hero or cta slide")
        return
    if hero.cta_primary != closing.cta_primary:
        report.add(
            "R2",
            "error",
            f'R2: hero CTA ("{hero.cta_primary}") differs from cta slide CTA ("{closing.cta_primary}")',
        )


def _check_vocabulary(plan: CarouselPlan, report: LintReport) -> None:
    terminology = [term.lower() for term in plan.globals.terminology if term]
    banned = [word for word in plan.globals.banned if word]
    for idx, slide in enumerate(plan.slides):
        text = slide_text(slide)
        if terminology and not any(term in text for term in terminology):
            report.add("R3", "warning", f"R3: slide {idx + 1} ({slide.type}) uses no glossary term", idx)
        for word in banned:
            if word.lower() in text:
                report.add("R3", "error", f'R3: slide {idx + 1} ({slide.type}) contains banned word "{word}"', idx)


def _check_style(plan: CarouselPlan, report: LintReport) -> None:
    for idx, slide in enumerate(plan.slides):
        fields = [slide.title, slide.subtitle, slide.punchline, *slide.bullets]
        for value in fields:
            if not value:
                continue
            if "!!" in value:
                report.add("R4", "warning", f"R4: slide {idx + 1} uses repeated exclamation marks", idx)
            for word in value.split(" "):
                if len(word) > 4 and word.isupper():
                    report.add("R4", "warning", f'R4: slide {idx + 1} shouts in capitals: "{word}"', idx)


def _check_kpi_units(plan: CarouselPlan, report: LintReport) -> None:
    impact = _find(plan.slides, "impact")
    if impact is None or not impact.kpis:
        return
    if not all(any(unit in kpi.delta for unit in KPI_UNIT_TOKENS) for kpi in impact.kpis):
        report.add("R5", "error", "R5: KPI deltas on the impact slide need a unit (%, pts, ×)")


def _check_length(report: LintReport, idx: int, name: str, value: str | None, kind: str) -> None:
    if not value:
        return
    low, high = CHAR_LIMITS[kind]
    size = len(value)
    if size < low:
        report.add("R6", "warning", f"R6: slide {idx + 1} {name} too short ({size} < {low})", idx)
    if size > high:
        report.add("R6", "error", f"R6: slide {idx + 1} {name} too long ({size} > {high})", idx)


def _check_lengths(plan: CarouselPlan, report: LintReport) -> None:
    for idx, slide in enumerate(plan.slides):
        _check_length(report, idx, "title", slide.title, "title")
        _check_length(report, idx, "subtitle", slide.subtitle, "subtitle")
        _check_length(report, idx, "punchline", slide.punchline, "punchline")
        for pos, bullet in enumerate(slide.bullets):
            _check_length(report, idx, f"bullet {pos + 1}", bullet, "bullet")
        _check_length(report, idx, "cta_primary", slide.cta_primary, "cta")
        for pos, kpi in enumerate(slide.kpis):
            _check_length(report, idx, f"kpi {pos + 1} label", kpi.label, "kpi_label")
            _check_length(report, idx, f"kpi {pos + 1} delta", kpi.delta, "kpi_delta")
        _check_length(report, idx, "note", slide.note, "note")


def _check_flow(plan: CarouselPlan, report: LintReport) -> None:
    problem = _find(plan.slides, "problem")
    solution = _find(plan.slides, "solution")
    if problem is None or solution is None or not problem.bullets or not solution.bullets:
        return
    if len(problem.bullets) > len(solution.bullets):
        report.add("R7", "warning", "R7: more problem bullets than solution bullets")
    for pos, bullet in enumerate(problem.bullets):
        lowered = bullet.lower()
        if any(keyword in lowered for keyword in SOLUTION_KEYWORDS):
            report.add("R7", "warning", f"R7: problem bullet {pos + 1} already describes a solution")


def _check_hyperboles(plan: CarouselPlan, report: LintReport) -> None:
    for idx, slide in enumerate(plan.slides):
        text = slide_text(slide)
        for phrase in HYPERBOLES:
            if phrase in text:
                report.add("R8", "warning", f'R8: slide {idx + 1} contains hyperbole "{phrase}"', idx)


def lint_plan(plan: CarouselPlan) -> LintReport:
    report = LintReport()
    if not plan.slides:
        report.add("R0", "error", "R0: plan has no slides")
        return report
    _check_promise(plan, report)
    _check_cta(plan, report)
    _check_vocabulary(plan, report)
    _check_style(plan, report)
    _check_kpi_units(plan, report)
    _check_lengths(plan, report)
    _check_flow(plan, report)
    _check_hyperboles(plan, report)
    return report
