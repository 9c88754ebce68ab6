from __future__ import annotations

import re
from typing import Any

from orderflow.schemas import CarouselPlan, Kpi, PlanGlobals, Slide
from orderflow.services.carousel_rules import CHAR_LIMITS, DEFAULT_GLOBALS


def _fit(text: str, kind: str) -> str:
    limit = CHAR_LIMITS[kind][1]
    return text if len(text) <= limit else text[:limit].rstrip()


def sanitize(text: str, banned: list[str]) -> str:
    cleaned = str(text or "")
    for word in banned:
        if word:
            cleaned = re.sub(re.escape(word), "", cleaned, flags=re.IGNORECASE)
    return re.sub(r"\s{2,}", " ", cleaned).strip(" ,.;:")


def default_captions(prompt: str, slide_count: int) -> list[str]:
    return [f"Post {idx + 1}: {prompt[:80]}... #coherence" for idx in range(min(slide_count, 3))]


def _closing_note(banned: list[str]) -> str:
    return sanitize(
        "Accès anticipé disponible pour les studios et équipes marketing qui veulent des workflows plus rapides.",
        banned,
    )


def _five_slides(g: PlanGlobals) -> list[Slide]:
    return [
        Slide(
            type="hero",
            title="Créez des visuels cohérents",
            subtitle="L'IA qui garde vos créations on-brand",
            punchline="Cohérence de marque garantie, sans effort",
            badge="Cohérence 95/100",
            cta_primary=g.cta,
        ),
        Slide(
            type="problem",
            title="Le défi de la cohérence",
            bullets=[
                "Visuels incohérents d'un canal à l'autre",
                "Validations manuelles sans fin",
                "Marque diluée dans les variantes",
            ],
        ),
        Slide(
            type="solution",
            title=_fit(g.promise, "title"),
            bullets=[
                "Garde-fous IA pour la cohérence de marque",
                "Variantes générées en quelques minutes",
                "Workflows de validation accélérés",
            ],
        ),
        Slide(
            type="impact",
            title="Résultats mesurables sur vos workflows",
            kpis=[
                Kpi(label="Cohérence de marque", delta="+92%"),
                Kpi(label="Temps de production", delta="-60%"),
                Kpi(label="Variantes livrées", delta="×3"),
            ],
        ),
        Slide(
            type="cta",
            title="Prêt à essayer ?",
            subtitle="Rejoignez les équipes créatives exigeantes",
            cta_primary=g.cta,
            cta_secondary="En savoir plus",
            note=_closing_note(g.banned),
        ),
    ]


def _three_slides(g: PlanGlobals) -> list[Slide]:
    return [
        Slide(
            type="hero",
            title="Des visuels cohérents, à chaque post",
            subtitle=_fit(g.promise, "subtitle"),
            cta_primary=g.cta,
        ),
        Slide(
            type="solution",
            title=_fit(g.promise, "title"),
            bullets=[
                "Cohérence de marque garantie",
                "Variantes créées en quelques minutes",
                "Workflows de validation simplifiés",
            ],
        ),
        Slide(
            type="cta",
            title="Passez à l'action dès aujourd'hui",
            cta_primary=g.cta,
            note=_closing_note(g.banned),
        ),
    ]


def _variant_slides(g: PlanGlobals, prompt: str, slide_count: int) -> list[Slide]:
    subject = sanitize(prompt, g.banned) or "Votre prochain carrousel"
    slides: list[Slide] = []
    for idx in range(slide_count):
        title = "Créez avec cohérence de marque" if idx == 0 else f"Visuel {idx + 1} : {subject}"
        slides.append(
            Slide(
                type="variant",
                title=_fit(title, "title"),
                subtitle=_fit(g.promise, "subtitle"),
            )
        )
    return slides


def build_fallback_plan(prompt: str, slide_count: int, globals_: dict[str, Any] | None = None) -> CarouselPlan:
    """Hand-authored plan that satisfies every hard lint rule for the given globals."""
    g = PlanGlobals(**(globals_ or DEFAULT_GLOBALS))
    if slide_count == 5:
        slides = _five_slides(g)
    elif slide_count == 3:
        slides = _three_slides(g)
    else:
        slides = _variant_slides(g, prompt, slide_count)
    if len(g.banned) > len(DEFAULT_GLOBALS["banned"]):
        slides = [_scrub(row, g.banned) for row in slides]
    return CarouselPlan(globals=g, slides=slides, captions=default_captions(prompt, slide_count))


def _scrub(slide: Slide, banned: list[str]) -> Slide:
    # Brand-specific banned words can collide with the static copy.
    return slide.model_copy(
        update={
            "title": sanitize(slide.title, banned),
            "subtitle": sanitize(slide.subtitle, banned) if slide.subtitle else slide.subtitle,
            "punchline": sanitize(slide.punchline, banned) if slide.punchline else slide.punchline,
            "bullets": [sanitize(row, banned) for row in slide.bullets],
            "kpis": [Kpi(label=sanitize(row.label, banned), delta=row.delta) for row in slide.kpis],
        }
    )
