from __future__ import annotations

from typing import Any

# Character limits per text field kind, (min, max).
CHAR_LIMITS: dict[str, tuple[int, int]] = {
    "title": (15, 60),
    "subtitle": (25, 100),
    "punchline": (25, 80),
    "bullet": (15, 60),
    "kpi_label": (8, 30),
    "kpi_delta": (2, 12),
    "cta": (10, 30),
    "note": (80, 180),
}

DEFAULT_GLOBALS: dict[str, Any] = {
    "audience": "Directeurs Marketing & studios internes",
    "promise": "Des visuels toujours on-brand, plus vite.",
    "cta": "Essayer Alfie",
    "terminology": ["cohérence de marque", "variantes", "workflows"],
    "banned": ["révolutionnaire", "magique", "illimité"],
}

HYPERBOLES: tuple[str, ...] = ("incroyable", "extraordinaire", "unique au monde", "jamais vu", "absolument")
SOLUTION_KEYWORDS: tuple[str, ...] = ("solution", "résoudre", "grâce à")
KPI_UNIT_TOKENS: tuple[str, ...] = ("%", "pts", "×")

SLIDE_TYPES: tuple[str, ...] = ("hero", "problem", "solution", "impact", "cta", "variant")

ARCHETYPE_RULES: dict[str, dict[str, Any]] = {
    "hero": {
        "guidance": "Open with the hook: a clear title, a subtitle carrying the promise, and the primary CTA.",
        "fields": ["title", "subtitle", "punchline", "badge", "cta_primary"],
    },
    "problem": {
        "guidance": "Name the pain in 2-4 short bullets. Describe symptoms only, never the fix.",
        "fields": ["title", "bullets"],
    },
    "solution": {
        "guidance": "Restate the core promise and answer each problem bullet with one solution bullet.",
        "fields": ["title", "bullets"],
    },
    "impact": {
        "guidance": "Show 2-3 KPIs; every delta carries a unit (%, pts or ×).",
        "fields": ["title", "kpis"],
    },
    "cta": {
        "guidance": "Close with the canonical CTA, identical to the hero slide, plus a reassuring note.",
        "fields": ["title", "subtitle", "cta_primary", "cta_secondary", "note"],
    },
    "variant": {
        "guidance": "One self-contained visual message per slide, consistent with the shared promise.",
        "fields": ["title", "subtitle", "punchline"],
    },
}


def archetypes_for_count(slide_count: int) -> list[str]:
    if slide_count == 5:
        return ["hero", "problem", "solution", "impact", "cta"]
    if slide_count == 3:
        return ["hero", "solution", "cta"]
    return ["variant"] * max(0, slide_count)


def archetype_guidance(slide_type: str) -> str:
    return str(ARCHETYPE_RULES.get(slide_type, ARCHETYPE_RULES["variant"])["guidance"])


def char_limit(kind: str) -> tuple[int, int]:
    return CHAR_LIMITS[kind]


def _merge_terms(defaults: list[str], extra: Any) -> list[str]:
    merged = list(defaults)
    if isinstance(extra, list):
        for term in extra:
            value = str(term or "").strip()
            if value and value.lower() not in {row.lower() for row in merged}:
                merged.append(value)
    return merged


def merge_globals(brand_kit: dict[str, Any] | None) -> dict[str, Any]:
    """Seed the fixed defaults with brand overrides.

    Scalar fields (audience, promise, cta) are replaced when the brand sets
    them; terminology and banned lists extend the defaults.
    """
    merged = {
        **DEFAULT_GLOBALS,
        "terminology": list(DEFAULT_GLOBALS["terminology"]),
        "banned": list(DEFAULT_GLOBALS["banned"]),
    }
    kit = brand_kit or {}
    overrides = kit.get("globals") if isinstance(kit.get("globals"), dict) else kit
    for key in ("audience", "promise", "cta"):
        value = str(overrides.get(key) or "").strip()
        if value:
            merged[key] = value
    merged["cta"] = merged["cta"][: CHAR_LIMITS["cta"][1]].rstrip()
    merged["terminology"] = _merge_terms(merged["terminology"], overrides.get("terminology"))
    merged["banned"] = _merge_terms(merged["banned"], overrides.get("banned"))
    return merged
