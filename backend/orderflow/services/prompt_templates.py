from __future__ import annotations

import json
from typing import Any

from orderflow.services.carousel_rules import ARCHETYPE_RULES, CHAR_LIMITS, archetype_guidance


_PLAN_SHAPE = (
    '{"slides":[{"type":str,"title":str,"subtitle":str|null,"punchline":str|null,"badge":str|null,'
    '"bullets":[str],"cta_primary":str|null,"cta_secondary":str|null,"note":str|null,'
    '"kpis":[{"label":str,"delta":str}]}],"captions":[str]}'
)


def _slide_brief(position: int, slide_type: str) -> dict[str, Any]:
    rule = ARCHETYPE_RULES.get(slide_type, ARCHETYPE_RULES["variant"])
    return {
        "position": position,
        "type": slide_type,
        "guidance": archetype_guidance(slide_type),
        "fields": list(rule["fields"]),
    }


def _system_prompt(task_lines: list[str]) -> str:
    rules = [
        "## Editorial Rules",
        "- R1: restate the core promise on the solution or cta slide.",
        "- R2: hero and cta slides carry the exact same primary CTA (the canonical CTA).",
        "- R3: use at least one glossary term per slide; never use a banned word.",
        "- R4: no '!!' and no words written entirely in capitals.",
        "- R5: every KPI delta carries a unit (%, pts or ×).",
        "- R6: respect the character limits per field.",
        "- R7: problem bullets describe pains only, never fixes.",
        "- R8: no hyperboles (incroyable, extraordinaire, jamais vu...).",
        "## Character Limits",
        json.dumps({kind: {"min": low, "max": high} for kind, (low, high) in CHAR_LIMITS.items()}),
    ]
    return "\n".join(task_lines + rules)


def build_carousel_prompts(
    *,
    prompt: str,
    globals_: dict[str, Any],
    slide_types: list[str],
    brand_kit: dict[str, Any] | None = None,
) -> tuple[str, str]:
    system = _system_prompt(
        [
            "## Runtime Task (Carousel Plan)",
            "- You write the copy for a social media carousel, one object per slide.",
            "- Keep slide order and slide types exactly as requested.",
            "- Write in the language of the user prompt.",
            "- Return STRICT JSON only with shape:",
            _PLAN_SHAPE,
        ]
    )
    kit = brand_kit or {}
    payload = {
        "task": "generate",
        "prompt": prompt,
        "slide_count": len(slide_types),
        "globals": globals_,
        "brand": {key: kit.get(key) for key in ("name", "voice", "niche", "palette") if kit.get(key)},
        "slides": [_slide_brief(idx, slide_type) for idx, slide_type in enumerate(slide_types)],
    }
    return system, json.dumps(payload, ensure_ascii=False)


def build_correction_prompts(
    *,
    prompt: str,
    globals_: dict[str, Any],
    slide_types: list[str],
    violations: list[str],
    plan: dict[str, Any],
) -> tuple[str, str]:
    system = _system_prompt(
        [
            "## Runtime Task (Correct Carousel Plan)",
            "- The previous plan failed validation. Fix every listed violation.",
            "- Keep what already passes; change only what is needed.",
            "- Return STRICT JSON only with shape:",
            _PLAN_SHAPE,
        ]
    )
    payload = {
        "task": "correct",
        "prompt": prompt,
        "slide_count": len(slide_types),
        "globals": globals_,
        "slides": [_slide_brief(idx, slide_type) for idx, slide_type in enumerate(slide_types)],
        "violations": [f"{idx + 1}. {message}" for idx, message in enumerate(violations)],
        "previous_plan": plan,
    }
    return system, json.dumps(payload, ensure_ascii=False)


def build_topic_prompts(message: str) -> tuple[str, str]:
    system = (
        "You analyse marketing requests. Extract the main topic of the user's message and the suggested angle.\n"
        "- angle is one of: éducatif, promo, témoignage, storytelling, or null.\n"
        "- confidence is between 0 and 1; use a low value when the message is vague.\n"
        'Return STRICT JSON only with shape: {"topic":str,"angle":str|null,"confidence":number}'
    )
    return system, json.dumps({"task": "classify_topic", "message": message}, ensure_ascii=False)
