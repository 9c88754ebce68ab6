from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass

from orderflow.config import settings


SKIP_WORDS = frozenset({"skip", "passe", "suivant", "next", "non", "rien"})
CONFIRM_WORDS = ("oui", "ok", "go", "lance", "génère", "genere", "valide", "confirme")

_IMAGE_RE = re.compile(r"(\d+)\s*(?:images?|visuels?|photos?)\b", re.IGNORECASE)
_CAROUSEL_RE = re.compile(r"(\d+)\s*(?:carrousels?|carousels?)\b", re.IGNORECASE)
_CONFIRM_RE = re.compile(r"(?<!\w)(?:" + "|".join(CONFIRM_WORDS) + r")(?!\w)", re.IGNORECASE)
_DIGITS_RE = re.compile(r"\d+")
_NEGATION_RE = re.compile(r"(?<!\w)(?:non|no|pas|jamais|annule|stop)(?!\w)", re.IGNORECASE)
_REASSURANCE_RE = re.compile(r"(?<!\w)pas de (?:souci|soucis|probl[eè]me)(?!\w)", re.IGNORECASE)


@dataclass(frozen=True)
class OrderIntent:
    num_images: int
    num_carousels: int


def _clamp_count(raw: str) -> int:
    return max(0, min(int(raw), settings.max_items_per_type))


def parse_intent(text: str) -> OrderIntent | None:
    """Scan a free-text message for "N images" / "M carrousels" quantities."""
    message = str(text or "")
    images = sum(_clamp_count(match) for match in _IMAGE_RE.findall(message))
    carousels = sum(_clamp_count(match) for match in _CAROUSEL_RE.findall(message))
    images = min(images, settings.max_items_per_type)
    carousels = min(carousels, settings.max_items_per_type)
    if images == 0 and carousels == 0:
        return None
    return OrderIntent(num_images=images, num_carousels=carousels)


def is_skip(text: str) -> bool:
    return str(text or "").strip().lower() in SKIP_WORDS


def is_affirmative(text: str) -> bool:
    """Explicit go-ahead only. Any negation ("non", "ne lance pas") wins over confirm words."""
    message = str(text or "")
    if _NEGATION_RE.search(_REASSURANCE_RE.sub(" ", message)):
        return False
    return "✅" in message or bool(_CONFIRM_RE.search(message))


def extract_slide_count(text: str) -> int:
    match = _DIGITS_RE.search(str(text or ""))
    if not match:
        return settings.default_carousel_slides
    return max(settings.min_carousel_slides, min(int(match.group(0)), settings.max_carousel_slides))


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", str(text or "").strip().lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def match_option(text: str, options: tuple[str, ...]) -> str | None:
    """Return the option the reply designates, ignoring case and accents."""
    folded = _fold(text)
    if not folded:
        return None
    for option in options:
        if folded == _fold(option):
            return option
    for option in options:
        if re.search(r"(?<![\w:])" + re.escape(_fold(option)) + r"(?![\w:])", folded):
            return option
    return None
