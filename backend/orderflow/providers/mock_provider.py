import json
import re

from orderflow.providers.base import BaseLLMProvider, TopicDetection
from orderflow.services.carousel_fallback import build_fallback_plan
from orderflow.services.carousel_rules import DEFAULT_GLOBALS


_WORD_RE = re.compile(r"[^\W\d_]{3,}", re.UNICODE)
_VAGUE_MARKERS = ("truc", "chose", "n'importe", "je sais pas", "peu importe", "whatever", "bof")
_FILLER_WORDS = {"les", "des", "une", "pour", "sur", "avec", "the", "and", "for", "mon", "notre", "nos"}
_ANGLE_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("promo", ("promo", "réduction", "soldes", "offre", "remise", "black friday")),
    ("témoignage", ("témoignage", "avis client", "retour client", "testimonial")),
    ("storytelling", ("histoire", "storytelling", "coulisses", "aventure")),
    ("éducatif", ("conseils", "astuces", "tuto", "guide", "apprendre", "formation", "comment")),
]


class MockProvider(BaseLLMProvider):
    """Deterministic offline provider."""

    name = "mock"

    def generate_carousel_plan(self, *, system: str, user: str, slide_count: int) -> dict:
        try:
            request = json.loads(user)
        except ValueError:
            request = {}
        globals_ = request.get("globals") or DEFAULT_GLOBALS
        prompt = str(request.get("prompt") or "")
        return build_fallback_plan(prompt, slide_count, globals_).model_dump()

    def classify_topic(self, message: str) -> TopicDetection:
        text = message.strip()
        lowered = text.lower()
        angle = next((name for name, words in _ANGLE_KEYWORDS if any(word in lowered for word in words)), None)
        if any(marker in lowered for marker in _VAGUE_MARKERS):
            return TopicDetection(topic=text, angle=angle, confidence=0.3)
        meaningful = [word for word in _WORD_RE.findall(lowered) if word not in _FILLER_WORDS]
        if len(meaningful) >= 2:
            return TopicDetection(topic=text, angle=angle, confidence=0.85)
        return TopicDetection(topic=text, angle=angle, confidence=0.5)
