from dataclasses import dataclass


@dataclass
class TopicDetection:
    topic: str
    angle: str | None
    confidence: float


ANGLES = ("éducatif", "promo", "témoignage", "storytelling")


def coerce_topic_detection(payload: dict, message: str) -> TopicDetection:
    topic = str(payload.get("topic") or "").strip() or message.strip()
    angle = payload.get("angle")
    angle = angle if angle in ANGLES else None
    try:
        confidence = float(payload.get("confidence"))
    except (TypeError, ValueError):
        confidence = 0.5
    return TopicDetection(topic=topic, angle=angle, confidence=max(0.0, min(1.0, confidence)))


class BaseLLMProvider:
    name = "base"
    last_warnings: list[str]

    def __init__(self):
        self.last_warnings = []

    def reset_warnings(self) -> None:
        self.last_warnings = []

    def generate_carousel_plan(self, *, system: str, user: str, slide_count: int) -> dict:
        """Return the raw plan payload. Failures raise; callers count them as a spent attempt."""
        raise NotImplementedError

    def classify_topic(self, message: str) -> TopicDetection:
        return TopicDetection(topic=message.strip(), angle=None, confidence=0.5)
