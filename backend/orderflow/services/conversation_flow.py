"""Brief collection state machine.

Every function here is pure: it receives the persisted ``(state, context)``
pair plus the user's message and returns a new pair. Inputs are never
mutated, so a failed persist or a retried turn can simply re-run the
transition from the stored record.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Callable

from pydantic import BaseModel, Field

from orderflow.config import settings
from orderflow.providers.base import ANGLES, TopicDetection
from orderflow.services.intent import extract_slide_count, is_affirmative, is_skip, match_option, parse_intent


INITIAL = "initial"
COLLECTING_IMAGE_BRIEF = "collecting_image_brief"
COLLECTING_CAROUSEL_BRIEF = "collecting_carousel_brief"
CONFIRMING = "confirming"
GENERATING = "generating"

STATES = (INITIAL, COLLECTING_IMAGE_BRIEF, COLLECTING_CAROUSEL_BRIEF, CONFIRMING, GENERATING)

WELCOME_QUICK_REPLIES = ["3 images", "2 carrousels", "1 image + 1 carrousel"]
CONFIRM_QUICK_REPLIES = ["Oui, lance !", "Non, recommencer"]
TOPIC_EXAMPLES = (
    '- "lancement de notre nouveau produit X"',
    '- "formation sur les réseaux sociaux"',
    '- "témoignages clients"',
)


class ImageBrief(BaseModel):
    objective: str | None = None
    format: str | None = None
    style: str | None = None
    skipped: list[str] = Field(default_factory=list)


class CarouselBrief(BaseModel):
    topic: str | None = None
    angle: str | None = None
    num_slides: int | None = None
    skipped: list[str] = Field(default_factory=list)


class BriefContext(BaseModel):
    num_images: int = 0
    num_carousels: int = 0
    image_briefs: list[ImageBrief] = Field(default_factory=list)
    carousel_briefs: list[CarouselBrief] = Field(default_factory=list)
    current_image_index: int = 0
    current_carousel_index: int = 0


@dataclass(frozen=True)
class QuestionSlot:
    key: str
    template: str
    required: bool
    kind: str = "text"
    options: tuple[str, ...] = ()
    quick_replies: tuple[str, ...] = ()


IMAGE_QUESTIONS: tuple[QuestionSlot, ...] = (
    QuestionSlot(
        key="objective",
        template="Image {n}/{total} : quel est l'objectif de ce visuel ?",
        required=True,
        quick_replies=("Acquisition", "Conversion", "Awareness"),
    ),
    QuestionSlot(
        key="format",
        template="Image {n}/{total} : quel format ?",
        required=True,
        kind="select",
        options=("1:1", "4:5", "9:16", "16:9"),
        quick_replies=("1:1", "4:5", "9:16", "16:9"),
    ),
    QuestionSlot(
        key="style",
        template="Image {n}/{total} : un style particulier ? (optionnel)",
        required=False,
        quick_replies=("Minimaliste", "Vibrant", "Professionnel", "Skip"),
    ),
)

CAROUSEL_QUESTIONS: tuple[QuestionSlot, ...] = (
    QuestionSlot(
        key="topic",
        template="Carrousel {n}/{total} : quel est le sujet ?",
        required=True,
        kind="topic",
    ),
    QuestionSlot(
        key="angle",
        template="Carrousel {n}/{total} : quel angle ?",
        required=True,
        kind="select",
        options=ANGLES,
        quick_replies=ANGLES,
    ),
    QuestionSlot(
        key="num_slides",
        template="Carrousel {n}/{total} : combien de slides ? (3 à 10, 5 par défaut)",
        required=True,
        kind="number",
        quick_replies=("3", "5", "7"),
    ),
)


@dataclass(frozen=True)
class Question:
    key: str
    text: str
    quick_replies: tuple[str, ...]
    slot: QuestionSlot
    item_index: int


@dataclass
class TurnResult:
    state: str
    context: BriefContext
    reply: str
    quick_replies: list[str] = field(default_factory=list)
    confirmed: bool = False
    reset: bool = False


TopicClassifier = Callable[[str], TopicDetection]


def _is_pending(brief: BaseModel, slot: QuestionSlot) -> bool:
    value = getattr(brief, slot.key)
    return (value is None or value == "") and slot.key not in brief.skipped


def _first_pending(brief: BaseModel, slots: tuple[QuestionSlot, ...]) -> QuestionSlot | None:
    return next((slot for slot in slots if _is_pending(brief, slot)), None)


def next_question(state: str, context: BriefContext) -> tuple[Question | None, BriefContext]:
    """Return the next unanswered question for the current item.

    Completed items advance the item index in the returned context. ``None``
    means the current collection phase has nothing left to ask.
    """
    ctx = context.model_copy(deep=True)
    if state == COLLECTING_IMAGE_BRIEF:
        briefs, slots, index_attr, total = ctx.image_briefs, IMAGE_QUESTIONS, "current_image_index", ctx.num_images
    elif state == COLLECTING_CAROUSEL_BRIEF:
        briefs, slots, index_attr, total = (
            ctx.carousel_briefs,
            CAROUSEL_QUESTIONS,
            "current_carousel_index",
            ctx.num_carousels,
        )
    else:
        return None, ctx

    while getattr(ctx, index_attr) < total:
        idx = getattr(ctx, index_attr)
        slot = _first_pending(briefs[idx], slots)
        if slot is not None:
            text = slot.template.format(n=idx + 1, total=total)
            return Question(key=slot.key, text=text, quick_replies=slot.quick_replies, slot=slot, item_index=idx), ctx
        setattr(ctx, index_attr, idx + 1)
    return None, ctx


def allocate_context(num_images: int, num_carousels: int) -> BriefContext:
    return BriefContext(
        num_images=num_images,
        num_carousels=num_carousels,
        image_briefs=[ImageBrief() for _ in range(num_images)],
        carousel_briefs=[CarouselBrief() for _ in range(num_carousels)],
    )


def _resolve(state: str, context: BriefContext) -> tuple[str, Question | None, BriefContext]:
    """Walk forward through phases until a question is pending or confirmation is reached."""
    ctx = context
    while True:
        if state == COLLECTING_IMAGE_BRIEF:
            question, ctx = next_question(state, ctx)
            if question is not None:
                return state, question, ctx
            state = COLLECTING_CAROUSEL_BRIEF if ctx.num_carousels > 0 else CONFIRMING
            continue
        if state == COLLECTING_CAROUSEL_BRIEF:
            question, ctx = next_question(state, ctx)
            if question is not None:
                return state, question, ctx
            state = CONFIRMING
            continue
        return state, None, ctx


def build_summary(context: BriefContext) -> str:
    lines = ["Récapitulatif de ta commande :"]
    for idx, brief in enumerate(context.image_briefs):
        parts = [f"objectif {brief.objective or '-'}", f"format {brief.format or '-'}"]
        if brief.style:
            parts.append(f"style {brief.style}")
        lines.append(f"- Image {idx + 1} : " + ", ".join(parts))
    groups = Counter(
        (brief.topic or "-", brief.angle or "-", brief.num_slides or settings.default_carousel_slides)
        for brief in context.carousel_briefs
    )
    for (topic, angle, slides), count in groups.items():
        label = "carrousel" if count == 1 else "carrousels"
        lines.append(f'- {count} {label} "{topic}" ({angle}, {slides} slides)')
    lines.append("")
    lines.append("Je lance la génération ?")
    return "\n".join(lines)


def _ask(state: str, question: Question | None, ctx: BriefContext, prefix: str = "") -> TurnResult:
    lead = f"{prefix}\n\n" if prefix else ""
    if question is not None:
        return TurnResult(state=state, context=ctx, reply=lead + question.text, quick_replies=list(question.quick_replies))
    return TurnResult(state=state, context=ctx, reply=lead + build_summary(ctx), quick_replies=list(CONFIRM_QUICK_REPLIES))


def _welcome(ctx: BriefContext, prefix: str = "") -> TurnResult:
    text = "Dis-moi ce que tu veux créer, par exemple « 3 images » ou « 2 carrousels »."
    reply = f"{prefix}\n\n{text}" if prefix else text
    return TurnResult(state=INITIAL, context=ctx, reply=reply, quick_replies=list(WELCOME_QUICK_REPLIES))


def _brief_for(state: str, ctx: BriefContext, question: Question) -> BaseModel:
    if state == COLLECTING_IMAGE_BRIEF:
        return ctx.image_briefs[question.item_index]
    return ctx.carousel_briefs[question.item_index]


def _handle_initial(message: str, ctx: BriefContext) -> TurnResult:
    intent = parse_intent(message)
    if intent is None:
        return _welcome(ctx)
    fresh = allocate_context(intent.num_images, intent.num_carousels)
    start = COLLECTING_IMAGE_BRIEF if intent.num_images > 0 else COLLECTING_CAROUSEL_BRIEF
    parts = []
    if intent.num_images:
        parts.append(f"{intent.num_images} image(s)")
    if intent.num_carousels:
        parts.append(f"{intent.num_carousels} carrousel(s)")
    state, question, fresh = _resolve(start, fresh)
    return _ask(state, question, fresh, prefix=f"Parfait, on part sur {' et '.join(parts)}.")


def _handle_collecting(
    state: str,
    message: str,
    ctx: BriefContext,
    classify_topic: TopicClassifier | None,
) -> TurnResult:
    state, question, ctx = _resolve(state, ctx)
    if question is None:
        return _ask(state, None, ctx)

    slot = question.slot
    brief = _brief_for(state, ctx, question)

    if is_skip(message):
        if slot.required:
            return _ask(state, question, ctx, prefix="Cette information est nécessaire pour continuer.")
        brief.skipped.append(slot.key)
    elif slot.kind == "topic":
        detection = classify_topic(message) if classify_topic else TopicDetection(message.strip(), None, 0.5)
        if detection.confidence < settings.topic_confidence_threshold:
            prefix = "Je n'ai pas bien compris le sujet exact. Peux-tu être plus précis ?\n\nExemples :\n" + "\n".join(
                TOPIC_EXAMPLES
            )
            return _ask(state, question, ctx, prefix=prefix)
        brief.topic = detection.topic
        if detection.angle and not brief.angle:
            brief.angle = detection.angle
    elif slot.kind == "select":
        option = match_option(message, slot.options)
        if option is None:
            prefix = "Je n'ai pas reconnu cette option. Choisis parmi : " + ", ".join(slot.options) + "."
            return _ask(state, question, ctx, prefix=prefix)
        setattr(brief, slot.key, option)
    elif slot.kind == "number":
        setattr(brief, slot.key, extract_slide_count(message))
    else:
        value = message.strip()
        if not value:
            return _ask(state, question, ctx)
        setattr(brief, slot.key, value)

    state, following, ctx = _resolve(state, ctx)
    return _ask(state, following, ctx)


def apply_turn(
    state: str,
    context: BriefContext,
    message: str,
    classify_topic: TopicClassifier | None = None,
) -> TurnResult:
    """Compute ``(state', context', reply)`` for one user message.

    ``generating`` sessions only echo; the caller supplies the order status.
    """
    ctx = context.model_copy(deep=True)
    if state == INITIAL:
        return _handle_initial(message, ctx)
    if state in {COLLECTING_IMAGE_BRIEF, COLLECTING_CAROUSEL_BRIEF}:
        return _handle_collecting(state, message, ctx, classify_topic)
    if state == CONFIRMING:
        if is_affirmative(message):
            return TurnResult(
                state=GENERATING,
                context=ctx,
                reply="C'est parti ! Je lance la génération de ta commande.",
                confirmed=True,
            )
        restart = _welcome(BriefContext(), prefix="OK, on repart de zéro.")
        restart.reset = True
        return restart
    if state == GENERATING:
        return TurnResult(state=GENERATING, context=ctx, reply="Ta commande est déjà en cours de génération.")
    raise ValueError(f"Unknown conversation state: {state}")
