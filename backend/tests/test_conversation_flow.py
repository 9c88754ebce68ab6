import pytest

from orderflow.providers.base import TopicDetection
from orderflow.services.conversation_flow import (
    COLLECTING_CAROUSEL_BRIEF,
    COLLECTING_IMAGE_BRIEF,
    CONFIRM_QUICK_REPLIES,
    CONFIRMING,
    GENERATING,
    INITIAL,
    WELCOME_QUICK_REPLIES,
    BriefContext,
    allocate_context,
    apply_turn,
    build_summary,
    next_question,
)


def confident(message):
    return TopicDetection(topic=message, angle=None, confidence=0.9)


def run(state, ctx, *messages, classifier=confident):
    result = None
    for message in messages:
        result = apply_turn(state, ctx, message, classify_topic=classifier)
        state, ctx = result.state, result.context
    return result


def test_initial_without_intent_welcomes():
    result = apply_turn(INITIAL, BriefContext(), "salut")
    assert result.state == INITIAL
    assert result.quick_replies == WELCOME_QUICK_REPLIES


def test_initial_allocates_briefs_and_asks_first_image_question():
    result = apply_turn(INITIAL, BriefContext(), "3 images et 1 carrousel")
    assert result.state == COLLECTING_IMAGE_BRIEF
    assert result.context.num_images == 3
    assert result.context.num_carousels == 1
    assert len(result.context.image_briefs) == 3
    assert "Image 1/3" in result.reply


def test_carousel_only_order_starts_with_carousel_phase():
    result = apply_turn(INITIAL, BriefContext(), "2 carrousels")
    assert result.state == COLLECTING_CAROUSEL_BRIEF
    assert "Carrousel 1/2" in result.reply


def test_three_images_reach_confirmation_with_summary():
    result = run(
        INITIAL,
        BriefContext(),
        "3 images",
        "Acquisition",
        "1:1",
        "skip",
        "Conversion",
        "4:5",
        "Minimaliste",
        "Awareness",
        "9:16",
        "skip",
    )
    assert result.state == CONFIRMING
    assert result.quick_replies == CONFIRM_QUICK_REPLIES
    assert result.context.current_image_index == 3
    assert "Image 3 : objectif Awareness, format 9:16" in result.reply
    assert result.context.image_briefs[0].skipped == ["style"]
    assert result.context.image_briefs[1].style == "Minimaliste"


def test_skip_on_required_question_is_refused():
    ctx = allocate_context(1, 0)
    result = apply_turn(COLLECTING_IMAGE_BRIEF, ctx, "skip")
    assert result.state == COLLECTING_IMAGE_BRIEF
    assert "nécessaire" in result.reply
    assert result.context.image_briefs[0].objective is None
    assert result.context.image_briefs[0].skipped == []


def test_unknown_format_is_reasked_with_options():
    result = run(COLLECTING_IMAGE_BRIEF, allocate_context(1, 0), "Conversion", "carré")
    assert result.state == COLLECTING_IMAGE_BRIEF
    assert "1:1, 4:5, 9:16, 16:9" in result.reply
    assert result.context.image_briefs[0].format is None


def test_vague_topic_is_declined_with_examples():
    def vague(message):
        return TopicDetection(topic=message, angle=None, confidence=0.4)

    result = apply_turn(COLLECTING_CAROUSEL_BRIEF, allocate_context(0, 1), "un truc", classify_topic=vague)
    assert result.state == COLLECTING_CAROUSEL_BRIEF
    assert "Exemples" in result.reply
    assert result.context.carousel_briefs[0].topic is None


def test_detected_angle_prefills_brief():
    def promo(message):
        return TopicDetection(topic="soldes d'hiver", angle="promo", confidence=0.9)

    result = apply_turn(COLLECTING_CAROUSEL_BRIEF, allocate_context(0, 1), "nos soldes d'hiver", classify_topic=promo)
    brief = result.context.carousel_briefs[0]
    assert brief.topic == "soldes d'hiver"
    assert brief.angle == "promo"
    question, _ = next_question(result.state, result.context)
    assert question.key == "num_slides"


def test_slide_count_is_clamped():
    result = run(COLLECTING_CAROUSEL_BRIEF, allocate_context(0, 1), "lancement produit X", "promo", "12 slides")
    assert result.state == CONFIRMING
    assert result.context.carousel_briefs[0].num_slides == 10


def test_summary_groups_identical_carousels():
    result = run(
        COLLECTING_CAROUSEL_BRIEF,
        allocate_context(0, 2),
        "lancement produit X",
        "promo",
        "5",
        "lancement produit X",
        "promo",
        "5",
    )
    assert result.state == CONFIRMING
    assert '2 carrousels "lancement produit X" (promo, 5 slides)' in result.reply


def test_input_context_is_not_mutated():
    ctx = allocate_context(1, 0)
    apply_turn(COLLECTING_IMAGE_BRIEF, ctx, "Acquisition")
    assert ctx.image_briefs[0].objective is None


def test_confirmation_moves_to_generating():
    ctx = allocate_context(1, 0)
    result = apply_turn(CONFIRMING, ctx, "Oui, lance !")
    assert result.state == GENERATING
    assert result.confirmed


def test_anything_else_during_confirmation_restarts():
    ctx = allocate_context(2, 1)
    result = apply_turn(CONFIRMING, ctx, "Non, recommencer")
    assert result.state == INITIAL
    assert result.reset
    assert result.context == BriefContext()


def test_negated_confirm_word_restarts():
    ctx = allocate_context(1, 0)
    result = apply_turn(CONFIRMING, ctx, "Non, ne lance pas")
    assert result.state == INITIAL
    assert not result.confirmed


def test_generating_only_echoes():
    ctx = allocate_context(1, 0)
    result = apply_turn(GENERATING, ctx, "3 images")
    assert result.state == GENERATING
    assert not result.confirmed


def test_unknown_state_raises():
    with pytest.raises(ValueError):
        apply_turn("archived", BriefContext(), "hello")


def test_build_summary_lists_each_image():
    ctx = allocate_context(2, 0)
    ctx.image_briefs[0].objective = "Acquisition"
    ctx.image_briefs[0].format = "1:1"
    text = build_summary(ctx)
    assert "Image 1 : objectif Acquisition, format 1:1" in text
    assert "Image 2 : objectif -, format -" in text
