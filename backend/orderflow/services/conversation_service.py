from __future__ import annotations

import json
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Iterable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from orderflow.config import settings
from orderflow.models import ConversationSession, JobQueueEntry, Order
from orderflow.providers.base import TopicDetection
from orderflow.providers.factory import get_provider
from orderflow.providers.mock_provider import MockProvider
from orderflow.services import job_queue
from orderflow.services.conversation_flow import (
    CONFIRM_QUICK_REPLIES,
    CONFIRMING,
    GENERATING,
    INITIAL,
    BriefContext,
    TopicClassifier,
    apply_turn,
)
from orderflow.services.job_trace import decode_list, decode_payload
from orderflow.services.order_builder import build_order
from orderflow.services.quota_ledger import load_owned_brand


logger = logging.getLogger("orderflow.conversation")


class ConversationNotFound(LookupError):
    pass


class ConversationConflict(RuntimeError):
    pass


def _default_classifier() -> TopicClassifier:
    provider = get_provider()

    def classify(message: str) -> TopicDetection:
        try:
            return provider.classify_topic(message)
        except Exception as exc:
            logger.warning("topic_classify_failed provider=%s reason=%s", provider.name, exc)
            return MockProvider().classify_topic(message)

    return classify


def load_session(db: Session, *, user_id: str, conversation_id: str) -> ConversationSession:
    session = db.get(ConversationSession, conversation_id)
    if not session or session.user_id != user_id:
        raise ConversationNotFound(f"Conversation not found: {conversation_id}")
    return session


def load_or_create_session(
    db: Session,
    *,
    user_id: str,
    conversation_id: str | None = None,
    brand_id: str | None = None,
) -> ConversationSession:
    if brand_id:
        load_owned_brand(db, user_id=user_id, brand_id=brand_id)

    if conversation_id:
        session = load_session(db, user_id=user_id, conversation_id=conversation_id)
        if brand_id and session.brand_id != brand_id and session.state != GENERATING:
            session.brand_id = brand_id
        return session

    session = ConversationSession(
        id=str(uuid4()),
        user_id=user_id,
        brand_id=brand_id,
        state=INITIAL,
        context_json=BriefContext().model_dump_json(),
        messages_json="[]",
    )
    db.add(session)
    return session


def _append_messages(session: ConversationSession, *entries: tuple[str, str]) -> None:
    history = decode_list(session.messages_json)
    now = datetime.utcnow().isoformat()
    history.extend({"role": role, "content": content, "ts": now} for role, content in entries)
    cap = max(1, settings.session_message_history)
    session.messages_json = json.dumps(history[-cap:], ensure_ascii=False)


def _status_echo(db: Session, order_id: str | None) -> str:
    order = db.get(Order, order_id) if order_id else None
    if not order:
        return "Ta commande est déjà en cours de génération."
    counts = Counter(
        db.scalars(select(JobQueueEntry.status).where(JobQueueEntry.order_id == order.id)).all()
    )
    detail = ", ".join(f"{status}: {total}" for status, total in sorted(counts.items())) or "aucun job"
    return f"Commande {order.id} ({order.status}). Jobs : {detail}."


def _commit(db: Session, session_id: str) -> None:
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        logger.info("conversation_conflict session=%s", session_id)
        raise ConversationConflict(f"Conversation {session_id} was updated concurrently") from exc


def handle_chat_turn(
    db: Session,
    *,
    user_id: str,
    message: str,
    conversation_id: str | None = None,
    brand_id: str | None = None,
    classify_topic: TopicClassifier | None = None,
    dispatch: Callable[[Iterable[str]], int] | None = None,
) -> dict[str, Any]:
    """Run one chat turn against the persisted session.

    The transition is computed from the stored ``(state, context)`` and
    written back in one versioned commit. A concurrent turn on the same
    session fails with ``ConversationConflict`` instead of double-advancing.
    """
    session = load_or_create_session(db, user_id=user_id, conversation_id=conversation_id, brand_id=brand_id)
    text = str(message or "").strip()
    previous_state = session.state
    context = BriefContext.model_validate(decode_payload(session.context_json))

    outcome = apply_turn(session.state, context, text, classify_topic=classify_topic or _default_classifier())
    reply = outcome.reply
    quick_replies = outcome.quick_replies
    created: list[str] = []

    if session.state == GENERATING:
        reply = _status_echo(db, session.order_id)
    elif outcome.confirmed and not session.brand_id:
        reply = "Choisis d'abord une marque pour lancer la génération, puis confirme à nouveau."
        quick_replies = list(CONFIRM_QUICK_REPLIES)
        session.context_json = outcome.context.model_dump_json()
        session.state = CONFIRMING
    elif outcome.confirmed:
        try:
            order, jobs, created = build_order(db, session, outcome.context)
        except StaleDataError as exc:
            db.rollback()
            logger.info("conversation_conflict session=%s stage=order", session.id)
            raise ConversationConflict(f"Conversation {session.id} was updated concurrently") from exc
        reply = f"{outcome.reply} Commande {order.id} : {len(jobs)} job(s) en file."
    else:
        session.state = outcome.state
        session.context_json = outcome.context.model_dump_json()

    _append_messages(session, ("user", text), ("assistant", reply))
    session.updated_at = datetime.utcnow()
    db.add(session)
    _commit(db, session.id)

    logger.info(
        "chat_turn session=%s state=%s->%s reset=%s confirmed=%s order=%s",
        session.id,
        previous_state,
        session.state,
        outcome.reset,
        outcome.confirmed,
        session.order_id,
    )

    if created:
        try:
            (dispatch or job_queue.dispatch_jobs)(created)
        except Exception as exc:
            logger.warning("job_dispatch_failed order=%s jobs=%d reason=%s", session.order_id, len(created), exc)

    return {
        "response": reply,
        "quick_replies": quick_replies,
        "conversation_id": session.id,
        "state": session.state,
        "context": decode_payload(session.context_json),
        "order_id": session.order_id,
    }


def conversation_snapshot(session: ConversationSession) -> dict[str, Any]:
    return {
        "id": session.id,
        "state": session.state,
        "brand_id": session.brand_id,
        "order_id": session.order_id,
        "context": decode_payload(session.context_json),
        "messages": decode_list(session.messages_json),
        "updated_at": session.updated_at,
    }
