from __future__ import annotations

import json
import logging
from datetime import datetime
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orderflow.config import settings
from orderflow.models import Brand, ConversationSession, JobQueueEntry, Order, OrderItem
from orderflow.services.conversation_flow import GENERATING, BriefContext
from orderflow.services.job_payloads import RENDER_CAROUSEL, RENDER_IMAGE, RenderCarouselPayload, RenderImagePayload
from orderflow.services.job_trace import decode_list, decode_payload
from orderflow.services.quota_ledger import woofs_cost_for


logger = logging.getLogger("orderflow.jobs")

ITEM_TYPES = {"image": RENDER_IMAGE, "carousel": RENDER_CAROUSEL}


def campaign_name_for(moment: datetime | None = None) -> str:
    return (moment or datetime.utcnow()).strftime("Campaign_%Y%m%d_%H%M%S")


def _item_briefs(context: BriefContext) -> dict[str, dict]:
    briefs: dict[str, dict] = {}
    if context.num_images > 0:
        briefs["image"] = {
            "count": context.num_images,
            "briefs": [row.model_dump() for row in context.image_briefs],
        }
    if context.num_carousels > 0:
        briefs["carousel"] = {
            "count": context.num_carousels,
            "briefs": [row.model_dump() for row in context.carousel_briefs],
        }
    return briefs


def ensure_items(db: Session, order: Order, context: BriefContext) -> list[OrderItem]:
    """Insert the per-type items missing from the order. Does not commit."""
    existing = {row.type: row for row in db.scalars(select(OrderItem).where(OrderItem.order_id == order.id)).all()}
    for sequence, (item_type, brief) in enumerate(_item_briefs(context).items()):
        if item_type in existing:
            continue
        row = OrderItem(
            id=str(uuid4()),
            order_id=order.id,
            type=item_type,
            sequence_number=sequence,
            brief_json=json.dumps(brief, ensure_ascii=False),
            status="pending",
        )
        db.add(row)
        existing[item_type] = row
    return list(existing.values())


def create_order_for_session(db: Session, session: ConversationSession, context: BriefContext) -> Order:
    """Create the order and link it to the session in a single commit.

    The session link is the dedup boundary: a session that already carries an
    order gets that order back unchanged. The commit goes through the session's
    version check, so a concurrent confirmation loses with ``StaleDataError``.
    """
    if session.order_id:
        order = db.get(Order, session.order_id)
        if order:
            return order

    order = Order(
        id=str(uuid4()),
        user_id=session.user_id,
        brand_id=session.brand_id,
        campaign_name=campaign_name_for(),
        context_json=context.model_dump_json(),
        status="pending",
    )
    db.add(order)
    db.flush()
    ensure_items(db, order, context)
    session.order_id = order.id
    session.state = GENERATING
    session.updated_at = datetime.utcnow()
    db.add(session)
    db.commit()
    logger.info(
        "order_created order=%s session=%s images=%d carousels=%d",
        order.id,
        session.id,
        context.num_images,
        context.num_carousels,
    )
    return order


def _brand_kit(db: Session, brand_id: str | None) -> dict:
    brand = db.get(Brand, brand_id) if brand_id else None
    if not brand:
        return {}
    return {
        "name": brand.name,
        "palette": decode_list(brand.palette_json),
        "voice": brand.voice,
        "niche": brand.niche,
    }


def desired_units(context: BriefContext) -> list[tuple[str, int]]:
    units = [(RENDER_IMAGE, idx) for idx in range(context.num_images)]
    units.extend((RENDER_CAROUSEL, idx) for idx in range(context.num_carousels))
    return units


def _list_jobs(db: Session, order_id: str) -> list[JobQueueEntry]:
    return list(
        db.scalars(
            select(JobQueueEntry)
            .where(JobQueueEntry.order_id == order_id)
            .order_by(JobQueueEntry.type.desc(), JobQueueEntry.unit_index.asc())
        ).all()
    )


def materialize_jobs(db: Session, order: Order) -> tuple[list[JobQueueEntry], list[str]]:
    """Insert one queued job per requested unit that does not have one yet.

    Returns every job of the order plus the ids created by this call. Safe to
    call any number of times.
    """
    context = BriefContext.model_validate(decode_payload(order.context_json))
    items = {row.type: row for row in ensure_items(db, order, context)}
    db.flush()
    existing = {(row.type, row.unit_index) for row in _list_jobs(db, order.id)}
    brand_kit = _brand_kit(db, order.brand_id)

    created: list[str] = []
    for job_type, unit_index in desired_units(context):
        if (job_type, unit_index) in existing:
            continue
        cost = woofs_cost_for(job_type)
        common = {
            "user_id": order.user_id,
            "brand_id": order.brand_id,
            "order_id": order.id,
            "unit_index": unit_index,
            "campaign_name": order.campaign_name,
            "woofs_cost": cost,
        }
        if job_type == RENDER_IMAGE:
            payload = RenderImagePayload(
                order_item_id=items["image"].id,
                brief=context.image_briefs[unit_index],
                **common,
            )
        else:
            payload = RenderCarouselPayload(
                order_item_id=items["carousel"].id,
                brief=context.carousel_briefs[unit_index],
                brand_kit=brand_kit,
                **common,
            )
        job = JobQueueEntry(
            id=str(uuid4()),
            user_id=order.user_id,
            brand_id=order.brand_id,
            order_id=order.id,
            order_item_id=payload.order_item_id,
            type=job_type,
            unit_index=unit_index,
            status="queued",
            payload_json=payload.model_dump_json(),
            max_retries=settings.max_job_retries,
            woofs_cost=cost,
        )
        db.add(job)
        created.append(job.id)

    try:
        db.commit()
    except IntegrityError:
        # A concurrent materialization inserted the same units first.
        db.rollback()
        logger.info("job_materialize_conflict order=%s", order.id)
        created = []

    jobs = _list_jobs(db, order.id)
    if created:
        logger.info("jobs_materialized order=%s created=%d total=%d", order.id, len(created), len(jobs))
    return jobs, created


def build_order(db: Session, session: ConversationSession, context: BriefContext) -> tuple[Order, list[JobQueueEntry], list[str]]:
    order = create_order_for_session(db, session, context)
    jobs, created = materialize_jobs(db, order)
    return order, jobs, created
