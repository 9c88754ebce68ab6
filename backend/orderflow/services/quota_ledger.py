from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from orderflow.config import settings
from orderflow.models import Brand, QuotaCounter, UsageEvent, UserRole


logger = logging.getLogger("orderflow.quota")


class BrandNotFound(LookupError):
    pass


class QuotaForbidden(PermissionError):
    pass


class InsufficientWoofs(Exception):
    def __init__(self, *, remaining: int, required: int):
        super().__init__(f"Insufficient Woofs: {remaining} remaining, {required} required")
        self.remaining = remaining
        self.required = required


@dataclass
class ConsumeResult:
    remaining_woofs: int
    woofs_limit: int
    woofs_used: int
    threshold_80: bool

    def as_dict(self) -> dict[str, Any]:
        return {"ok": True, **asdict(self)}


def current_period(now: datetime | None = None) -> int:
    moment = now or datetime.utcnow()
    return moment.year * 100 + moment.month


def woofs_limit_for(brand: Brand) -> int:
    if brand.quota_woofs is None:
        return settings.default_woofs_limit
    return int(brand.quota_woofs)


def woofs_cost_for(kind: str) -> int:
    costs = {
        "image": settings.woofs_cost_image,
        "render_image": settings.woofs_cost_image,
        "carousel": settings.woofs_cost_carousel,
        "render_carousel": settings.woofs_cost_carousel,
    }
    if kind not in costs:
        raise ValueError(f"Unknown Woofs cost kind: {kind}")
    return costs[kind]


def has_unlimited_quota(db: Session, user_id: str) -> bool:
    roles = set(db.scalars(select(UserRole.role).where(UserRole.user_id == user_id)).all())
    return bool(roles & set(settings.unlimited_quota_roles))


def read_used(db: Session, brand_id: str, period: int) -> int:
    used = db.scalar(
        select(QuotaCounter.woofs_used).where(
            QuotaCounter.brand_id == brand_id,
            QuotaCounter.period_yyyymm == period,
        )
    )
    return int(used or 0)


def _insert_for(db: Session):
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


def _apply_increment(db: Session, *, brand_id: str, period: int, cost: int, limit: int | None) -> int | None:
    """Increment the period counter in one statement and return the new total.

    With a limit, the datastore re-checks ``used + cost <= limit`` inside the
    upsert itself. ``None`` means the increment was refused.
    """
    if limit is not None and cost > limit:
        return None
    insert = _insert_for(db)
    stmt = insert(QuotaCounter).values(brand_id=brand_id, period_yyyymm=period, woofs_used=cost)
    where = None if limit is None else (QuotaCounter.woofs_used + cost <= limit)
    stmt = stmt.on_conflict_do_update(
        index_elements=[QuotaCounter.brand_id, QuotaCounter.period_yyyymm],
        set_={"woofs_used": QuotaCounter.woofs_used + cost},
        where=where,
    ).returning(QuotaCounter.woofs_used)
    new_used = db.execute(stmt).scalar_one_or_none()
    return None if new_used is None else int(new_used)


def load_owned_brand(db: Session, *, user_id: str, brand_id: str) -> Brand:
    brand = db.get(Brand, brand_id)
    if not brand:
        raise BrandNotFound(f"Brand not found: {brand_id}")
    if brand.user_id != user_id:
        logger.warning("quota_forbidden user=%s brand=%s owner=%s", user_id, brand_id, brand.user_id)
        raise QuotaForbidden(f"User {user_id} does not own brand {brand_id}")
    return brand


def consume_woofs(
    db: Session,
    *,
    user_id: str,
    brand_id: str,
    cost: int,
    reason: str,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> ConsumeResult:
    """Check and consume ``cost`` Woofs from the brand's monthly balance.

    Ownership is verified before any quota logic. Commits the session on
    success, so any pending caller changes are persisted together with the
    counter increment. Raises ``InsufficientWoofs`` without consuming anything.
    """
    if cost < 0:
        raise ValueError("cost must be >= 0")

    brand = load_owned_brand(db, user_id=user_id, brand_id=brand_id)
    limit = woofs_limit_for(brand)
    period = current_period(now)
    used_before = read_used(db, brand_id, period)
    unlimited = has_unlimited_quota(db, user_id)

    if not unlimited and used_before + cost > limit:
        logger.info(
            "quota_rejected brand=%s period=%d used=%d cost=%d limit=%d",
            brand_id,
            period,
            used_before,
            cost,
            limit,
        )
        raise InsufficientWoofs(remaining=max(0, limit - used_before), required=cost)

    new_used = _apply_increment(
        db,
        brand_id=brand_id,
        period=period,
        cost=cost,
        limit=None if unlimited else limit,
    )
    if new_used is None:
        # A concurrent spender consumed the balance between the read and the increment.
        current = read_used(db, brand_id, period)
        logger.info(
            "quota_rejected_concurrent brand=%s period=%d used=%d cost=%d limit=%d",
            brand_id,
            period,
            current,
            cost,
            limit,
        )
        raise InsufficientWoofs(remaining=max(0, limit - current), required=cost)

    db.add(
        UsageEvent(
            brand_id=brand_id,
            user_id=user_id,
            kind=reason,
            cost_woofs=cost,
            meta_json=json.dumps({"cost_woofs": cost, **(metadata or {})}, ensure_ascii=False, default=str),
        )
    )
    db.commit()

    previous = new_used - cost
    threshold_mark = limit * settings.woofs_threshold_ratio
    crossed = limit > 0 and previous < threshold_mark <= new_used
    logger.info(
        "quota_consumed brand=%s period=%d cost=%d used=%d limit=%d unlimited=%s threshold_crossed=%s",
        brand_id,
        period,
        cost,
        new_used,
        limit,
        unlimited,
        crossed,
    )
    return ConsumeResult(
        remaining_woofs=max(0, limit - new_used),
        woofs_limit=limit,
        woofs_used=new_used,
        threshold_80=crossed,
    )


def get_quota(db: Session, *, user_id: str, brand_id: str, now: datetime | None = None) -> dict[str, Any]:
    brand = load_owned_brand(db, user_id=user_id, brand_id=brand_id)
    limit = woofs_limit_for(brand)
    period = current_period(now)
    used = read_used(db, brand_id, period)
    return {
        "brand_id": brand_id,
        "period_yyyymm": period,
        "woofs_limit": limit,
        "woofs_used": used,
        "remaining_woofs": max(0, limit - used),
    }
