from sqlalchemy import func, select

from orderflow.models import ConversationSession, JobQueueEntry, Order, OrderItem
from orderflow.services.conversation_flow import CONFIRMING, GENERATING, allocate_context
from orderflow.services.job_payloads import RenderCarouselPayload, RenderImagePayload, parse_job_payload
from orderflow.services.job_trace import decode_payload
from orderflow.services.order_builder import build_order, materialize_jobs

from conftest import USER_ID


def confirmed_session(db, brand, images=2, carousels=1):
    ctx = allocate_context(images, carousels)
    for idx, brief in enumerate(ctx.image_briefs):
        brief.objective = f"Objectif {idx + 1}"
        brief.format = "1:1"
    for brief in ctx.carousel_briefs:
        brief.topic = "lancement produit X"
        brief.angle = "promo"
        brief.num_slides = 5
    session = ConversationSession(
        id="session-1",
        user_id=USER_ID,
        brand_id=brand.id,
        state=CONFIRMING,
        context_json=ctx.model_dump_json(),
    )
    db.add(session)
    db.commit()
    return session, ctx


def test_build_order_materializes_one_job_per_unit(db, brand):
    session, ctx = confirmed_session(db, brand)
    order, jobs, created = build_order(db, session, ctx)

    assert session.order_id == order.id
    assert session.state == GENERATING
    assert len(created) == 3
    assert [(row.type, row.unit_index) for row in jobs] == [
        ("render_image", 0),
        ("render_image", 1),
        ("render_carousel", 0),
    ]
    assert {row.type: row.woofs_cost for row in jobs} == {"render_image": 1, "render_carousel": 10}
    assert all(row.status == "queued" for row in jobs)

    items = db.scalars(select(OrderItem).where(OrderItem.order_id == order.id)).all()
    assert sorted(row.type for row in items) == ["carousel", "image"]
    image_item = next(row for row in items if row.type == "image")
    assert decode_payload(image_item.brief_json)["count"] == 2


def test_job_payloads_are_self_contained(db, brand):
    session, ctx = confirmed_session(db, brand)
    _, jobs, _ = build_order(db, session, ctx)

    image = parse_job_payload(decode_payload(jobs[1].payload_json))
    assert isinstance(image, RenderImagePayload)
    assert image.brief.objective == "Objectif 2"
    assert image.unit_index == 1

    carousel = parse_job_payload(decode_payload(jobs[2].payload_json))
    assert isinstance(carousel, RenderCarouselPayload)
    assert carousel.brief.topic == "lancement produit X"
    assert carousel.brand_kit["name"] == "Alfie Demo"
    assert carousel.woofs_cost == 10


def test_build_order_is_idempotent(db, brand):
    session, ctx = confirmed_session(db, brand)
    order, _, _ = build_order(db, session, ctx)

    again, jobs, created = build_order(db, session, ctx)
    assert again.id == order.id
    assert created == []
    assert len(jobs) == 3
    assert db.scalar(select(func.count()).select_from(Order)) == 1
    assert db.scalar(select(func.count()).select_from(OrderItem)) == 2


def test_materialize_only_inserts_missing_units(db, brand):
    session, ctx = confirmed_session(db, brand)
    order, jobs, _ = build_order(db, session, ctx)

    db.delete(jobs[1])
    db.commit()

    jobs, created = materialize_jobs(db, order)
    assert len(created) == 1
    assert len(jobs) == 3
    recreated = db.get(JobQueueEntry, created[0])
    assert (recreated.type, recreated.unit_index) == ("render_image", 1)

    _, created = materialize_jobs(db, order)
    assert created == []


def test_materialize_endpoint_is_idempotent(api_client, db, brand, dispatched):
    session, ctx = confirmed_session(db, brand, images=1, carousels=0)
    order, _, _ = build_order(db, session, ctx)

    response = api_client.post(f"/api/orders/{order.id}/jobs")
    assert response.status_code == 200
    body = response.json()
    assert body["created"] == 0
    assert body["total"] == 1
    assert dispatched == []


def test_order_endpoint_hides_foreign_orders(api_client, db, brand):
    session, ctx = confirmed_session(db, brand, images=1, carousels=0)
    order, _, _ = build_order(db, session, ctx)
    response = api_client.get(f"/api/orders/{order.id}", headers={"X-User-Id": "intruder"})
    assert response.status_code == 404
