from sqlalchemy import func, select, update

import pytest

from orderflow.config import settings
from orderflow.models import ConversationSession, JobQueueEntry, Order
from orderflow.services.conversation_service import ConversationConflict, handle_chat_turn

from conftest import USER_ID


def chat(client, message, conversation_id=None, brand_id=None):
    response = client.post(
        "/api/chat",
        json={"message": message, "conversation_id": conversation_id, "brand_id": brand_id},
    )
    assert response.status_code == 200, response.text
    return response.json()


def test_chat_requires_user_header(api_client):
    response = api_client.post("/api/chat", json={"message": "3 images"}, headers={"X-User-Id": ""})
    assert response.status_code == 401


def test_single_image_order_end_to_end(api_client, brand, dispatched, db):
    first = chat(api_client, "1 image", brand_id=brand.id)
    conversation_id = first["conversation_id"]
    assert first["state"] == "collecting_image_brief"

    chat(api_client, "Conversion", conversation_id)
    chat(api_client, "4:5", conversation_id)
    recap = chat(api_client, "skip", conversation_id)
    assert recap["state"] == "confirming"
    assert "Récapitulatif" in recap["response"]

    confirmed = chat(api_client, "oui", conversation_id)
    assert confirmed["state"] == "generating"
    assert confirmed["order_id"]
    assert len(dispatched) == 1

    order = api_client.get(f"/api/orders/{confirmed['order_id']}").json()
    assert order["campaign_name"].startswith("Campaign_")
    assert [row["type"] for row in order["items"]] == ["image"]
    assert [(row["type"], row["status"]) for row in order["jobs"]] == [("render_image", "queued")]

    echo = chat(api_client, "alors ?", conversation_id)
    assert echo["state"] == "generating"
    assert confirmed["order_id"] in echo["response"]
    assert "queued: 1" in echo["response"]


def test_repeated_confirmation_never_creates_second_order(api_client, brand, dispatched, db):
    conversation_id = chat(api_client, "1 image", brand_id=brand.id)["conversation_id"]
    for message in ["Conversion", "1:1", "skip"]:
        chat(api_client, message, conversation_id)
    order_id = chat(api_client, "oui", conversation_id)["order_id"]
    again = chat(api_client, "oui", conversation_id)

    assert again["order_id"] == order_id
    assert db.scalar(select(func.count()).select_from(Order)) == 1
    assert db.scalar(select(func.count()).select_from(JobQueueEntry)) == 1
    assert len(dispatched) == 1


def test_confirmation_without_brand_waits(api_client):
    conversation_id = chat(api_client, "1 image")["conversation_id"]
    for message in ["Conversion", "1:1", "skip"]:
        chat(api_client, message, conversation_id)
    result = chat(api_client, "oui", conversation_id)
    assert result["state"] == "confirming"
    assert result["order_id"] is None
    assert "marque" in result["response"]


def test_declining_confirmation_restarts(api_client, brand):
    conversation_id = chat(api_client, "1 image", brand_id=brand.id)["conversation_id"]
    for message in ["Conversion", "1:1", "skip"]:
        chat(api_client, message, conversation_id)
    result = chat(api_client, "Non, recommencer", conversation_id)
    assert result["state"] == "initial"
    assert result["context"]["num_images"] == 0


def test_conversation_lookup_is_scoped_to_owner(api_client, brand):
    conversation_id = chat(api_client, "1 image", brand_id=brand.id)["conversation_id"]
    mine = api_client.get(f"/api/conversations/{conversation_id}")
    assert mine.status_code == 200
    assert [row["role"] for row in mine.json()["messages"]] == ["user", "assistant"]

    theirs = api_client.get(f"/api/conversations/{conversation_id}", headers={"X-User-Id": "someone-else"})
    assert theirs.status_code == 404
    assert api_client.get("/api/conversations/missing").status_code == 404


def test_foreign_brand_is_forbidden(api_client, other_brand):
    response = api_client.post("/api/chat", json={"message": "1 image", "brand_id": other_brand.id})
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"


def test_message_history_is_capped(api_client, monkeypatch):
    monkeypatch.setattr(settings, "session_message_history", 4)
    conversation_id = chat(api_client, "bonjour")["conversation_id"]
    chat(api_client, "encore", conversation_id)
    chat(api_client, "1 image", conversation_id)
    messages = api_client.get(f"/api/conversations/{conversation_id}").json()["messages"]
    assert len(messages) == 4
    assert messages[-2]["content"] == "1 image"


def test_concurrent_update_raises_conflict(db):
    result = handle_chat_turn(db, user_id=USER_ID, message="1 image")
    session = db.get(ConversationSession, result["conversation_id"])
    stale_version = session.version

    db.execute(
        update(ConversationSession)
        .where(ConversationSession.id == session.id)
        .values(version=stale_version + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    with pytest.raises(ConversationConflict):
        handle_chat_turn(db, user_id=USER_ID, message="Conversion", conversation_id=session.id)
