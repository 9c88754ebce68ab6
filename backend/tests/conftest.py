import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DEFAULT_LLM_PROVIDER"] = "mock"
os.environ["PERSIST_JOB_EVENTS"] = "true"
os.environ["CELERY_ALWAYS_EAGER"] = "false"

import pytest
from fastapi.testclient import TestClient

from orderflow.db import Base, SessionLocal, engine
from orderflow.models import Brand


USER_ID = "user-1"
OTHER_USER_ID = "user-2"


@pytest.fixture(autouse=True)
def schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def dispatched(monkeypatch):
    """Capture worker dispatches instead of talking to the broker."""
    from orderflow.tasks import process_render_job

    sent: list[str] = []
    monkeypatch.setattr(process_render_job, "delay", lambda job_id: sent.append(job_id))
    return sent


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def brand(db):
    row = Brand(
        id="brand-1",
        user_id=USER_ID,
        name="Alfie Demo",
        palette_json='["#1f2937", "#f59e0b"]',
        voice="chaleureux et direct",
        niche="saas",
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def other_brand(db):
    row = Brand(id="brand-2", user_id=OTHER_USER_ID, name="Other")
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def api_client():
    from orderflow.main import app

    with TestClient(app, headers={"X-User-Id": USER_ID}) as client:
        yield client
