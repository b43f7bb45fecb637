from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

import app as app_module
from models import CardResponse, get_engine, get_session, init_db
from session import SessionRegistry
from store import CardStore

NOW = datetime(2026, 3, 14, 15, 30)


def make_card(card_id, srs_level=0, next_review_date=NOW, deck_id=1):
    return CardResponse(
        id=card_id,
        deck_id=deck_id,
        front=f"front {card_id}",
        back=f"back {card_id}",
        srs_level=srs_level,
        next_review_date=next_review_date,
    )


class FakeCopilot:
    """Returns canned replies in order and records the prompts it got."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts = []

    def chat(self, message=None, **kwargs):
        self.prompts.append(message)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return {"role": "assistant", "content": reply}


@pytest.fixture
def engine():
    engine = get_engine(":memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = get_session(engine)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(db):
    return CardStore(db)


@pytest.fixture
def copilot():
    return FakeCopilot()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def client(engine, copilot, registry):
    def override_db():
        session = get_session(engine)
        try:
            yield session
        finally:
            session.close()

    app = app_module.app
    app.dependency_overrides[app_module.get_db] = override_db
    app.dependency_overrides[app_module.get_clock] = lambda: (lambda: NOW)
    app.dependency_overrides[app_module.get_sessions] = lambda: registry
    app.dependency_overrides[app_module.get_copilot] = lambda: copilot
    yield TestClient(app)
    app.dependency_overrides.clear()
