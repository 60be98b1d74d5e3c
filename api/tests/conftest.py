from __future__ import annotations

import datetime as dt
import os
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure the app reads a test database URL before importing package modules.
TEST_DB_PATH = Path("/tmp/pillar_assessment_api_test.db")
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"

from pillar_assessment_api.db import Base, SessionLocal, engine
from pillar_assessment_api.main import app
from pillar_assessment_api.models import AssessmentRound, PathEntry

NOW = dt.datetime(2026, 3, 2, 9, 0, 0, tzinfo=dt.timezone.utc)

LONG_ANALYSIS = (
    "Your answers show a solid foundation with clear room to grow. The strongest signals come from "
    "consistent routines, while planning ahead is the main gap to close over the next month."
)


@pytest.fixture(autouse=True)
def reset_db() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client() -> TestClient:
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def add_round(db, *, user_id: str, pillar_type: str, created_at: dt.datetime, **kwargs) -> AssessmentRound:
    row = AssessmentRound(
        user_id=user_id,
        pillar_type=pillar_type,
        answers=kwargs.pop("answers", {"q1": 4}),
        scores=kwargs.pop("scores", {pillar_type: 6.0, "overall": 6.0}),
        ai_analysis=kwargs.pop("ai_analysis", LONG_ANALYSIS),
        created_at=created_at,
        **kwargs,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def add_legacy_entry(
    db,
    *,
    user_id: str,
    created_at: dt.datetime,
    details: str | None = LONG_ANALYSIS,
    title: str | None = None,
    metadata: dict | None = None,
    entry_type: str = "recommendation",
    ai_generated: bool = True,
) -> PathEntry:
    entry = PathEntry(
        user_id=user_id,
        type=entry_type,
        title=title,
        details=details,
        ai_generated=ai_generated,
        metadata_json=metadata or {},
        created_at=created_at,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry
