from __future__ import annotations

import datetime as dt
import logging

import pytest
from sqlalchemy.exc import SQLAlchemyError

from conftest import LONG_ANALYSIS, NOW, add_legacy_entry, add_round
from pillar_assessment_api.services import assessment_reader
from pillar_assessment_api.services.assessment_reader import get_assessments


def test_canonical_wins_over_legacy_for_same_pillar(db) -> None:
    canonical = add_round(db, user_id="u1", pillar_type="skills", created_at=NOW - dt.timedelta(days=3))
    add_legacy_entry(db, user_id="u1", created_at=NOW, metadata={"pillar_type": "skills", "assessment_score": 3})

    assessments = get_assessments(db, "u1")

    assert len(assessments) == 1
    assert assessments[0].id == canonical.id
    assert assessments[0].source == "canonical"


def test_legacy_fills_missing_pillars_and_results_are_newest_first(db) -> None:
    add_round(db, user_id="u1", pillar_type="skills", created_at=NOW - dt.timedelta(days=2))
    legacy = add_legacy_entry(
        db,
        user_id="u1",
        created_at=NOW - dt.timedelta(days=1),
        title="AI-analys: Ekonomi",
        metadata={"assessment_score": "7.5", "assessment_data": {"q": 1}},
    )

    assessments = get_assessments(db, "u1")

    assert [a.pillar_type for a in assessments] == ["economy", "skills"]
    economy = assessments[0]
    assert economy.id == legacy.id
    assert economy.source == "legacy"
    assert economy.calculated_score == 7.5
    assert economy.assessment_data == {"q": 1}
    assert economy.metadata["legacy_migration"] is True


def test_only_latest_canonical_record_per_pillar_is_reported(db) -> None:
    add_round(db, user_id="u1", pillar_type="talent", created_at=NOW - dt.timedelta(days=10))
    latest = add_round(db, user_id="u1", pillar_type="talent", created_at=NOW)

    assessments = get_assessments(db, "u1")

    assert [a.id for a in assessments] == [latest.id]


def test_short_legacy_analysis_is_excluded(db) -> None:
    add_legacy_entry(db, user_id="u1", created_at=NOW, details="x" * 40, metadata={"pillar_type": "skills"})

    assert get_assessments(db, "u1") == []


def test_ineligible_legacy_entries_are_ignored(db) -> None:
    add_legacy_entry(db, user_id="u1", created_at=NOW, metadata={"pillar_type": "brand"}, ai_generated=False)
    add_legacy_entry(db, user_id="u1", created_at=NOW, metadata={"pillar_type": "brand"}, entry_type="note")
    add_legacy_entry(db, user_id="u1", created_at=NOW, title="Weekly reflection")

    assert get_assessments(db, "u1") == []


def test_mirror_entries_are_not_independent_candidates(db) -> None:
    canonical = add_round(db, user_id="u1", pillar_type="brand", created_at=NOW)
    add_legacy_entry(
        db,
        user_id="u1",
        created_at=NOW,
        metadata={"pillar_type": "brand", "assessment_round_id": canonical.id},
    )

    assessments = get_assessments(db, "u1")

    assert len(assessments) == 1
    assert assessments[0].source == "canonical"


def test_disagreeing_mirror_marks_record_hybrid(db) -> None:
    canonical = add_round(db, user_id="u1", pillar_type="brand", created_at=NOW)
    add_legacy_entry(
        db,
        user_id="u1",
        created_at=NOW,
        metadata={"pillar_type": "economy", "assessment_round_id": canonical.id},
    )

    assessments = get_assessments(db, "u1")

    assert [(a.pillar_type, a.source) for a in assessments] == [("brand", "hybrid")]


def test_legacy_read_failure_is_not_fatal(db, monkeypatch: pytest.MonkeyPatch, caplog) -> None:
    add_round(db, user_id="u1", pillar_type="economy", created_at=NOW)

    def _broken(bind, user_id):
        raise SQLAlchemyError("legacy store offline")

    monkeypatch.setattr(assessment_reader, "_fetch_legacy_rows", _broken)

    with caplog.at_level(logging.WARNING, logger="pillar_assessment_api.services.assessment_reader"):
        assessments = get_assessments(db, "u1")

    assert [a.pillar_type for a in assessments] == ["economy"]
    assert any("Legacy store read failed" in rec.getMessage() for rec in caplog.records)


def test_canonical_read_failure_propagates(db, monkeypatch: pytest.MonkeyPatch) -> None:
    def _broken(bind, user_id):
        raise SQLAlchemyError("canonical store offline")

    monkeypatch.setattr(assessment_reader, "_fetch_canonical_rows", _broken)

    with pytest.raises(SQLAlchemyError):
        get_assessments(db, "u1")


def test_merge_is_pure_and_total() -> None:
    assert assessment_reader.merge_assessments([], [], legacy_min_chars=100) == []
    assert len(LONG_ANALYSIS) > 100
