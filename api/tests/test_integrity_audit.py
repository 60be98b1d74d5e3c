from __future__ import annotations

import datetime as dt

import pytest

from conftest import NOW, add_legacy_entry, add_round
from pillar_assessment_api.services import integrity_audit
from pillar_assessment_api.services.assessment_reader import UnifiedAssessment
from pillar_assessment_api.services.integrity_audit import audit_assessments, classify_status, perform_health_check


def _assessment(pillar_type: str, *, source: str = "canonical", analysis: str = "x" * 80) -> UnifiedAssessment:
    return UnifiedAssessment(
        id=f"{pillar_type}-{source}",
        user_id="u1",
        pillar_type=pillar_type,
        assessment_data={},
        calculated_score=5.0,
        ai_analysis=analysis,
        created_at=NOW,
        source=source,
        metadata={},
    )


@pytest.mark.parametrize(("count", "status"), [(0, "healthy"), (1, "warning"), (2, "warning"), (3, "critical")])
def test_status_thresholds(count: int, status: str) -> None:
    assert classify_status(count) == status


def test_healthy_user(db) -> None:
    add_round(db, user_id="u1", pillar_type="skills", created_at=NOW)

    report = perform_health_check(db, "u1")

    assert report.to_dict() == {"status": "healthy", "issues": [], "recommendations": []}


def test_legacy_only_user_is_told_to_migrate(db) -> None:
    add_legacy_entry(db, user_id="u1", created_at=NOW - dt.timedelta(days=1), metadata={"pillar_type": "brand"})

    report = perform_health_check(db, "u1")

    assert report.status == "warning"
    assert report.issues == ["User has only legacy data, no canonical assessment records"]
    assert "Run legacy data migration" in report.recommendations


def test_thin_analysis_is_flagged(db) -> None:
    add_round(db, user_id="u1", pillar_type="talent", created_at=NOW, ai_analysis="Too short.")
    add_round(db, user_id="u1", pillar_type="brand", created_at=NOW, ai_analysis=None)

    report = perform_health_check(db, "u1")

    assert report.status == "warning"
    assert report.issues == ["2 assessments missing proper AI analysis (brand, talent)"]


def test_duplicates_and_thin_analysis_add_up_to_critical() -> None:
    report = audit_assessments(
        [
            _assessment("skills"),
            _assessment("skills", source="legacy"),
            _assessment("economy", analysis="short"),
            _assessment("economy", source="legacy", analysis="short"),
        ],
        analysis_min_chars=50,
    )

    assert report.status == "critical"
    assert "Duplicate assessments found for economy (2 copies)" in report.issues
    assert "Duplicate assessments found for skills (2 copies)" in report.issues
    assert "Consider data cleanup for skills pillar" in report.recommendations


def test_audit_failure_reports_critical(db, monkeypatch: pytest.MonkeyPatch) -> None:
    def _broken(session, user_id):
        raise RuntimeError("connection refused")

    monkeypatch.setattr(integrity_audit, "get_assessments", _broken)

    report = perform_health_check(db, "u1")

    assert report.status == "critical"
    assert report.issues == ["Health check failed: connection refused"]
    assert report.recommendations == ["Contact system administrator"]
