from __future__ import annotations

import datetime as dt
import json
import logging

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from conftest import NOW, add_round
from pillar_assessment_api.models import (
    AssessmentRound,
    CoachingIntervention,
    CoachingRecommendation,
    DetailedAnalysis,
    ScheduledAction,
)
from pillar_assessment_api.services import transformation
from pillar_assessment_api.services.assessment_writer import WriteResult
from pillar_assessment_api.services.completion import RawText, StructuredOutput
from pillar_assessment_api.services.transformation import AssessmentInput, process_assessment

PLAN = {
    "analysis": "Budgeting is steady; saving is the lever to pull next.",
    "pedagogical_guidance": {
        "weekly_goals": ["Track every expense for seven days"],
        "daily_micro_habits": ["Log today's spending", "Move 20 kr to savings", "Read one finance tip"],
        "principle_explanations": ["Small automatic habits compound"],
        "progress_measurement": ["Weekly savings total"],
        "next_milestones": ["First 1000 kr buffer"],
    },
    "action_plan": {
        "immediate": ["Open a separate savings account"],
        "week1": ["Set up an automatic transfer"],
        "week2": ["Review subscriptions", "Cancel one unused service"],
        "month1": ["Compare the month against the budget"],
    },
    "coaching_strategy": {
        "intervention_triggers": ["No expense logged for two days", "Savings goal reached", "Budget exceeded"],
        "support_messages": ["Logging takes ten seconds, try it now.", "Great job hitting the goal!"],
        "celebration_moments": ["First full week of tracking"],
    },
}


def _structured(prompt: str) -> StructuredOutput:
    return StructuredOutput(payload=json.loads(json.dumps(PLAN)), raw_text="")


def _timed_out(prompt: str) -> RawText:
    return RawText(text="", reason="timeout")


def _submission(**overrides) -> AssessmentInput:
    values = {"user_id": "u1", "pillar_type": "economy", "scores": {"economy": 5}, "assessment_data": {"q1": 2}}
    values.update(overrides)
    return AssessmentInput(**values)


def _count(db, model) -> int:
    return db.scalar(select(func.count()).select_from(model))


def test_structured_plan_fans_out_into_four_families(db) -> None:
    result = process_assessment(db, _submission(), complete=_structured, now=NOW)

    assert result.success is True
    assert result.completion["source"] == "structured"
    assert result.fanout == {
        "detailed_analysis": {"status": "ok", "count": 1},
        "recommendations": {"status": "ok", "count": 3},
        "scheduled_actions": {"status": "ok", "count": 6},
        "interventions": {"status": "ok", "count": 4},
    }

    round_row = db.get(AssessmentRound, result.record_id)
    assert round_row.ai_analysis == PLAN["analysis"]
    assert round_row.lineage_json["source"] == "transformation_pipeline"

    recs = db.scalars(select(CoachingRecommendation).order_by(CoachingRecommendation.id)).all()
    assert [(r.category, r.priority) for r in recs] == [
        ("weekly_goal", "medium"),
        ("immediate_action", "high"),
        ("week1_action", "medium"),
    ]
    immediate = recs[1]
    assert immediate.due_date.replace(tzinfo=dt.timezone.utc) == NOW + dt.timedelta(days=3)
    assert all(r.assessment_round_id == result.record_id for r in recs)
    assert recs[0].lineage_json["write_reason"] == "fanout:recommendations"


def test_scheduled_actions_follow_plan_calendar(db) -> None:
    process_assessment(db, _submission(), complete=_structured, now=NOW)

    actions = db.scalars(select(ScheduledAction).order_by(ScheduledAction.id)).all()
    habits = [a for a in actions if a.action_type == "micro_habit"]
    milestones = [a for a in actions if a.action_type == "weekly_milestone"]

    assert [a.scheduled_date.replace(tzinfo=dt.timezone.utc) for a in habits] == [
        NOW,
        NOW + dt.timedelta(days=1),
        NOW + dt.timedelta(days=2),
    ]
    assert {a.estimated_minutes for a in habits} == {15}
    assert [a.scheduled_date.replace(tzinfo=dt.timezone.utc) for a in milestones] == [
        NOW + dt.timedelta(days=7),
        NOW + dt.timedelta(days=14),
        NOW + dt.timedelta(days=14),
    ]
    assert {a.estimated_minutes for a in milestones} == {30}


def test_interventions_pair_triggers_with_support_messages(db) -> None:
    process_assessment(db, _submission(), complete=_structured, now=NOW)

    rows = db.scalars(select(CoachingIntervention).order_by(CoachingIntervention.id)).all()

    assert rows[0].intervention_type == "congratulatory"
    assert rows[0].priority == "high"
    assert "Open a separate savings account" in rows[0].content
    assert [r.content for r in rows[1:]] == [
        "Logging takes ten seconds, try it now.",
        "Great job hitting the goal!",
        "You are making progress. Keep going with your daily micro-habits.",
    ]
    assert rows[3].trigger_context["trigger"] == "Budget exceeded"


def test_completion_timeout_still_produces_full_fanout(db) -> None:
    result = process_assessment(db, _submission(pillar_type="talent"), complete=_timed_out, now=NOW)

    assert result.success is True
    assert result.completion == {"source": "fallback", "reason": "timeout"}
    assert all(entry["status"] == "ok" and entry["count"] > 0 for entry in result.fanout.values())
    assert _count(db, DetailedAnalysis) == 1
    assert _count(db, CoachingRecommendation) > 0
    assert _count(db, ScheduledAction) > 0
    assert _count(db, CoachingIntervention) > 0


def test_disabled_completion_service_uses_fallback(db, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("USE_GEMINI_COMPLETION", "false")

    result = process_assessment(db, _submission(), now=NOW)

    assert result.success is True
    assert result.completion["source"] == "fallback"
    assert result.completion["reason"] == "disabled"


def test_one_failing_family_does_not_stop_the_others(db, monkeypatch: pytest.MonkeyPatch) -> None:
    real_persist = transformation.persist_batch

    def _persist(session, family, rows):
        if family == "scheduled_actions":
            raise SQLAlchemyError("scheduled_actions unavailable")
        return real_persist(session, family, rows)

    monkeypatch.setattr(transformation, "persist_batch", _persist)
    result = process_assessment(db, _submission(), complete=_structured, now=NOW)

    assert result.success is True
    assert result.fanout["scheduled_actions"]["status"] == "failed"
    assert "unavailable" in result.fanout["scheduled_actions"]["error"]
    assert result.fanout["interventions"] == {"status": "ok", "count": 4}
    assert _count(db, ScheduledAction) == 0
    assert _count(db, CoachingIntervention) == 4
    assert _count(db, CoachingRecommendation) == 3
    assert _count(db, DetailedAnalysis) == 1
    assert db.get(AssessmentRound, result.record_id) is not None


def test_duplicate_submission_returns_stored_plan_without_new_completion(db) -> None:
    prompts: list[str] = []

    def _counting(prompt: str) -> StructuredOutput:
        prompts.append(prompt)
        payload = json.loads(json.dumps(PLAN))
        payload["analysis"] = f"Plan number {len(prompts)}."
        return StructuredOutput(payload=payload, raw_text="")

    first = process_assessment(db, _submission(), complete=_counting, now=NOW)
    second = process_assessment(db, _submission(), complete=_counting, now=NOW + dt.timedelta(seconds=10))

    assert len(prompts) == 1
    assert second.success is True
    assert second.was_duplicate is True
    assert second.record_id == first.record_id
    assert second.completion == {"source": "skipped", "reason": "duplicate_submission"}
    assert second.output == first.output
    assert second.output.analysis == "Plan number 1."
    assert db.get(AssessmentRound, first.record_id).ai_analysis == "Plan number 1."
    assert second.fanout == {}
    assert _count(db, DetailedAnalysis) == 1


def test_idempotency_key_retry_skips_completion(db) -> None:
    calls = {"n": 0}

    def _counting(prompt: str) -> StructuredOutput:
        calls["n"] += 1
        return _structured(prompt)

    first = process_assessment(db, _submission(idempotency_key="k-1"), complete=_counting, now=NOW)
    retry = process_assessment(
        db, _submission(idempotency_key="k-1"), complete=_counting, now=NOW + dt.timedelta(hours=1)
    )

    assert calls["n"] == 1
    assert retry.was_duplicate is True
    assert retry.record_id == first.record_id


def test_duplicate_found_at_write_time_returns_stored_plan(db, monkeypatch: pytest.MonkeyPatch) -> None:
    first = process_assessment(db, _submission(), complete=_structured, now=NOW)
    # The competing submission commits after this run's pre-completion lookup.
    monkeypatch.setattr(transformation, "find_duplicate", lambda *args, **kwargs: None)

    second = process_assessment(db, _submission(), complete=_timed_out, now=NOW + dt.timedelta(seconds=5))

    assert second.was_duplicate is True
    assert second.record_id == first.record_id
    assert second.completion == {"source": "skipped", "reason": "concurrent_submission"}
    assert second.output.analysis == PLAN["analysis"]
    assert _count(db, DetailedAnalysis) == 1


def test_fanout_batches_are_logged_per_family(db, caplog) -> None:
    with caplog.at_level(logging.INFO, logger="pillar_assessment_api.services.fanout"):
        process_assessment(db, _submission(), complete=_structured, now=NOW)

    messages = [rec.getMessage() for rec in caplog.records]
    assert "Persisted 3 recommendations rows" in messages
    assert "Persisted 6 scheduled_actions rows" in messages


def test_canonical_write_failure_is_fatal(db, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        transformation,
        "save_assessment",
        lambda *args, **kwargs: WriteResult(success=False, error="canonical_write_failed: disk full"),
    )

    result = process_assessment(db, _submission(), complete=_structured, now=NOW)

    assert result.success is False
    assert "disk full" in result.error
    assert result.output is None
    assert _count(db, DetailedAnalysis) == 0


def test_context_includes_recent_prior_assessments(db, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PRIOR_ASSESSMENT_LIMIT", "2")
    for days in (3, 2, 1):
        add_round(db, user_id="u1", pillar_type="skills", created_at=NOW - dt.timedelta(days=days))
    prompts: list[str] = []

    def _capture(prompt: str) -> StructuredOutput:
        prompts.append(prompt)
        return _structured(prompt)

    process_assessment(db, _submission(), complete=_capture, now=NOW)

    context = json.loads(prompts[0])["context"]
    assert context["is_first_assessment"] is False
    assert len(context["prior_assessments"]) == 2



def test_key_reused_for_other_pillar_fails_without_completion(db) -> None:
    calls = {"n": 0}

    def _counting(prompt: str) -> StructuredOutput:
        calls["n"] += 1
        return _structured(prompt)

    process_assessment(db, _submission(idempotency_key="k-2"), complete=_counting, now=NOW)
    reused = process_assessment(
        db,
        _submission(pillar_type="talent", idempotency_key="k-2"),
        complete=_counting,
        now=NOW + dt.timedelta(minutes=1),
    )

    assert calls["n"] == 1
    assert reused.success is False
    assert reused.error.startswith("idempotency_key_conflict")
    assert _count(db, AssessmentRound) == 1
