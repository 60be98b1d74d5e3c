from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_reconciliation_config
from ..models import AssessmentRound, DetailedAnalysis, Profile
from ..schemas import PedagogicalOutput
from .assessment_reader import as_utc
from .assessment_writer import SOURCE_TRANSFORMATION, AssessmentWriteRequest, find_duplicate, save_assessment
from .completion import CompletionResult, request_completion
from .fanout import FANOUT_FAMILIES, FanoutContext, persist_batch
from .pedagogy import build_pedagogical_output, build_prompt

logger = logging.getLogger(__name__)

ANALYSIS_EXCERPT_CHARS = 280


@dataclass
class AssessmentInput:
    user_id: str
    pillar_type: str
    assessment_data: dict[str, Any] = field(default_factory=dict)
    scores: dict[str, float] = field(default_factory=dict)
    comments: str | None = None
    idempotency_key: str | None = None
    force_update: bool = False


@dataclass
class ProcessResult:
    success: bool
    output: PedagogicalOutput | None = None
    error: str | None = None
    record_id: str | None = None
    was_duplicate: bool = False
    completion: dict[str, Any] = field(default_factory=dict)
    fanout: dict[str, dict[str, Any]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output.model_dump() if self.output is not None else None,
            "error": self.error,
            "record_id": self.record_id,
            "was_duplicate": self.was_duplicate,
            "completion": dict(self.completion),
            "fanout": dict(self.fanout),
            "warnings": list(self.warnings),
        }


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def assemble_context(db: Session, user_id: str, *, limit: int) -> dict[str, Any]:
    profile = db.get(Profile, user_id)
    prior = db.scalars(
        select(AssessmentRound)
        .where(AssessmentRound.user_id == user_id)
        .order_by(AssessmentRound.created_at.desc())
        .limit(limit)
    ).all()
    return {
        "profile": dict(profile.profile_metadata or {}) if profile else {},
        "display_name": profile.display_name if profile else None,
        "journey_phase": profile.journey_phase if profile else None,
        "is_first_assessment": not prior,
        "prior_assessments": [
            {
                "pillar_type": row.pillar_type,
                "scores": dict(row.scores or {}),
                "created_at": as_utc(row.created_at).isoformat(),
                "analysis_excerpt": (row.ai_analysis or "")[:ANALYSIS_EXCERPT_CHARS],
            }
            for row in prior
        ],
    }


def stored_output(db: Session, assessment_round_id: str) -> PedagogicalOutput | None:
    """Plan persisted by the pipeline run that created `assessment_round_id`, if any."""
    row = db.scalars(
        select(DetailedAnalysis)
        .where(DetailedAnalysis.assessment_round_id == assessment_round_id)
        .order_by(DetailedAnalysis.id.desc())
        .limit(1)
    ).first()
    if row is None:
        return None
    return PedagogicalOutput.model_validate(
        {
            "analysis": row.analysis_text,
            "pedagogical_guidance": row.guidance_json,
            "action_plan": row.action_plan_json,
            "coaching_strategy": row.coaching_strategy_json,
        }
    )


def _duplicate_result(
    db: Session,
    record_id: str,
    *,
    reason: str,
    warnings: list[str] | None = None,
) -> ProcessResult:
    # The original submission already fanned out its records.
    try:
        output = stored_output(db, record_id)
    except (SQLAlchemyError, ValidationError) as exc:
        db.rollback()
        logger.warning("Stored plan for assessment %s could not be loaded: %s", record_id, exc)
        output = None
    return ProcessResult(
        success=True,
        output=output,
        record_id=record_id,
        was_duplicate=True,
        completion={"source": "skipped", "reason": reason},
        warnings=list(warnings or []),
    )


def process_assessment(
    db: Session,
    submission: AssessmentInput,
    *,
    complete: Callable[[str], CompletionResult] | None = None,
    now: dt.datetime | None = None,
) -> ProcessResult:
    """
    Assessment -> completion -> pedagogical plan -> canonical record + four fan-out families.
    Only the canonical read/write is fatal; everything downstream degrades.
    A duplicate submission is resolved before the completion call and returns the stored plan.
    """
    cfg = get_reconciliation_config()
    now = as_utc(now) if now is not None else _utcnow()
    complete = complete if complete is not None else request_completion

    request = AssessmentWriteRequest(
        user_id=submission.user_id,
        pillar_type=submission.pillar_type,
        assessment_data=submission.assessment_data,
        scores=submission.scores,
        comments=submission.comments,
        idempotency_key=submission.idempotency_key,
        force_update=submission.force_update,
        source=SOURCE_TRANSFORMATION,
    )

    try:
        context = assemble_context(db, submission.user_id, limit=cfg.prior_assessment_limit)
        existing = find_duplicate(db, request, now=now)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Canonical read before completion failed for user %s: %s", submission.user_id, exc)
        return ProcessResult(success=False, error=f"canonical_read_failed: {exc}")

    if existing is not None and existing.pillar_type != submission.pillar_type:
        # Key reused for another pillar; the writer reports the conflict without writing.
        conflict = save_assessment(db, request, now=now)
        return ProcessResult(success=False, error=conflict.error)
    if existing is not None:
        logger.info(
            "Duplicate %s submission for user %s, skipping completion for %s",
            submission.pillar_type,
            submission.user_id,
            existing.id,
        )
        return _duplicate_result(db, existing.id, reason="duplicate_submission")

    prompt = build_prompt(
        pillar_type=submission.pillar_type,
        scores=submission.scores,
        assessment_data=submission.assessment_data,
        comments=submission.comments,
        context=context,
    )
    output, completion_meta = build_pedagogical_output(complete(prompt), pillar_type=submission.pillar_type)

    request.ai_analysis = output.analysis
    request.context = {"completion_source": completion_meta["source"]}
    write = save_assessment(db, request, now=now)
    if not write.success:
        return ProcessResult(success=False, error=write.error, completion=completion_meta)
    if write.was_duplicate:
        # Lost a race with a concurrent submission after the completion call.
        return _duplicate_result(db, write.record_id, reason="concurrent_submission", warnings=write.warnings)

    result = ProcessResult(
        success=True,
        output=output,
        record_id=write.record_id,
        completion=completion_meta,
        warnings=list(write.warnings),
    )

    ctx = FanoutContext(
        user_id=submission.user_id,
        pillar_type=submission.pillar_type,
        assessment_round_id=write.record_id,
        now=now,
    )
    for family, builder in FANOUT_FAMILIES:
        rows = builder(output, ctx)
        try:
            count = persist_batch(db, family, rows)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Fan-out family %s failed for assessment %s: %s", family, write.record_id, exc)
            result.fanout[family] = {"status": "failed", "count": 0, "error": str(exc)[:200]}
            continue
        result.fanout[family] = {"status": "ok", "count": count}

    logger.info(
        "Processed %s assessment %s for user %s (%s completion)",
        submission.pillar_type,
        write.record_id,
        submission.user_id,
        completion_meta["source"],
    )
    return result
