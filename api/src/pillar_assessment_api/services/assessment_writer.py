from __future__ import annotations

import datetime as dt
import logging
import uuid
from dataclasses import dataclass, field
from statistics import mean
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_reconciliation_config
from ..models import AssessmentRound, PathEntry
from .assessment_reader import as_utc
from .pillars import pillar_display_name

logger = logging.getLogger(__name__)

SOURCE_ASSESSMENT_API = "assessment_api"
SOURCE_TRANSFORMATION = "transformation_pipeline"
SOURCE_LEGACY_MIGRATION = "legacy_migration"

WRITE_REASON_NEW = "new_submission"
WRITE_REASON_FORCED = "forced_update"
WRITE_REASON_MIGRATION = "migration_backfill"

ERROR_KEY_CONFLICT = "idempotency_key_conflict"


@dataclass
class AssessmentWriteRequest:
    user_id: str
    pillar_type: str
    assessment_data: dict[str, Any] = field(default_factory=dict)
    scores: dict[str, float] = field(default_factory=dict)
    comments: str | None = None
    ai_analysis: str | None = None
    idempotency_key: str | None = None
    force_update: bool = False
    source: str = SOURCE_ASSESSMENT_API
    write_reason: str | None = None
    mirror_to_legacy: bool = True
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class WriteResult:
    """
    Outcome of one canonical write.
    `warnings` carries degraded secondary-write failures; they never flip `success`.
    """

    success: bool
    record_id: str | None = None
    was_duplicate: bool = False
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "record_id": self.record_id,
            "was_duplicate": self.was_duplicate,
            "error": self.error,
            "warnings": list(self.warnings),
        }


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def dedup_bucket(moment: dt.datetime, window_seconds: int) -> int:
    return int(as_utc(moment).timestamp()) // window_seconds


def with_overall(scores: dict[str, Any]) -> dict[str, Any]:
    out = dict(scores)
    numeric = [
        float(value)
        for key, value in scores.items()
        if key != "overall" and isinstance(value, (int, float)) and not isinstance(value, bool)
    ]
    out["overall"] = round(mean(numeric), 3) if numeric else 0.0
    return out


def build_lineage(
    *,
    source: str,
    write_reason: str,
    processed_at: dt.datetime,
    idempotency_key: str | None = None,
    context: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "source": source,
        "write_reason": write_reason,
        "idempotency_key": idempotency_key,
        "processed_at": as_utc(processed_at).isoformat(),
        "context": dict(context or {}),
    }


def _resolve_write_reason(request: AssessmentWriteRequest) -> str:
    if request.force_update:
        return WRITE_REASON_FORCED
    return request.write_reason or WRITE_REASON_NEW


def latest_assessment(db: Session, user_id: str, pillar_type: str) -> AssessmentRound | None:
    return db.scalars(
        select(AssessmentRound)
        .where(
            AssessmentRound.user_id == user_id,
            AssessmentRound.pillar_type == pillar_type,
        )
        .order_by(AssessmentRound.created_at.desc())
        .limit(1)
    ).first()


def _find_duplicate(
    db: Session,
    request: AssessmentWriteRequest,
    *,
    now: dt.datetime,
    window_seconds: int,
) -> AssessmentRound | None:
    if request.idempotency_key:
        keyed = db.scalars(
            select(AssessmentRound).where(
                AssessmentRound.user_id == request.user_id,
                AssessmentRound.idempotency_key == request.idempotency_key,
            )
        ).first()
        if keyed is not None:
            return keyed

    latest = latest_assessment(db, request.user_id, request.pillar_type)
    if latest is None:
        return None
    age_seconds = (now - as_utc(latest.created_at)).total_seconds()
    if age_seconds < window_seconds:
        return latest
    return None


def find_duplicate(
    db: Session,
    request: AssessmentWriteRequest,
    *,
    now: dt.datetime | None = None,
) -> AssessmentRound | None:
    """Record a non-forced write of `request` would resolve to right now, if any."""
    if request.force_update:
        return None
    cfg = get_reconciliation_config()
    now = as_utc(now) if now is not None else _utcnow()
    return _find_duplicate(db, request, now=now, window_seconds=cfg.dedup_window_seconds)


def _key_conflict(existing: AssessmentRound, request: AssessmentWriteRequest) -> WriteResult:
    logger.warning(
        "Idempotency key %s for user %s already used for %s, rejecting %s submission",
        request.idempotency_key,
        request.user_id,
        existing.pillar_type,
        request.pillar_type,
    )
    return WriteResult(
        success=False,
        error=(
            f"{ERROR_KEY_CONFLICT}: key {request.idempotency_key!r} already used for "
            f"{existing.pillar_type} record {existing.id}"
        ),
    )


def _mirror_to_legacy(
    db: Session,
    *,
    record_id: str,
    request: AssessmentWriteRequest,
    scores: dict[str, Any],
    lineage: dict[str, Any],
    now: dt.datetime,
) -> None:
    entry = PathEntry(
        user_id=request.user_id,
        type="recommendation",
        title=f"AI analysis: {pillar_display_name(request.pillar_type)}",
        details=request.ai_analysis or "Assessment saved via unified assessment writer",
        status="completed",
        ai_generated=True,
        metadata_json={
            "pillar_type": request.pillar_type,
            "assessment_score": scores.get(request.pillar_type, scores.get("overall", 0)),
            "assessment_data": request.assessment_data,
            "assessment_round_id": record_id,
            "lineage": lineage,
        },
        created_at=now,
    )
    db.add(entry)
    db.commit()


def save_assessment(
    db: Session,
    request: AssessmentWriteRequest,
    *,
    now: dt.datetime | None = None,
) -> WriteResult:
    cfg = get_reconciliation_config()
    now = as_utc(now) if now is not None else _utcnow()
    window_seconds = cfg.dedup_window_seconds

    try:
        if not request.force_update:
            existing = _find_duplicate(db, request, now=now, window_seconds=window_seconds)
            if existing is not None:
                if existing.pillar_type != request.pillar_type:
                    return _key_conflict(existing, request)
                logger.info(
                    "Duplicate %s submission for user %s suppressed, returning %s",
                    request.pillar_type,
                    request.user_id,
                    existing.id,
                )
                return WriteResult(success=True, record_id=existing.id, was_duplicate=True)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Canonical dedup lookup failed for user %s: %s", request.user_id, exc)
        return WriteResult(success=False, error=f"canonical_read_failed: {exc}")

    write_reason = _resolve_write_reason(request)
    lineage = build_lineage(
        source=request.source,
        write_reason=write_reason,
        processed_at=now,
        idempotency_key=request.idempotency_key,
        context=request.context,
    )
    scores = with_overall(request.scores)
    record_id = str(uuid.uuid4())
    row = AssessmentRound(
        id=record_id,
        user_id=request.user_id,
        pillar_type=request.pillar_type,
        answers=dict(request.assessment_data),
        scores=scores,
        ai_analysis=request.ai_analysis,
        comments=request.comments,
        lineage_json=lineage,
        idempotency_key=request.idempotency_key,
        dedup_bucket=None if request.force_update else dedup_bucket(now, window_seconds),
        created_at=now,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        # A concurrent writer won the race inside the same window bucket or with the same key.
        try:
            existing = _find_duplicate(db, request, now=now, window_seconds=window_seconds)
        except SQLAlchemyError:
            db.rollback()
            existing = None
        if existing is not None:
            if existing.pillar_type != request.pillar_type:
                return _key_conflict(existing, request)
            logger.info(
                "Concurrent %s submission for user %s resolved to existing %s",
                request.pillar_type,
                request.user_id,
                existing.id,
            )
            return WriteResult(success=True, record_id=existing.id, was_duplicate=True)
        logger.error("Canonical write rejected for user %s: %s", request.user_id, exc)
        return WriteResult(success=False, error=f"canonical_write_failed: {exc}")
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Canonical write failed for user %s: %s", request.user_id, exc)
        return WriteResult(success=False, error=f"canonical_write_failed: {exc}")

    result = WriteResult(success=True, record_id=record_id, was_duplicate=False)
    logger.info(
        "Saved %s assessment %s for user %s (%s)",
        request.pillar_type,
        record_id,
        request.user_id,
        write_reason,
    )

    if request.mirror_to_legacy:
        try:
            _mirror_to_legacy(
                db,
                record_id=record_id,
                request=request,
                scores=scores,
                lineage=lineage,
                now=now,
            )
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Legacy mirror write failed for assessment %s: %s", record_id, exc)
            result.warnings.append(f"legacy_mirror_failed: {exc}")

    return result
