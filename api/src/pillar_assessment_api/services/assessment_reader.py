from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import Engine, Select, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_reconciliation_config
from ..models import AssessmentRound, PathEntry
from .pillars import classify_pillar

logger = logging.getLogger(__name__)

LEGACY_ASSESSMENT_ENTRY_TYPES = ("assessment", "recommendation", "analysis")

# Lower rank wins when two sources offer the same pillar.
SOURCE_PRECEDENCE: dict[str, int] = {"canonical": 0, "legacy": 1}


@dataclass(frozen=True)
class UnifiedAssessment:
    id: str
    user_id: str
    pillar_type: str
    calculated_score: float
    ai_analysis: str
    assessment_data: dict[str, Any]
    created_at: dt.datetime
    source: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "pillar_type": self.pillar_type,
            "calculated_score": self.calculated_score,
            "ai_analysis": self.ai_analysis,
            "assessment_data": self.assessment_data,
            "created_at": self.created_at,
            "source": self.source,
            "metadata": self.metadata,
        }


def as_utc(value: dt.datetime) -> dt.datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _score(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def legacy_entries_query(user_id: str) -> Select[tuple[PathEntry]]:
    return select(PathEntry).where(
        PathEntry.user_id == user_id,
        PathEntry.type.in_(LEGACY_ASSESSMENT_ENTRY_TYPES),
        PathEntry.ai_generated.is_(True),
        PathEntry.details.is_not(None),
    )


def linked_round_id(entry: PathEntry) -> str | None:
    value = (entry.metadata_json or {}).get("assessment_round_id")
    return str(value) if value else None


def _canonical_view(row: AssessmentRound, source: str) -> UnifiedAssessment:
    scores = row.scores or {}
    calculated = scores.get(row.pillar_type, scores.get("overall", 0))
    return UnifiedAssessment(
        id=row.id,
        user_id=row.user_id,
        pillar_type=row.pillar_type,
        calculated_score=_score(calculated),
        ai_analysis=row.ai_analysis or "",
        assessment_data=dict(row.answers or {}),
        created_at=as_utc(row.created_at),
        source=source,
        metadata={
            "assessment_round_id": row.id,
            "original_scores": dict(scores),
            "comments": row.comments,
            "lineage": dict(row.lineage_json or {}),
        },
    )


def _legacy_view(entry: PathEntry, pillar_type: str) -> UnifiedAssessment:
    metadata = dict(entry.metadata_json or {})
    return UnifiedAssessment(
        id=entry.id,
        user_id=entry.user_id,
        pillar_type=pillar_type,
        calculated_score=_score(metadata.get("assessment_score", 0)),
        ai_analysis=entry.details or "",
        assessment_data=dict(metadata.get("assessment_data") or {}),
        created_at=as_utc(entry.created_at),
        source="legacy",
        metadata={**metadata, "path_entry_id": entry.id, "legacy_migration": True},
    )


def _rank(view: UnifiedAssessment) -> tuple[int, float, str]:
    base_source = "canonical" if view.source == "hybrid" else view.source
    return (SOURCE_PRECEDENCE[base_source], -view.created_at.timestamp(), view.id)


def merge_assessments(
    canonical_rows: Sequence[AssessmentRound],
    legacy_rows: Sequence[PathEntry],
    *,
    legacy_min_chars: int,
) -> list[UnifiedAssessment]:
    """
    Pure merge of both stores into one entry per pillar.
    Canonical rows win; legacy rows only fill pillars with no canonical record.
    """
    canonical_ids = {row.id for row in canonical_rows}
    canonical_pillars = {row.pillar_type for row in canonical_rows}

    mirror_pillars: dict[str, set[str]] = {}
    candidates: list[UnifiedAssessment] = []

    for entry in legacy_rows:
        pillar_type = classify_pillar(entry.title, entry.metadata_json)
        round_id = linked_round_id(entry)
        if round_id and round_id in canonical_ids:
            if pillar_type:
                mirror_pillars.setdefault(round_id, set()).add(pillar_type)
            continue
        if not pillar_type or pillar_type in canonical_pillars:
            continue
        details = entry.details or ""
        if len(details) <= legacy_min_chars:
            continue
        candidates.append(_legacy_view(entry, pillar_type))

    for row in canonical_rows:
        disagreeing = mirror_pillars.get(row.id, set()) - {row.pillar_type}
        candidates.append(_canonical_view(row, "hybrid" if disagreeing else "canonical"))

    winners: dict[str, UnifiedAssessment] = {}
    for view in candidates:
        current = winners.get(view.pillar_type)
        if current is None or _rank(view) < _rank(current):
            winners[view.pillar_type] = view

    return sorted(winners.values(), key=lambda v: (v.created_at, v.id), reverse=True)


def _fetch_canonical_rows(bind: Engine, user_id: str) -> list[AssessmentRound]:
    with Session(bind=bind) as session:
        return list(
            session.scalars(
                select(AssessmentRound)
                .where(AssessmentRound.user_id == user_id)
                .order_by(AssessmentRound.created_at.desc())
            ).all()
        )


def _fetch_legacy_rows(bind: Engine, user_id: str) -> list[PathEntry]:
    with Session(bind=bind) as session:
        return list(
            session.scalars(
                legacy_entries_query(user_id).order_by(PathEntry.created_at.desc())
            ).all()
        )


def _fetch_legacy_rows_or_empty(bind: Engine, user_id: str) -> list[PathEntry]:
    try:
        return _fetch_legacy_rows(bind, user_id)
    except SQLAlchemyError as exc:
        logger.warning("Legacy store read failed for user %s, continuing without it: %s", user_id, exc)
        return []


def get_assessments(db: Session, user_id: str) -> list[UnifiedAssessment]:
    cfg = get_reconciliation_config()
    bind = db.get_bind()
    with ThreadPoolExecutor(max_workers=2) as pool:
        canonical_future = pool.submit(_fetch_canonical_rows, bind, user_id)
        legacy_future = pool.submit(_fetch_legacy_rows_or_empty, bind, user_id)
        canonical_rows = canonical_future.result()
        legacy_rows = legacy_future.result()

    merged = merge_assessments(
        canonical_rows,
        legacy_rows,
        legacy_min_chars=cfg.legacy_analysis_min_chars,
    )
    logger.info(
        "Unified %d canonical and %d legacy rows into %d assessments for user %s",
        len(canonical_rows),
        len(legacy_rows),
        len(merged),
        user_id,
    )
    return merged
