from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import AssessmentRound, PathEntry
from .assessment_reader import legacy_entries_query, linked_round_id
from .assessment_writer import (
    SOURCE_LEGACY_MIGRATION,
    WRITE_REASON_MIGRATION,
    AssessmentWriteRequest,
    save_assessment,
)
from .pillars import classify_pillar

logger = logging.getLogger(__name__)

MIGRATION_COMMENT = "Migrated from legacy event log"


@dataclass
class MigrationResult:
    migrated_count: int = 0
    skipped_count: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "migrated_count": self.migrated_count,
            "skipped_count": self.skipped_count,
            "errors": list(self.errors),
        }


def _recovered_score(metadata: dict[str, Any]) -> float:
    value = metadata.get("assessment_score", 0)
    if isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def build_migration_request(entry: PathEntry, pillar_type: str) -> AssessmentWriteRequest:
    metadata = dict(entry.metadata_json or {})
    assessment_data = metadata.get("assessment_data")
    if not isinstance(assessment_data, dict) or not assessment_data:
        assessment_data = {
            "reconstructed_from_analysis": True,
            "original_entry_id": entry.id,
        }
    return AssessmentWriteRequest(
        user_id=entry.user_id,
        pillar_type=pillar_type,
        assessment_data=assessment_data,
        scores={pillar_type: _recovered_score(metadata)},
        comments=MIGRATION_COMMENT,
        ai_analysis=entry.details,
        source=SOURCE_LEGACY_MIGRATION,
        write_reason=WRITE_REASON_MIGRATION,
        mirror_to_legacy=False,
        context={"path_entry_id": entry.id},
    )


def migrate_legacy_data(
    db: Session,
    user_id: str,
    *,
    now: dt.datetime | None = None,
) -> MigrationResult:
    """
    Backfill the canonical store from legacy entries whose pillar has no canonical record.
    Per-entry failures are collected; the batch always runs to the end.
    """
    result = MigrationResult()
    try:
        entries = db.scalars(
            legacy_entries_query(user_id).order_by(PathEntry.created_at.asc())
        ).all()
        canonical = db.execute(
            select(AssessmentRound.id, AssessmentRound.pillar_type).where(AssessmentRound.user_id == user_id)
        ).all()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Legacy migration could not load data for user %s: %s", user_id, exc)
        result.errors.append(f"Migration aborted for user {user_id}: {exc}")
        return result

    canonical_ids = {row.id for row in canonical}
    covered_pillars = {row.pillar_type for row in canonical}

    for entry in entries:
        entry_id = entry.id
        try:
            if not (entry.details or "").strip():
                result.skipped_count += 1
                continue
            round_id = linked_round_id(entry)
            if round_id and round_id in canonical_ids:
                result.skipped_count += 1
                continue
            pillar_type = classify_pillar(entry.title, entry.metadata_json)
            if pillar_type is None or pillar_type in covered_pillars:
                result.skipped_count += 1
                continue

            write = save_assessment(db, build_migration_request(entry, pillar_type), now=now)
            if not write.success:
                result.errors.append(f"Failed to migrate {pillar_type} from entry {entry_id}: {write.error}")
                continue
            covered_pillars.add(pillar_type)
            if write.was_duplicate:
                result.skipped_count += 1
                continue
            result.migrated_count += 1
            logger.info("Migrated %s assessment for user %s from entry %s", pillar_type, user_id, entry_id)
        except SQLAlchemyError as exc:
            db.rollback()
            result.errors.append(f"Entry {entry_id} migration failed: {exc}")

    logger.info(
        "Legacy migration for user %s finished: %d migrated, %d skipped, %d errors",
        user_id,
        result.migrated_count,
        result.skipped_count,
        len(result.errors),
    )
    return result


def migrate_all_users(db: Session, *, now: dt.datetime | None = None) -> dict[str, MigrationResult]:
    user_ids = db.scalars(
        select(PathEntry.user_id).where(PathEntry.ai_generated.is_(True)).distinct().order_by(PathEntry.user_id)
    ).all()
    return {user_id: migrate_legacy_data(db, user_id, now=now) for user_id in user_ids}
