from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    display_name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    journey_phase: Mapped[str | None] = mapped_column(String(60), nullable=True)
    profile_metadata: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class AssessmentRound(Base):
    """Canonical assessment record. Rows are never updated in place."""

    __tablename__ = "assessment_rounds"
    __table_args__ = (
        UniqueConstraint("user_id", "pillar_type", "dedup_bucket", name="uq_assessment_round_window"),
        UniqueConstraint("user_id", "idempotency_key", name="uq_assessment_round_idempotency_key"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pillar_type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    answers: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    scores: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    ai_analysis: Mapped[str | None] = mapped_column(Text, nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    lineage_json: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(120), nullable=True)
    # NULL for forced updates so they never collide with the window constraint.
    dedup_bucket: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False, index=True
    )


class PathEntry(Base):
    """Legacy free-form event log entry, read-mostly and append-only."""

    __tablename__ = "path_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="completed", nullable=False)
    ai_generated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    metadata_json: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False, index=True
    )


class DetailedAnalysis(Base):
    __tablename__ = "assessment_detailed_analyses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    assessment_round_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pillar_type: Mapped[str] = mapped_column(String(40), nullable=False)
    analysis_text: Mapped[str] = mapped_column(Text, nullable=False)
    guidance_json: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    action_plan_json: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    coaching_strategy_json: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    lineage_json: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class CoachingRecommendation(Base):
    __tablename__ = "coaching_recommendations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    assessment_round_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pillar_type: Mapped[str] = mapped_column(String(40), nullable=False)
    category: Mapped[str] = mapped_column(String(40), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="medium", index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    due_date: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    lineage_json: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class ScheduledAction(Base):
    __tablename__ = "scheduled_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    assessment_round_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pillar_type: Mapped[str] = mapped_column(String(40), nullable=False)
    action_type: Mapped[str] = mapped_column(String(40), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    scheduled_date: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    estimated_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=15)
    completion_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    lineage_json: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class CoachingIntervention(Base):
    __tablename__ = "coaching_interventions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    assessment_round_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pillar_type: Mapped[str] = mapped_column(String(40), nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(40), nullable=False)
    intervention_type: Mapped[str] = mapped_column(String(40), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="medium", index=True)
    trigger_context: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    lineage_json: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
