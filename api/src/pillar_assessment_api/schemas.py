from __future__ import annotations

import datetime as dt
from typing import Any, Literal

from pydantic import BaseModel, Field

PillarType = Literal["talent", "skills", "brand", "economy", "self_care", "open_track"]


class APIModel(BaseModel):
    model_config = {"from_attributes": True}


class UserCreate(BaseModel):
    display_name: str = Field(min_length=1, max_length=120)
    email: str | None = Field(default=None, max_length=255)
    journey_phase: str | None = Field(default=None, max_length=60)
    profile_metadata: dict[str, Any] = Field(default_factory=dict)


class UserOut(APIModel):
    id: str
    display_name: str
    email: str | None
    journey_phase: str | None
    profile_metadata: dict[str, Any]
    created_at: dt.datetime


class AssessmentSubmission(BaseModel):
    user_id: str = Field(min_length=1, max_length=36)
    pillar_type: PillarType
    assessment_data: dict[str, Any] = Field(default_factory=dict)
    scores: dict[str, float] = Field(default_factory=dict)
    comments: str | None = None
    ai_analysis: str | None = None
    idempotency_key: str | None = Field(default=None, max_length=120)
    force_update: bool = False


class WriteOut(BaseModel):
    success: bool
    record_id: str | None = None
    was_duplicate: bool = False
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)


class UnifiedAssessmentOut(BaseModel):
    id: str
    user_id: str
    pillar_type: str
    calculated_score: float
    ai_analysis: str
    assessment_data: dict[str, Any]
    created_at: dt.datetime
    source: Literal["canonical", "legacy", "hybrid"]
    metadata: dict[str, Any]


class HealthCheckOut(BaseModel):
    status: Literal["healthy", "warning", "critical"]
    issues: list[str]
    recommendations: list[str]


class MigrationOut(BaseModel):
    migrated_count: int
    skipped_count: int
    errors: list[str]


class PedagogicalGuidance(BaseModel):
    weekly_goals: list[str] = Field(min_length=1)
    daily_micro_habits: list[str] = Field(min_length=1)
    principle_explanations: list[str] = Field(min_length=1)
    progress_measurement: list[str] = Field(min_length=1)
    next_milestones: list[str] = Field(min_length=1)


class ActionPlan(BaseModel):
    immediate: list[str] = Field(min_length=1)
    week1: list[str] = Field(min_length=1)
    week2: list[str] = Field(min_length=1)
    month1: list[str] = Field(min_length=1)


class CoachingStrategy(BaseModel):
    intervention_triggers: list[str] = Field(min_length=1)
    support_messages: list[str] = Field(min_length=1)
    celebration_moments: list[str] = Field(min_length=1)


class PedagogicalOutput(BaseModel):
    analysis: str = Field(min_length=1)
    pedagogical_guidance: PedagogicalGuidance
    action_plan: ActionPlan
    coaching_strategy: CoachingStrategy


class ProcessRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=36)
    pillar_type: PillarType
    assessment_data: dict[str, Any] = Field(default_factory=dict)
    scores: dict[str, float] = Field(default_factory=dict)
    comments: str | None = None
    idempotency_key: str | None = Field(default=None, max_length=120)
    force_update: bool = False


class ProcessOut(BaseModel):
    success: bool
    output: PedagogicalOutput | None = None
    error: str | None = None
    record_id: str | None = None
    was_duplicate: bool = False
    completion: dict[str, Any] = Field(default_factory=dict)
    fanout: dict[str, Any] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)


class DetailedAnalysisOut(APIModel):
    id: int
    assessment_round_id: str
    pillar_type: str
    analysis_text: str
    guidance_json: dict[str, Any]
    action_plan_json: dict[str, Any]
    coaching_strategy_json: dict[str, Any]
    lineage_json: dict[str, Any]
    created_at: dt.datetime


class RecommendationOut(APIModel):
    id: int
    assessment_round_id: str
    pillar_type: str
    category: str
    title: str
    description: str
    priority: str
    status: str
    due_date: dt.datetime
    lineage_json: dict[str, Any]


class ScheduledActionOut(APIModel):
    id: int
    assessment_round_id: str
    pillar_type: str
    action_type: str
    title: str
    description: str
    scheduled_date: dt.datetime
    estimated_minutes: int
    completion_percentage: float
    lineage_json: dict[str, Any]


class InterventionOut(APIModel):
    id: int
    assessment_round_id: str
    pillar_type: str
    trigger_type: str
    intervention_type: str
    content: str
    priority: str
    trigger_context: dict[str, Any]
    lineage_json: dict[str, Any]
    created_at: dt.datetime


class HealthOut(BaseModel):
    ok: bool
    service: str
