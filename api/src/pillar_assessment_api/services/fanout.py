from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from sqlalchemy.orm import Session

from ..db import Base
from ..models import CoachingIntervention, CoachingRecommendation, DetailedAnalysis, ScheduledAction
from ..schemas import PedagogicalOutput
from .assessment_writer import SOURCE_TRANSFORMATION, build_lineage
from .pillars import pillar_display_name

logger = logging.getLogger(__name__)

IMMEDIATE_DUE_DAYS = 3
WEEKLY_DUE_DAYS = 7
MICRO_HABIT_MINUTES = 15
MILESTONE_MINUTES = 30
DEFAULT_SUPPORT_MESSAGE = "You are making progress. Keep going with your daily micro-habits."


@dataclass(frozen=True)
class FanoutContext:
    user_id: str
    pillar_type: str
    assessment_round_id: str
    now: dt.datetime

    def lineage(self, family: str) -> dict:
        return build_lineage(
            source=SOURCE_TRANSFORMATION,
            write_reason=f"fanout:{family}",
            processed_at=self.now,
            context={"assessment_round_id": self.assessment_round_id},
        )


def _title(text: str, limit: int = 255) -> str:
    return text if len(text) <= limit else text[: limit - 3].rstrip() + "..."


def build_detailed_analysis(output: PedagogicalOutput, ctx: FanoutContext) -> list[DetailedAnalysis]:
    return [
        DetailedAnalysis(
            user_id=ctx.user_id,
            assessment_round_id=ctx.assessment_round_id,
            pillar_type=ctx.pillar_type,
            analysis_text=output.analysis,
            guidance_json=output.pedagogical_guidance.model_dump(),
            action_plan_json=output.action_plan.model_dump(),
            coaching_strategy_json=output.coaching_strategy.model_dump(),
            lineage_json=ctx.lineage("detailed_analysis"),
            created_at=ctx.now,
        )
    ]


def build_recommendations(output: PedagogicalOutput, ctx: FanoutContext) -> list[CoachingRecommendation]:
    lineage = ctx.lineage("recommendations")
    plan: list[tuple[str, str, int, Sequence[str]]] = [
        ("weekly_goal", "medium", WEEKLY_DUE_DAYS, output.pedagogical_guidance.weekly_goals),
        ("immediate_action", "high", IMMEDIATE_DUE_DAYS, output.action_plan.immediate),
        ("week1_action", "medium", WEEKLY_DUE_DAYS, output.action_plan.week1),
    ]
    rows: list[CoachingRecommendation] = []
    for category, priority, due_days, items in plan:
        for item in items:
            rows.append(
                CoachingRecommendation(
                    user_id=ctx.user_id,
                    assessment_round_id=ctx.assessment_round_id,
                    pillar_type=ctx.pillar_type,
                    category=category,
                    title=_title(item),
                    description=item,
                    priority=priority,
                    status="pending",
                    due_date=ctx.now + dt.timedelta(days=due_days),
                    lineage_json=lineage,
                    created_at=ctx.now,
                )
            )
    return rows


def build_scheduled_actions(output: PedagogicalOutput, ctx: FanoutContext) -> list[ScheduledAction]:
    lineage = ctx.lineage("scheduled_actions")
    rows: list[ScheduledAction] = []
    for index, habit in enumerate(output.pedagogical_guidance.daily_micro_habits):
        rows.append(
            ScheduledAction(
                user_id=ctx.user_id,
                assessment_round_id=ctx.assessment_round_id,
                pillar_type=ctx.pillar_type,
                action_type="micro_habit",
                title=_title(habit),
                description=habit,
                scheduled_date=ctx.now + dt.timedelta(days=index),
                estimated_minutes=MICRO_HABIT_MINUTES,
                completion_percentage=0.0,
                lineage_json=lineage,
                created_at=ctx.now,
            )
        )
    for week, items in ((1, output.action_plan.week1), (2, output.action_plan.week2)):
        for item in items:
            rows.append(
                ScheduledAction(
                    user_id=ctx.user_id,
                    assessment_round_id=ctx.assessment_round_id,
                    pillar_type=ctx.pillar_type,
                    action_type="weekly_milestone",
                    title=_title(item),
                    description=item,
                    scheduled_date=ctx.now + dt.timedelta(weeks=week),
                    estimated_minutes=MILESTONE_MINUTES,
                    completion_percentage=0.0,
                    lineage_json=lineage,
                    created_at=ctx.now,
                )
            )
    return rows


def build_interventions(output: PedagogicalOutput, ctx: FanoutContext) -> list[CoachingIntervention]:
    lineage = ctx.lineage("interventions")
    pillar = pillar_display_name(ctx.pillar_type).lower()
    first_step = output.action_plan.immediate[0]
    rows = [
        CoachingIntervention(
            user_id=ctx.user_id,
            assessment_round_id=ctx.assessment_round_id,
            pillar_type=ctx.pillar_type,
            trigger_type="assessment_completion",
            intervention_type="congratulatory",
            content=(
                f"Congratulations on completing your {pillar} assessment. "
                f"Your personal development plan is ready. First step: {first_step}"
            ),
            priority="high",
            trigger_context={
                "trigger": "assessment_completion",
                "pillar_type": ctx.pillar_type,
                "pedagogical_focus": output.pedagogical_guidance.weekly_goals[0],
            },
            lineage_json=lineage,
            created_at=ctx.now,
        )
    ]
    support_messages = output.coaching_strategy.support_messages
    for index, trigger in enumerate(output.coaching_strategy.intervention_triggers):
        content = support_messages[index] if index < len(support_messages) else DEFAULT_SUPPORT_MESSAGE
        rows.append(
            CoachingIntervention(
                user_id=ctx.user_id,
                assessment_round_id=ctx.assessment_round_id,
                pillar_type=ctx.pillar_type,
                trigger_type="scheduled_support",
                intervention_type="motivational",
                content=content,
                priority="medium",
                trigger_context={
                    "trigger": trigger,
                    "pillar_type": ctx.pillar_type,
                    "pedagogical_focus": output.pedagogical_guidance.principle_explanations[0],
                },
                lineage_json=lineage,
                created_at=ctx.now,
            )
        )
    return rows


FanoutBuilder = Callable[[PedagogicalOutput, FanoutContext], Sequence[Base]]

# Written in this order; each family succeeds or fails on its own.
FANOUT_FAMILIES: tuple[tuple[str, FanoutBuilder], ...] = (
    ("detailed_analysis", build_detailed_analysis),
    ("recommendations", build_recommendations),
    ("scheduled_actions", build_scheduled_actions),
    ("interventions", build_interventions),
)


def persist_batch(db: Session, family: str, rows: Sequence[Base]) -> int:
    db.add_all(list(rows))
    db.commit()
    logger.info("Persisted %d %s rows", len(rows), family)
    return len(rows)
