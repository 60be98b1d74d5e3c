from __future__ import annotations

import json
import logging
from typing import Any

from ..schemas import PedagogicalOutput
from .completion import CompletionResult, StructuredOutput
from .pillars import pillar_display_name

logger = logging.getLogger(__name__)

MAX_ITEMS_PER_COLLECTION = 8
MAX_FALLBACK_ANALYSIS_CHARS = 4000

# section -> (accepted section keys, {field: accepted field keys})
OUTPUT_LAYOUT: dict[str, tuple[tuple[str, ...], dict[str, tuple[str, ...]]]] = {
    "pedagogical_guidance": (
        ("pedagogical_guidance", "pedagogicalGuidance"),
        {
            "weekly_goals": ("weekly_goals", "weeklyGoals"),
            "daily_micro_habits": ("daily_micro_habits", "dailyMicroHabits"),
            "principle_explanations": (
                "principle_explanations",
                "principleExplanations",
                "neuroplasticPrinciples",
            ),
            "progress_measurement": ("progress_measurement", "progressMeasurement"),
            "next_milestones": ("next_milestones", "nextMilestones"),
        },
    ),
    "action_plan": (
        ("action_plan", "actionPlan"),
        {
            "immediate": ("immediate",),
            "week1": ("week1", "week_1"),
            "week2": ("week2", "week_2"),
            "month1": ("month1", "month_1"),
        },
    ),
    "coaching_strategy": (
        ("coaching_strategy", "coachingStrategy"),
        {
            "intervention_triggers": ("intervention_triggers", "interventionTriggers"),
            "support_messages": ("support_messages", "supportMessages"),
            "celebration_moments": ("celebration_moments", "celebrationMoments"),
        },
    ),
}

DEFAULT_ANALYSIS = "Assessment analysis completed."

PLACEHOLDERS: dict[str, dict[str, list[str]]] = {
    "pedagogical_guidance": {
        "weekly_goals": ["Establish a basic weekly routine"],
        "daily_micro_habits": ["Start with a two-minute activity each day"],
        "principle_explanations": ["Repetition is what turns a new action into a habit"],
        "progress_measurement": ["Tick off a simple daily checklist"],
        "next_milestones": ["Review progress after 21 days"],
    },
    "action_plan": {
        "immediate": ["Take the first small step today"],
        "week1": ["Settle into a daily routine"],
        "week2": ["Increase the difficulty gradually"],
        "month1": ["Evaluate and adjust the plan"],
    },
    "coaching_strategy": {
        "intervention_triggers": ["After three days of inactivity", "When a weekly goal is reached"],
        "support_messages": ["A short reminder of why consistency matters"],
        "celebration_moments": ["Celebrate each completed week"],
    },
}

FALLBACK_TEMPLATES: dict[str, dict[str, list[str]]] = {
    "pedagogical_guidance": {
        "weekly_goals": ["Pick one small {pillar} goal for this week and write it down"],
        "daily_micro_habits": [
            "Spend two minutes each morning on one {pillar} action",
            "Note one {pillar} observation before the end of the day",
        ],
        "principle_explanations": ["Consistency beats intensity when building a new {pillar} habit"],
        "progress_measurement": ["Log each day you complete your {pillar} micro-habit"],
        "next_milestones": ["Reassess {pillar} after 21 days of practice"],
    },
    "action_plan": {
        "immediate": ["Start one {pillar} micro-activity today"],
        "week1": ["Make the {pillar} micro-habit a daily routine"],
        "week2": ["Extend the {pillar} routine by a few minutes"],
        "month1": ["Review the {pillar} plan and adjust what is not working"],
    },
    "coaching_strategy": {
        "intervention_triggers": ["After three days without activity", "When the first weekly goal is reached"],
        "support_messages": [
            "Small steps still count. Pick up your {pillar} habit again today.",
            "Well done on reaching your first {pillar} goal.",
        ],
        "celebration_moments": ["Every seventh consecutive day", "Each milestone reached"],
    },
}


def _clean_list(value: Any, default: list[str]) -> list[str]:
    if isinstance(value, str):
        value = [value]
    items: list[str] = []
    if isinstance(value, list):
        for item in value:
            if not isinstance(item, str):
                continue
            text = item.strip()
            if text:
                items.append(text)
    if not items:
        items = list(default)
    return items[:MAX_ITEMS_PER_COLLECTION]


def _first_present(source: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in source:
            return source[key]
    return None


def normalize_output(payload: dict[str, Any]) -> PedagogicalOutput:
    """Default every collection to a non-empty list so fan-out never branches on missing data."""
    analysis = payload.get("analysis")
    analysis = analysis.strip() if isinstance(analysis, str) else ""

    sections: dict[str, dict[str, list[str]]] = {}
    for section, (section_keys, fields) in OUTPUT_LAYOUT.items():
        raw_section = _first_present(payload, section_keys)
        if not isinstance(raw_section, dict):
            raw_section = {}
        sections[section] = {
            name: _clean_list(_first_present(raw_section, keys), PLACEHOLDERS[section][name])
            for name, keys in fields.items()
        }

    return PedagogicalOutput.model_validate(
        {
            "analysis": analysis or DEFAULT_ANALYSIS,
            **sections,
        }
    )


def fallback_output(pillar_type: str, raw_text: str) -> dict[str, Any]:
    pillar = pillar_display_name(pillar_type).lower()
    text = (raw_text or "").strip()
    if text:
        analysis = text[:MAX_FALLBACK_ANALYSIS_CHARS]
    else:
        analysis = (
            f"Your {pillar} assessment has been recorded. A detailed analysis is not available "
            "right now, so this plan starts from proven general guidance."
        )
    payload: dict[str, Any] = {"analysis": analysis}
    for section, fields in FALLBACK_TEMPLATES.items():
        payload[section] = {
            name: [template.format(pillar=pillar) for template in templates]
            for name, templates in fields.items()
        }
    return payload


def build_pedagogical_output(
    result: CompletionResult,
    *,
    pillar_type: str,
) -> tuple[PedagogicalOutput, dict[str, Any]]:
    if isinstance(result, StructuredOutput):
        return normalize_output(result.payload), {"source": "structured", "reason": "ok"}

    logger.warning("Completion for %s fell back to template guidance: %s", pillar_type, result.reason)
    output = normalize_output(fallback_output(pillar_type, result.text))
    return output, {"source": "fallback", "reason": result.reason, **result.meta}


def build_prompt(
    *,
    pillar_type: str,
    scores: dict[str, float],
    assessment_data: dict[str, Any],
    comments: str | None,
    context: dict[str, Any],
) -> str:
    response_schema: dict[str, Any] = {"analysis": "string"}
    for section, (_, fields) in OUTPUT_LAYOUT.items():
        response_schema[section] = {name: ["string"] for name in fields}

    prompt = {
        "task": (
            "Turn this self-assessment into a self-instructing development plan. "
            "Return JSON only. No markdown or prose."
        ),
        "constraints": {
            "language": "match the user's answers",
            "daily_micro_habit_minutes": [2, 15],
            "items_per_collection_max": MAX_ITEMS_PER_COLLECTION,
        },
        "context": context,
        "submission": {
            "pillar_type": pillar_type,
            "pillar_name": pillar_display_name(pillar_type),
            "scores": scores,
            "answers": assessment_data,
            "comments": comments,
        },
        "response_schema": response_schema,
    }
    return json.dumps(prompt, sort_keys=True, default=str)
