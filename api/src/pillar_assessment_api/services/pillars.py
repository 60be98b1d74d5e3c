from __future__ import annotations

from typing import Any


PILLAR_DISPLAY_NAMES: dict[str, str] = {
    "talent": "Talent",
    "skills": "Skills",
    "brand": "Brand",
    "economy": "Economy",
    "self_care": "Self-care",
    "open_track": "Open track",
}

PILLAR_TYPES: tuple[str, ...] = tuple(PILLAR_DISPLAY_NAMES)

# Evaluated in order; the first pillar whose keyword appears in the title wins.
PILLAR_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("talent", ("talent", "talang")),
    ("skills", ("skills", "kompetens", "färdigheter")),
    ("brand", ("brand", "varumärke")),
    ("economy", ("economy", "ekonomi")),
    ("self_care", ("self_care", "self-care", "hälsa", "självomvårdnad")),
    ("open_track", ("open_track", "open track", "öppet spår")),
)


def is_pillar(value: Any) -> bool:
    return isinstance(value, str) and value in PILLAR_DISPLAY_NAMES


def pillar_display_name(pillar_type: str) -> str:
    return PILLAR_DISPLAY_NAMES.get(pillar_type, pillar_type)


def classify_pillar(title: str | None, metadata: dict[str, Any] | None) -> str | None:
    """
    Resolve the pillar a legacy entry belongs to.
    Explicit metadata wins; otherwise fall back to keyword matching on the title.
    """
    meta = metadata or {}
    explicit = meta.get("pillar_type")
    if isinstance(explicit, str):
        explicit = explicit.strip().lower()
        if is_pillar(explicit):
            return explicit

    text = (title or "").lower()
    if not text:
        return None
    for pillar_type, keywords in PILLAR_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return pillar_type
    return None
