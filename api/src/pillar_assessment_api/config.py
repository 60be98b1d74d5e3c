from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class ReconciliationConfig:
    dedup_window_minutes: int
    legacy_analysis_min_chars: int
    audit_analysis_min_chars: int
    prior_assessment_limit: int

    @property
    def dedup_window_seconds(self) -> int:
        return max(1, self.dedup_window_minutes * 60)


def get_reconciliation_config() -> ReconciliationConfig:
    return ReconciliationConfig(
        dedup_window_minutes=_int_env("ASSESSMENT_DEDUP_WINDOW_MINUTES", 5),
        legacy_analysis_min_chars=_int_env("LEGACY_ANALYSIS_MIN_CHARS", 100),
        audit_analysis_min_chars=_int_env("AUDIT_ANALYSIS_MIN_CHARS", 50),
        prior_assessment_limit=_int_env("PRIOR_ASSESSMENT_LIMIT", 3),
    )


@dataclass(frozen=True)
class CompletionConfig:
    enabled: bool
    model: str
    api_key: str | None
    timeout_seconds: int


def get_completion_config() -> CompletionConfig:
    enabled = os.getenv("USE_GEMINI_COMPLETION", "false").strip().lower() in {"1", "true", "yes"}
    model = os.getenv("GEMINI_MODEL", "gemini-3-flash-preview")
    api_key = os.getenv("GEMINI_API_KEY")
    return CompletionConfig(
        enabled=enabled,
        model=model,
        api_key=api_key,
        timeout_seconds=max(1, _int_env("COMPLETION_TIMEOUT_SECONDS", 30)),
    )
