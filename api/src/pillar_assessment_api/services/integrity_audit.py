from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from ..config import get_reconciliation_config
from .assessment_reader import UnifiedAssessment, get_assessments

logger = logging.getLogger(__name__)


@dataclass
class HealthReport:
    status: str
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
        }


def classify_status(issue_count: int) -> str:
    if issue_count == 0:
        return "healthy"
    if issue_count <= 2:
        return "warning"
    return "critical"


def audit_assessments(assessments: list[UnifiedAssessment], *, analysis_min_chars: int) -> HealthReport:
    issues: list[str] = []
    recommendations: list[str] = []

    # The reader should make this impossible; it guards against reader bugs and race windows.
    pillar_counts = Counter(a.pillar_type for a in assessments)
    for pillar_type, count in sorted(pillar_counts.items()):
        if count > 1:
            issues.append(f"Duplicate assessments found for {pillar_type} ({count} copies)")
            recommendations.append(f"Consider data cleanup for {pillar_type} pillar")

    thin = sorted(a.pillar_type for a in assessments if len(a.ai_analysis or "") < analysis_min_chars)
    if thin:
        issues.append(f"{len(thin)} assessments missing proper AI analysis ({', '.join(thin)})")
        recommendations.append("Re-run AI analysis for incomplete assessments")

    sources = Counter(a.source for a in assessments)
    if sources["legacy"] and not (sources["canonical"] or sources["hybrid"]):
        issues.append("User has only legacy data, no canonical assessment records")
        recommendations.append("Run legacy data migration")

    return HealthReport(status=classify_status(len(issues)), issues=issues, recommendations=recommendations)


def perform_health_check(db: Session, user_id: str) -> HealthReport:
    cfg = get_reconciliation_config()
    try:
        assessments = get_assessments(db, user_id)
        report = audit_assessments(assessments, analysis_min_chars=cfg.audit_analysis_min_chars)
    except Exception as exc:  # noqa: BLE001
        logger.error("Health check failed for user %s: %s", user_id, exc)
        return HealthReport(
            status="critical",
            issues=[f"Health check failed: {exc}"],
            recommendations=["Contact system administrator"],
        )

    if report.status != "healthy":
        logger.warning("Health check for user %s is %s: %s", user_id, report.status, "; ".join(report.issues))
    return report
