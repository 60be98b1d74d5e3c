from __future__ import annotations

from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Response, status
from sqlalchemy import Connection, select
from sqlalchemy.orm import Session as DBSession

from .db import Base, engine, get_db
from .models import (
    CoachingIntervention,
    CoachingRecommendation,
    DetailedAnalysis,
    Profile,
    ScheduledAction,
)
from .schemas import (
    AssessmentSubmission,
    DetailedAnalysisOut,
    HealthCheckOut,
    HealthOut,
    InterventionOut,
    MigrationOut,
    ProcessOut,
    ProcessRequest,
    RecommendationOut,
    ScheduledActionOut,
    UnifiedAssessmentOut,
    UserCreate,
    UserOut,
    WriteOut,
)
from .services.assessment_reader import get_assessments
from .services.assessment_writer import ERROR_KEY_CONFLICT, AssessmentWriteRequest, save_assessment
from .services.integrity_audit import perform_health_check
from .services.legacy_migration import migrate_legacy_data
from .services.transformation import AssessmentInput, process_assessment


app = FastAPI(
    title="Pillar Assessment API",
    version="0.1.0",
    description=(
        "Assessment reconciliation and fan-out pipeline. "
        "Design: canonical assessment table + legacy event log, idempotent writer, "
        "AI development plan exploded into independent downstream records."
    ),
)


def _sqlite_table_exists(conn: Connection, table_name: str) -> bool:
    row = conn.exec_driver_sql(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table_name,),
    ).first()
    return row is not None


def _sqlite_table_columns(conn: Connection, table_name: str) -> set[str]:
    rows = conn.exec_driver_sql(f"PRAGMA table_info('{table_name}')").all()
    # PRAGMA table_info columns: cid, name, type, notnull, dflt_value, pk
    return {str(r[1]) for r in rows}


def _apply_sqlite_compat_migrations() -> None:
    """
    Bring local SQLite files created before lineage tracking up to the current schema.
    """
    with engine.begin() as conn:
        if conn.dialect.name != "sqlite":
            return

        if _sqlite_table_exists(conn, "assessment_rounds"):
            cols = _sqlite_table_columns(conn, "assessment_rounds")
            if "lineage_json" not in cols:
                conn.exec_driver_sql(
                    "ALTER TABLE assessment_rounds ADD COLUMN lineage_json JSON NOT NULL DEFAULT '{}'"
                )
            if "idempotency_key" not in cols:
                conn.exec_driver_sql("ALTER TABLE assessment_rounds ADD COLUMN idempotency_key VARCHAR(120)")
            if "dedup_bucket" not in cols:
                conn.exec_driver_sql("ALTER TABLE assessment_rounds ADD COLUMN dedup_bucket INTEGER")
            conn.exec_driver_sql(
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_assessment_round_window_idx "
                "ON assessment_rounds (user_id, pillar_type, dedup_bucket)"
            )
            conn.exec_driver_sql(
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_assessment_round_idempotency_key_idx "
                "ON assessment_rounds (user_id, idempotency_key)"
            )


@app.on_event("startup")
def on_startup() -> None:
    Base.metadata.create_all(bind=engine)
    _apply_sqlite_compat_migrations()


def _failure_status(error: str | None) -> int:
    if error and error.startswith(ERROR_KEY_CONFLICT):
        return status.HTTP_409_CONFLICT
    return status.HTTP_503_SERVICE_UNAVAILABLE


def _must_get_user(db: DBSession, user_id: str) -> Profile:
    profile = db.get(Profile, user_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return profile


@app.get("/health", response_model=HealthOut)
def health() -> HealthOut:
    return HealthOut(ok=True, service="pillar-assessment-api")


@app.post("/v1/users", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, db: Annotated[DBSession, Depends(get_db)]) -> Profile:
    profile = Profile(
        display_name=payload.display_name.strip(),
        email=payload.email,
        journey_phase=payload.journey_phase,
        profile_metadata=payload.profile_metadata,
    )
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


@app.get("/v1/users/{user_id}", response_model=UserOut)
def get_user(user_id: str, db: Annotated[DBSession, Depends(get_db)]) -> Profile:
    return _must_get_user(db, user_id)


@app.post("/v1/assessments", response_model=WriteOut, status_code=status.HTTP_201_CREATED)
def submit_assessment(
    payload: AssessmentSubmission,
    response: Response,
    db: Annotated[DBSession, Depends(get_db)],
) -> WriteOut:
    result = save_assessment(
        db,
        AssessmentWriteRequest(
            user_id=payload.user_id,
            pillar_type=payload.pillar_type,
            assessment_data=payload.assessment_data,
            scores=payload.scores,
            comments=payload.comments,
            ai_analysis=payload.ai_analysis,
            idempotency_key=payload.idempotency_key,
            force_update=payload.force_update,
        ),
    )
    if not result.success:
        response.status_code = _failure_status(result.error)
    elif result.was_duplicate:
        response.status_code = status.HTTP_200_OK
    return WriteOut(**result.to_dict())


@app.post("/v1/assessments/process", response_model=ProcessOut)
def process_submission(
    payload: ProcessRequest,
    response: Response,
    db: Annotated[DBSession, Depends(get_db)],
) -> ProcessOut:
    result = process_assessment(
        db,
        AssessmentInput(
            user_id=payload.user_id,
            pillar_type=payload.pillar_type,
            assessment_data=payload.assessment_data,
            scores=payload.scores,
            comments=payload.comments,
            idempotency_key=payload.idempotency_key,
            force_update=payload.force_update,
        ),
    )
    if not result.success:
        response.status_code = _failure_status(result.error)
    return ProcessOut(**result.to_dict())


@app.get("/v1/users/{user_id}/assessments", response_model=list[UnifiedAssessmentOut])
def list_assessments(user_id: str, db: Annotated[DBSession, Depends(get_db)]) -> list[UnifiedAssessmentOut]:
    return [UnifiedAssessmentOut(**a.to_dict()) for a in get_assessments(db, user_id)]


@app.get("/v1/users/{user_id}/assessments/health", response_model=HealthCheckOut)
def assessment_health(user_id: str, db: Annotated[DBSession, Depends(get_db)]) -> HealthCheckOut:
    return HealthCheckOut(**perform_health_check(db, user_id).to_dict())


@app.post("/v1/users/{user_id}/assessments/migrate-legacy", response_model=MigrationOut)
def migrate_legacy(user_id: str, db: Annotated[DBSession, Depends(get_db)]) -> MigrationOut:
    return MigrationOut(**migrate_legacy_data(db, user_id).to_dict())


@app.get("/v1/users/{user_id}/analyses", response_model=list[DetailedAnalysisOut])
def list_analyses(user_id: str, db: Annotated[DBSession, Depends(get_db)]) -> list[DetailedAnalysis]:
    return db.scalars(
        select(DetailedAnalysis)
        .where(DetailedAnalysis.user_id == user_id)
        .order_by(DetailedAnalysis.created_at.desc(), DetailedAnalysis.id.desc())
    ).all()


@app.get("/v1/users/{user_id}/recommendations", response_model=list[RecommendationOut])
def list_recommendations(user_id: str, db: Annotated[DBSession, Depends(get_db)]) -> list[CoachingRecommendation]:
    return db.scalars(
        select(CoachingRecommendation)
        .where(CoachingRecommendation.user_id == user_id)
        .order_by(CoachingRecommendation.due_date.asc(), CoachingRecommendation.id.asc())
    ).all()


@app.get("/v1/users/{user_id}/scheduled-actions", response_model=list[ScheduledActionOut])
def list_scheduled_actions(user_id: str, db: Annotated[DBSession, Depends(get_db)]) -> list[ScheduledAction]:
    return db.scalars(
        select(ScheduledAction)
        .where(ScheduledAction.user_id == user_id)
        .order_by(ScheduledAction.scheduled_date.asc(), ScheduledAction.id.asc())
    ).all()


@app.get("/v1/users/{user_id}/interventions", response_model=list[InterventionOut])
def list_interventions(user_id: str, db: Annotated[DBSession, Depends(get_db)]) -> list[CoachingIntervention]:
    return db.scalars(
        select(CoachingIntervention)
        .where(CoachingIntervention.user_id == user_id)
        .order_by(CoachingIntervention.id.asc())
    ).all()
