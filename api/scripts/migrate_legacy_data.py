from __future__ import annotations

import argparse
import datetime as dt
import json
import logging
from pathlib import Path

from pillar_assessment_api.db import Base, SessionLocal, engine
import pillar_assessment_api.models  # noqa: F401
from pillar_assessment_api.services.integrity_audit import perform_health_check
from pillar_assessment_api.services.legacy_migration import migrate_all_users, migrate_legacy_data

ROOT = Path(__file__).resolve().parents[1]
REPORT_PATH = ROOT / "reports" / "legacy_migration.json"


def _ensure_schema() -> None:
    # Can run against a fresh workspace with an empty SQLite file.
    Base.metadata.create_all(bind=engine)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill canonical assessments from the legacy event log.")
    parser.add_argument(
        "--user-id",
        action="append",
        dest="user_ids",
        default=None,
        help="User to migrate (repeatable). Defaults to every user with legacy entries.",
    )
    parser.add_argument("--no-report", action="store_true", help="Print the report without writing it to disk.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    _ensure_schema()

    with SessionLocal() as db:
        if args.user_ids:
            results = {user_id: migrate_legacy_data(db, user_id) for user_id in args.user_ids}
        else:
            results = migrate_all_users(db)
        health = {user_id: perform_health_check(db, user_id).to_dict() for user_id in results}

    users = {
        user_id: {"migration": result.to_dict(), "health": health[user_id]}
        for user_id, result in results.items()
    }
    error_count = sum(len(result.errors) for result in results.values())
    report = {
        "generated_at": dt.datetime.now(dt.timezone.utc).isoformat(),
        "status": "PASS" if error_count == 0 else "FAIL",
        "users_processed": len(users),
        "migrated_total": sum(result.migrated_count for result in results.values()),
        "skipped_total": sum(result.skipped_count for result in results.values()),
        "error_total": error_count,
        "users": users,
    }
    if not args.no_report:
        REPORT_PATH.parent.mkdir(parents=True, exist_ok=True)
        REPORT_PATH.write_text(json.dumps(report, indent=2), encoding="utf-8")
    print(json.dumps(report, indent=2))
    return 0 if error_count == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
