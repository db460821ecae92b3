#!/usr/bin/env python3
"""Database overview and integrity checks for the Nest check-in tables."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "profiles",
    "gears",
    "gear_requests",
    "gear_request_gears",
    "request_status_history",
    "checkins",
    "notifications",
    "notification_queue",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "checkins": [
        "id",
        "user_id",
        "gear_id",
        "request_id",
        "quantity",
        "checkin_date",
        "status",
        "condition",
        "notes",
        "damage_notes",
        "approved_by",
        "approved_at",
        "created_at",
        "updated_at",
    ],
    "gear_request_gears": ["id", "gear_request_id", "gear_id", "quantity"],
    "gear_requests": ["id", "user_id", "status", "updated_at"],
    "request_status_history": ["id", "request_id", "status", "changed_by", "note", "changed_at"],
    "gears": ["id", "name", "status", "quantity", "available_quantity", "current_request_id"],
}

REQUEST_STATUSES = (
    "New",
    "Pending",
    "Approved",
    "Checked Out",
    "Partially Returned",
    "Completed",
    "Overdue",
    "Cancelled",
    "Rejected",
)

# Requests whose owner's Completed check-ins for the requested gear already cover
# every requested unit but whose status never reached Completed.
LAGGING_REQUESTS_SQL = """
    SELECT r.id, r.status, req.requested, COALESCE(done.completed, 0) AS completed
    FROM gear_requests r
    JOIN (
        SELECT gear_request_id, SUM(CASE WHEN quantity IS NULL OR quantity < 1 THEN 1 ELSE quantity END) AS requested
        FROM gear_request_gears
        GROUP BY gear_request_id
    ) req ON req.gear_request_id = r.id
    LEFT JOIN (
        SELECT c.request_id, SUM(CASE WHEN c.quantity IS NULL OR c.quantity < 1 THEN 1 ELSE c.quantity END) AS completed
        FROM checkins c
        JOIN gear_requests owner ON owner.id = c.request_id AND owner.user_id = c.user_id
        WHERE c.status = 'Completed'
          AND EXISTS (
              SELECT 1
              FROM gear_request_gears line
              WHERE line.gear_request_id = c.request_id AND line.gear_id = c.gear_id
          )
        GROUP BY c.request_id
    ) done ON done.request_id = r.id
    WHERE r.status <> 'Completed' AND COALESCE(done.completed, 0) >= req.requested
"""


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _table_names(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {column["name"] for column in inspect(engine).get_columns(table_name)}


def _run_existence_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    return [
        CheckResult(f"table:{table}", table in tables, "present" if table in tables else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in tables:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if "checkins" in tables:
        checks.append(
            _count_check(engine, "checkins:quantity_below_one", "SELECT COUNT(*) FROM checkins WHERE quantity < 1")
        )
        checks.append(
            _count_check(
                engine,
                "checkins:unknown_status",
                "SELECT COUNT(*) FROM checkins "
                "WHERE status NOT IN ('Pending Admin Approval', 'Completed', 'Rejected')",
            )
        )
        checks.append(
            _count_check(
                engine,
                "checkins:completed_without_approver",
                "SELECT COUNT(*) FROM checkins WHERE status = 'Completed' AND approved_at IS NULL",
            )
        )

    if "gear_requests" in tables:
        known = ", ".join(f"'{status}'" for status in REQUEST_STATUSES)
        checks.append(
            _count_check(
                engine,
                "gear_requests:unknown_status",
                f"SELECT COUNT(*) FROM gear_requests WHERE status NOT IN ({known})",
            )
        )

    if "checkins" in tables and "gear_requests" in tables:
        checks.append(
            _count_check(
                engine,
                "checkins:orphan_request_id",
                """
                SELECT COUNT(*)
                FROM checkins c
                LEFT JOIN gear_requests r ON r.id = c.request_id
                WHERE c.request_id IS NOT NULL AND r.id IS NULL
                """,
            )
        )

    if {"checkins", "gear_requests", "gear_request_gears"} <= tables:
        lagging = _rows(engine, LAGGING_REQUESTS_SQL)
        checks.append(
            CheckResult(
                "gear_requests:status_lags_checkins",
                not lagging,
                f"count={len(lagging)}" + (f" ids={','.join(str(row[0]) for row in lagging[:10])}" if lagging else ""),
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine, tables: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_status_breakdown(engine: Engine, tables: set[str]) -> None:
    _print_section("Check-in Status Breakdown")
    if "checkins" not in tables:
        print("checkins: missing")
        return
    for status, count in _rows(engine, "SELECT status, COUNT(*) FROM checkins GROUP BY status ORDER BY status"):
        print(f"  - {status}: {int(count or 0)}")


def _print_samples(engine: Engine, tables: set[str], sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if "checkins" in tables:
        rows = _rows(
            engine,
            """
            SELECT id, user_id, gear_id, request_id, quantity, status, checkin_date
            FROM checkins
            ORDER BY created_at DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("checkins (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "request_status_history" in tables:
        rows = _rows(
            engine,
            """
            SELECT request_id, status, changed_by, changed_at
            FROM request_status_history
            ORDER BY changed_at DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("request_status_history (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Nest check-in DB overview")
    parser.add_argument("--db-url", default=os.environ.get("NEST_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("NEST_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
        tables = _table_names(engine)
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = _run_integrity_checks(engine, tables)
    _print_results("Table Existence", _run_existence_checks(engine, tables))
    _print_results("Column Checks", _run_column_checks(engine, tables))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine, tables)
    _print_status_breakdown(engine, tables)
    _print_samples(engine, tables, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
