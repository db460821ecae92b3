from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.nest_models import CHECKIN_COMPLETED, CHECKIN_PENDING, Checkin, Gear, GearRequestGear


UNKNOWN_GEAR = "Unknown Gear"


def unit_quantity(raw: Any) -> int:
    """Quantity of a line or check-in row; missing or non-positive values count as one unit."""
    try:
        value = int(raw if raw is not None else 1)
    except (TypeError, ValueError):
        value = 1
    return max(1, value)


def _empty_summary(request_id: str) -> dict:
    return {
        "requestId": request_id,
        "totalRequestedQty": 0,
        "totalCompletedQty": 0,
        "totalPendingQty": 0,
        "totalOutstandingQty": 0,
        "lines": [],
    }


def summarize_request_lines(
    request_ids: Iterable[str],
    request_lines: Iterable[dict],
    checkin_rows: Iterable[dict],
) -> dict[str, dict]:
    """Reconcile requested quantities against returned quantities per (request, gear).

    ``request_lines`` rows carry ``request_id``, ``gear_id``, ``quantity`` and an
    optional ``gear_name``; ``checkin_rows`` carry ``request_id``, ``gear_id``,
    ``status`` and ``quantity``. Only Completed and pending check-ins count.
    """
    summaries: dict[str, dict] = {}
    for request_id in request_ids:
        if request_id and request_id not in summaries:
            summaries[request_id] = _empty_summary(request_id)

    requested_by_key: dict[tuple[str, str], int] = {}
    gear_name_by_key: dict[tuple[str, str], str] = {}
    for line in request_lines:
        key = (str(line["request_id"]), str(line["gear_id"]))
        requested_by_key[key] = requested_by_key.get(key, 0) + unit_quantity(line.get("quantity"))
        if key not in gear_name_by_key:
            gear_name_by_key[key] = line.get("gear_name") or UNKNOWN_GEAR

    completed_by_key: dict[tuple[str, str], int] = {}
    pending_by_key: dict[tuple[str, str], int] = {}
    for row in checkin_rows:
        if not row.get("request_id"):
            continue
        key = (str(row["request_id"]), str(row["gear_id"]))
        quantity = unit_quantity(row.get("quantity"))
        if row.get("status") == CHECKIN_COMPLETED:
            completed_by_key[key] = completed_by_key.get(key, 0) + quantity
        elif row.get("status") == CHECKIN_PENDING:
            pending_by_key[key] = pending_by_key.get(key, 0) + quantity

    for key, requested_qty in requested_by_key.items():
        request_id, gear_id = key
        summary = summaries.get(request_id)
        if summary is None:
            continue
        completed_qty = completed_by_key.get(key, 0)
        pending_qty = pending_by_key.get(key, 0)
        outstanding_qty = max(0, requested_qty - completed_qty - pending_qty)
        summary["lines"].append(
            {
                "requestId": request_id,
                "gearId": gear_id,
                "gearName": gear_name_by_key.get(key, UNKNOWN_GEAR),
                "requestedQty": requested_qty,
                "completedQty": completed_qty,
                "pendingQty": pending_qty,
                "outstandingQty": outstanding_qty,
            }
        )
        summary["totalRequestedQty"] += requested_qty
        summary["totalCompletedQty"] += completed_qty
        summary["totalPendingQty"] += pending_qty
        summary["totalOutstandingQty"] += outstanding_qty

    for summary in summaries.values():
        summary["lines"].sort(key=lambda line: line["gearName"].lower())
    return summaries


def build_request_summaries(db: Session, request_ids: Iterable[str | None]) -> dict[str, dict]:
    ids = sorted({str(value) for value in request_ids if value})
    if not ids:
        return {}

    line_rows = db.execute(
        select(
            GearRequestGear.gear_request_id,
            GearRequestGear.gear_id,
            GearRequestGear.quantity,
            Gear.name,
        )
        .outerjoin(Gear, Gear.id == GearRequestGear.gear_id)
        .where(GearRequestGear.gear_request_id.in_(ids))
    ).all()

    return_rows = db.execute(
        select(Checkin.request_id, Checkin.gear_id, Checkin.status, Checkin.quantity)
        .where(Checkin.request_id.in_(ids))
        .where(Checkin.status.in_([CHECKIN_COMPLETED, CHECKIN_PENDING]))
    ).all()

    return summarize_request_lines(
        ids,
        [
            {"request_id": row[0], "gear_id": row[1], "quantity": row[2], "gear_name": row[3]}
            for row in line_rows
        ],
        [
            {"request_id": row[0], "gear_id": row[1], "status": row[2], "quantity": row[3]}
            for row in return_rows
        ],
    )
