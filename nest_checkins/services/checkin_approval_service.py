from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session, selectinload

from models.nest_models import (
    CHECKIN_COMPLETED,
    CHECKIN_PENDING,
    CHECKIN_REJECTED,
    REQUEST_COMPLETED,
    Checkin,
    Gear,
    GearRequest,
    GearRequestGear,
    RequestStatusHistory,
)
from services.checkin_grouping_service import NO_DATE, format_day, parse_group_key
from services.gear_availability_service import apply_completed_checkin, apply_pending_checkin
from services.request_summary_service import UNKNOWN_GEAR, unit_quantity


logger = logging.getLogger("nest_checkins.approval")

CHECKIN_TRANSITIONS = {
    CHECKIN_PENDING: {CHECKIN_COMPLETED, CHECKIN_REJECTED},
    CHECKIN_COMPLETED: set(),
    CHECKIN_REJECTED: set(),
}
REQUEST_COMPLETED_NOTE = "All gear checked in - request completed"


class CheckinNotFoundError(LookupError):
    pass


class GearNotFoundError(LookupError):
    pass


class CheckinStateError(ValueError):
    pass


class CheckinConflictError(RuntimeError):
    pass


class GroupAlreadyProcessedError(LookupError):
    pass


class RejectionReasonRequired(ValueError):
    pass


def _ensure_transition(checkin: Checkin, target: str) -> None:
    current = checkin.status or CHECKIN_PENDING
    if target not in CHECKIN_TRANSITIONS.get(current, set()):
        raise CheckinStateError(f"Invalid check-in transition: {current} -> {target}")


def _load_checkin(db: Session, checkin_id: str) -> Checkin:
    checkin = db.execute(
        select(Checkin)
        .options(selectinload(Checkin.gear), selectinload(Checkin.profile))
        .where(Checkin.id == checkin_id)
    ).scalars().first()
    if not checkin:
        raise CheckinNotFoundError(f"Check-in {checkin_id} not found.")
    return checkin


def _effective_checkin_date(checkin: Checkin) -> datetime | None:
    return checkin.checkin_date or checkin.created_at


def _linked_request_id(checkin: Checkin) -> str | None:
    # Unlinked rows belong to the request their gear is still checked out under.
    if checkin.request_id:
        return checkin.request_id
    return checkin.gear.current_request_id if checkin.gear else None


def _link_request(checkins: list[Checkin], request_id: str | None) -> None:
    if not request_id:
        return
    for checkin in checkins:
        if not checkin.request_id:
            checkin.request_id = request_id


def _gear_label(checkin: Checkin) -> str:
    name = checkin.gear.name if checkin.gear and checkin.gear.name else UNKNOWN_GEAR
    return f"{name} (x{unit_quantity(checkin.quantity)})"


def _outcome(action: str, checkins: list[Checkin], admin_id: str | None, request_completed: bool = False, reason: str | None = None) -> dict:
    first = checkins[0]
    notes = " | ".join(c.notes for c in checkins if c.notes and c.status != CHECKIN_REJECTED)
    return {
        "action": action,
        "checkinIds": [c.id for c in checkins],
        "userId": first.user_id,
        "requestId": first.request_id,
        "adminId": admin_id,
        "gearNames": [_gear_label(c) for c in checkins],
        "hasDamaged": any((c.condition or "") == "Damaged" for c in checkins),
        "notes": notes,
        "checkinDate": _effective_checkin_date(first),
        "requestCompleted": request_completed,
        "reason": reason,
    }


def _mark_completed(db: Session, checkin_ids: list[str], admin_id: str | None, now: datetime) -> int:
    result = db.execute(
        update(Checkin)
        .where(Checkin.id.in_(checkin_ids))
        .where(Checkin.status == CHECKIN_PENDING)
        .values(
            status=CHECKIN_COMPLETED,
            approved_by=admin_id,
            approved_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session="fetch")
    )
    return int(result.rowcount or 0)


def submit_checkin(
    db: Session,
    *,
    user_id: str,
    gear_id: str,
    quantity: int = 1,
    condition: str | None = None,
    notes: str | None = None,
    request_id: str | None = None,
    damage_notes: str | None = None,
) -> Checkin:
    if int(quantity) < 1:
        raise CheckinStateError("quantity must be at least 1.")
    gear = db.get(Gear, gear_id)
    if not gear:
        raise GearNotFoundError(f"Gear {gear_id} not found.")

    now = datetime.now()
    checkin = Checkin(
        user_id=user_id,
        gear_id=gear_id,
        request_id=request_id or gear.current_request_id,
        quantity=int(quantity),
        checkin_date=now,
        status=CHECKIN_PENDING,
        condition=(condition or "Good").strip() or "Good",
        notes=notes,
        damage_notes=damage_notes,
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(checkin)
        apply_pending_checkin(db, checkin)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Check-in submitted id=%s user=%s gear=%s qty=%s request=%s", checkin.id, user_id, gear_id, checkin.quantity, checkin.request_id)
    return _load_checkin(db, checkin.id)


def evaluate_request_completion(db: Session, request_id: str, user_id: str | None, admin_id: str | None) -> bool:
    """Complete the request once Completed check-ins cover every requested unit.

    Runs inside the caller's transaction; the caller commits.
    """
    lines = db.execute(
        select(GearRequestGear.gear_id, GearRequestGear.quantity).where(GearRequestGear.gear_request_id == request_id)
    ).all()
    if not lines:
        return False

    total_requested = sum(unit_quantity(row[1]) for row in lines)
    stmt = (
        select(Checkin.quantity)
        .where(Checkin.request_id == request_id)
        .where(Checkin.status == CHECKIN_COMPLETED)
        .where(Checkin.gear_id.in_({row[0] for row in lines}))
    )
    if user_id:
        stmt = stmt.where(Checkin.user_id == user_id)
    completed = sum(unit_quantity(row[0]) for row in db.execute(stmt).all())
    if completed < total_requested:
        return False

    request = db.get(GearRequest, request_id)
    if not request or request.status == REQUEST_COMPLETED:
        return False
    request.status = REQUEST_COMPLETED
    request.updated_at = datetime.now()
    db.add(
        RequestStatusHistory(
            request_id=request_id,
            status=REQUEST_COMPLETED,
            changed_by=admin_id,
            note=REQUEST_COMPLETED_NOTE,
            changed_at=datetime.now(),
        )
    )
    logger.info("Request completed request=%s completed=%s requested=%s", request_id, completed, total_requested)
    return True


def approve_checkin(db: Session, checkin_id: str, admin_id: str | None) -> dict:
    checkin = _load_checkin(db, checkin_id)
    _ensure_transition(checkin, CHECKIN_COMPLETED)

    request_id = _linked_request_id(checkin)
    request_completed = False
    try:
        if _mark_completed(db, [checkin.id], admin_id, datetime.now()) != 1:
            raise CheckinConflictError("Check-in was already processed.")
        _link_request([checkin], request_id)
        apply_completed_checkin(db, checkin)
        db.flush()
        if request_id:
            request_completed = evaluate_request_completion(db, request_id, checkin.user_id, admin_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Check-in approved id=%s admin=%s request_completed=%s", checkin.id, admin_id, request_completed)
    return _outcome("approve", [checkin], admin_id, request_completed)


def _pending_rows_for_group(db: Session, group_key: str) -> list[Checkin]:
    kind, identifier, day = parse_group_key(group_key)
    stmt = (
        select(Checkin)
        .options(selectinload(Checkin.gear), selectinload(Checkin.profile))
        .where(Checkin.status == CHECKIN_PENDING)
        .order_by(Checkin.checkin_date)
    )
    if kind == "req":
        return list(
            db.execute(
                stmt.where(
                    or_(
                        Checkin.request_id == identifier,
                        and_(
                            Checkin.request_id.is_(None),
                            Checkin.gear.has(Gear.current_request_id == identifier),
                        ),
                    )
                )
            ).scalars().all()
        )

    rows = db.execute(
        stmt.where(Checkin.user_id == identifier)
        .where(Checkin.request_id.is_(None))
        .where(~Checkin.gear.has(Gear.current_request_id.is_not(None)))
    ).scalars().all()
    if day == NO_DATE:
        return [row for row in rows if _effective_checkin_date(row) is None]
    return [row for row in rows if format_day(_effective_checkin_date(row)) == day]


def approve_group(db: Session, group_key: str, admin_id: str | None) -> dict:
    kind, identifier, _ = parse_group_key(group_key)
    # Re-read the pending rows instead of trusting the caller's page.
    group = _pending_rows_for_group(db, group_key)
    if not group:
        raise GroupAlreadyProcessedError("This group was already processed.")

    checkin_ids = [row.id for row in group]
    request_id = identifier if kind == "req" else None
    request_completed = False
    try:
        updated = _mark_completed(db, checkin_ids, admin_id, datetime.now())
        if updated != len(checkin_ids):
            logger.warning("Group approval conflict key=%s expected=%s updated=%s", group_key, len(checkin_ids), updated)
            raise CheckinConflictError("Some check-ins in this group were processed by someone else. Reload and try again.")
        _link_request(group, request_id)
        for row in group:
            apply_completed_checkin(db, row)
        db.flush()
        if request_id:
            request_completed = evaluate_request_completion(db, request_id, group[0].user_id, admin_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Check-in group approved key=%s count=%s admin=%s request_completed=%s", group_key, len(checkin_ids), admin_id, request_completed)
    return _outcome("approve_group", group, admin_id, request_completed)


def reject_checkin(db: Session, checkin_id: str, admin_id: str | None, reason: str | None) -> dict:
    reason_text = (reason or "").strip()
    if not reason_text:
        raise RejectionReasonRequired("Rejection reason is required.")

    checkin = _load_checkin(db, checkin_id)
    _ensure_transition(checkin, CHECKIN_REJECTED)
    now = datetime.now()
    try:
        result = db.execute(
            update(Checkin)
            .where(Checkin.id == checkin.id)
            .where(Checkin.status == CHECKIN_PENDING)
            .values(status=CHECKIN_REJECTED, notes=f"Rejected: {reason_text}", updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        if int(result.rowcount or 0) != 1:
            raise CheckinConflictError("Check-in was already processed.")
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Check-in rejected id=%s admin=%s", checkin.id, admin_id)
    return _outcome("reject", [checkin], admin_id, reason=reason_text)
