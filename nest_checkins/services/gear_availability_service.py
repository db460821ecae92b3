from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.nest_models import CHECKIN_PENDING, Checkin, Gear


def _pending_quantity(db: Session, gear_id: str, exclude_checkin_id: str | None = None) -> int:
    stmt = (
        select(func.coalesce(func.sum(func.coalesce(Checkin.quantity, 1)), 0))
        .where(Checkin.gear_id == gear_id)
        .where(Checkin.status == CHECKIN_PENDING)
    )
    if exclude_checkin_id:
        stmt = stmt.where(Checkin.id != exclude_checkin_id)
    return int(db.execute(stmt).scalar() or 0)


def apply_pending_checkin(db: Session, checkin: Checkin) -> Gear | None:
    """Reserve the returned units on the gear while the check-in waits for an admin."""
    gear = db.get(Gear, checkin.gear_id)
    if not gear:
        return None
    db.flush()
    total = int(gear.quantity or 1)
    available = max(0, total - _pending_quantity(db, gear.id))
    gear.available_quantity = available
    if available == 0:
        gear.status = "Pending Check-in"
    elif available < total:
        gear.status = "Partially Available"
    gear.updated_at = datetime.now()
    return gear


def apply_completed_checkin(db: Session, checkin: Checkin) -> Gear | None:
    gear = db.get(Gear, checkin.gear_id)
    if not gear:
        return None
    total = int(gear.quantity or 1)
    available = max(0, total - _pending_quantity(db, gear.id, exclude_checkin_id=checkin.id))
    gear.available_quantity = available
    if (checkin.condition or "").strip() == "Damaged":
        gear.status = "Needs Repair"
    elif available == 0:
        gear.status = "Checked Out"
    elif available < total:
        gear.status = "Partially Available"
    else:
        gear.status = "Available"
    gear.checked_out_to = None
    gear.current_request_id = None
    gear.updated_at = datetime.now()
    return gear
