from __future__ import annotations

import math
from datetime import date, datetime, time

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from models.nest_models import (
    CHECKIN_COMPLETED,
    CHECKIN_PENDING,
    CHECKIN_REJECTED,
    Checkin,
    Gear,
    GearRequest,
)
from services.request_summary_service import UNKNOWN_GEAR, unit_quantity


def serialize_checkin(checkin: Checkin) -> dict:
    profile = checkin.profile
    gear = checkin.gear
    return {
        "id": checkin.id,
        "userId": checkin.user_id,
        "userName": profile.full_name if profile and profile.full_name else "Unknown User",
        "avatarUrl": profile.avatar_url if profile else None,
        "gearId": checkin.gear_id,
        "gearName": gear.name if gear and gear.name else UNKNOWN_GEAR,
        "quantity": unit_quantity(checkin.quantity),
        "checkinDate": checkin.checkin_date or checkin.created_at,
        "status": checkin.status,
        "condition": checkin.condition,
        "notes": checkin.notes or "",
        "damageNotes": checkin.damage_notes,
        "requestId": checkin.request_id or (gear.current_request_id if gear else None),
        "approvedBy": checkin.approved_by,
        "approvedAt": checkin.approved_at,
        "profile": {
            "id": profile.id,
            "fullName": profile.full_name,
            "avatarUrl": profile.avatar_url,
        } if profile else None,
        "gear": {
            "id": gear.id,
            "name": gear.name,
            "category": gear.category,
            "status": gear.status,
            "condition": gear.condition,
        } if gear else None,
    }


def list_checkins(
    db: Session,
    limit: int = 10,
    page: int = 1,
    status: str | None = None,
    user_id: str | None = None,
) -> tuple[list[Checkin], int]:
    filters = []
    if user_id:
        filters.append(Checkin.user_id == user_id)
    if status:
        filters.append(Checkin.status == status)

    total = db.execute(select(func.count(Checkin.id)).where(*filters)).scalar() or 0
    offset = (max(page, 1) - 1) * limit
    rows = db.execute(
        select(Checkin)
        .options(selectinload(Checkin.profile), selectinload(Checkin.gear))
        .where(*filters)
        .order_by(Checkin.created_at.desc(), Checkin.id)
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return list(rows), int(total)


def build_pagination(total: int, page: int, limit: int) -> dict:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(total / limit) if total and limit else 0,
    }


def checkin_stats(db: Session, today: date | None = None) -> dict:
    current_day = today or date.today()
    day_start = datetime.combine(current_day, time.min)
    day_end = datetime.combine(current_day, time.max)

    def _count(*criteria) -> int:
        return int(db.execute(select(func.count(Checkin.id)).where(*criteria)).scalar() or 0)

    return {
        "pendingApprovals": _count(Checkin.status == CHECKIN_PENDING),
        "completedToday": _count(
            Checkin.status == CHECKIN_COMPLETED,
            Checkin.checkin_date >= day_start,
            Checkin.checkin_date <= day_end,
        ),
        "rejected": _count(Checkin.status == CHECKIN_REJECTED),
    }


def get_request_history(db: Session, request_id: str) -> dict | None:
    request = db.execute(
        select(GearRequest)
        .options(selectinload(GearRequest.history), selectinload(GearRequest.lines))
        .where(GearRequest.id == request_id)
    ).scalars().first()
    if not request:
        return None
    gear_names = {
        gear.id: gear.name
        for gear in db.execute(
            select(Gear).where(Gear.id.in_([line.gear_id for line in request.lines]))
        ).scalars().all()
    } if request.lines else {}
    return {
        "requestId": request.id,
        "userId": request.user_id,
        "status": request.status,
        "updatedAt": request.updated_at,
        "lines": [
            {
                "gearId": line.gear_id,
                "gearName": gear_names.get(line.gear_id) or UNKNOWN_GEAR,
                "quantity": unit_quantity(line.quantity),
            }
            for line in request.lines
        ],
        "history": [
            {
                "status": entry.status,
                "changedBy": entry.changed_by,
                "note": entry.note,
                "changedAt": entry.changed_at,
            }
            for entry in request.history
        ],
    }
