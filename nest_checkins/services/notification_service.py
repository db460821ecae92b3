from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.nest_models import Checkin, Notification, NotificationQueue, Profile
from services.google_chat_service import (
    ADMIN_APPROVE_CHECKIN,
    ADMIN_REJECT_CHECKIN,
    USER_CHECKIN,
    notify_google_chat,
)
from services.request_summary_service import UNKNOWN_GEAR


logger = logging.getLogger("nest_checkins.notifications")

UNKNOWN_USER = "Unknown User"
UNKNOWN_ADMIN = "Unknown Admin"
UNKNOWN_EMAIL = "Unknown Email"


def parse_json_object(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def wants_checkin_email(profile: Profile) -> bool:
    email_prefs = parse_json_object(profile.notification_preferences).get("email")
    if not isinstance(email_prefs, dict):
        return True
    return email_prefs.get("gear_checkins") is not False


def get_active_admins(db: Session) -> list[Profile]:
    return list(
        db.execute(
            select(Profile).where(Profile.role == "Admin").where(Profile.status == "Active")
        ).scalars().all()
    )


def create_in_app_notification(db: Session, user_id: str, title: str, message: str, notification_type: str = "checkin") -> Notification:
    notification = Notification(
        user_id=user_id,
        title=title,
        message=message,
        type=notification_type,
        is_read=False,
        created_at=datetime.now(),
    )
    db.add(notification)
    return notification


def queue_email(db: Session, recipient: str, subject: str, body: str, payload: dict | None = None) -> None:
    db.add(
        NotificationQueue(
            channel="email",
            recipient=recipient,
            subject=subject,
            body=body,
            payload=json.dumps(payload or {}, default=str),
            created_at=datetime.now(),
        )
    )


def queue_push(db: Session, user_id: str, title: str, body: str, data: dict | None = None) -> None:
    db.add(
        NotificationQueue(
            channel="push",
            recipient=user_id,
            subject=title,
            body=body,
            payload=json.dumps(data or {}, default=str),
            created_at=datetime.now(),
        )
    )


def _identity(profile: Profile | None, fallback_name: str) -> tuple[str, str]:
    if not profile:
        return fallback_name, UNKNOWN_EMAIL
    return profile.full_name or fallback_name, profile.email or UNKNOWN_EMAIL


def _send_chat(event_type: str, payload: dict) -> None:
    try:
        notify_google_chat(event_type, payload)
    except Exception:
        logger.exception("Google Chat notification failed event=%s", event_type)


def _notify_admins_by_email(db: Session, subject: str, lines: list[str], payload: dict) -> int:
    sent = 0
    for admin in get_active_admins(db):
        if not admin.email:
            continue
        greeting = f"Hello {admin.full_name or 'Admin'},"
        queue_email(db, admin.email, subject, "\n".join([greeting, ""] + lines), payload)
        sent += 1
    return sent


def dispatch_checkin_submitted(db: Session, checkin: Checkin) -> None:
    user_name, user_email = _identity(checkin.profile, UNKNOWN_USER)
    gear_name = checkin.gear.name if checkin.gear and checkin.gear.name else UNKNOWN_GEAR
    gear_label = f"{gear_name} (x{checkin.quantity or 1})"
    try:
        for admin in get_active_admins(db):
            create_in_app_notification(
                db,
                admin.id,
                "New Check-in",
                f"{user_name} checked in {gear_label}. Awaiting your approval.",
            )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Could not record check-in submission notifications checkin=%s", checkin.id)

    _send_chat(
        USER_CHECKIN,
        {
            "userName": user_name,
            "userEmail": user_email,
            "gearNames": [gear_label],
            "checkinDate": checkin.checkin_date,
        },
    )


def dispatch_checkin_approved(db: Session, outcome: dict) -> None:
    user = db.get(Profile, outcome["userId"])
    admin = db.get(Profile, outcome["adminId"]) if outcome.get("adminId") else None
    user_name, user_email = _identity(user, UNKNOWN_USER)
    admin_name, admin_email = _identity(admin, UNKNOWN_ADMIN)
    gear_label = ", ".join(outcome["gearNames"])
    condition = "Some Damaged" if outcome.get("hasDamaged") else "All Good"
    push_data = {"checkin_id": outcome["checkinIds"][0], "type": "checkin_approval"}

    try:
        create_in_app_notification(
            db,
            outcome["userId"],
            "Check-in Approved",
            f"Your check-in for {gear_label} has been approved.",
        )
        if user and user.email and wants_checkin_email(user):
            queue_email(
                db,
                user.email,
                "Your Check-in Was Approved",
                "\n".join(
                    [
                        f"Hi {user.full_name or 'there'},",
                        "",
                        "Your returned equipment has been checked in:",
                        *[f"- {name}" for name in outcome["gearNames"]],
                    ]
                ),
                push_data,
            )
        queue_push(
            db,
            outcome["userId"],
            "Your Check-in Was Approved!",
            f"Your check-in for {gear_label} has been approved. Thank you for returning the equipment.",
            push_data,
        )
        admin_count = _notify_admins_by_email(
            db,
            f"Check-in Approved - {user_name}",
            ["A check-in has been approved.", f"User: {user_name}", f"Item: {gear_label}", "Status: Approved"],
            push_data,
        )
        db.commit()
        logger.info("Approval notifications queued checkins=%s admins=%s", len(outcome["checkinIds"]), admin_count)
    except Exception:
        db.rollback()
        logger.exception("Could not queue approval notifications checkins=%s", outcome["checkinIds"])

    _send_chat(
        ADMIN_APPROVE_CHECKIN,
        {
            "adminName": admin_name,
            "adminEmail": admin_email,
            "userName": user_name,
            "userEmail": user_email,
            "gearNames": outcome["gearNames"],
            "condition": condition,
            "notes": outcome.get("notes"),
            "checkinDate": outcome.get("checkinDate"),
        },
    )


def dispatch_checkin_rejected(db: Session, outcome: dict) -> None:
    user = db.get(Profile, outcome["userId"])
    admin = db.get(Profile, outcome["adminId"]) if outcome.get("adminId") else None
    user_name, user_email = _identity(user, UNKNOWN_USER)
    admin_name, admin_email = _identity(admin, UNKNOWN_ADMIN)
    gear_label = ", ".join(outcome["gearNames"])
    reason = outcome.get("reason") or ""
    push_data = {"checkin_id": outcome["checkinIds"][0], "type": "checkin_rejection"}

    try:
        create_in_app_notification(
            db,
            outcome["userId"],
            "Check-in Rejected",
            f"Your check-in for {gear_label} was rejected. Reason: {reason}",
        )
        if user and user.email and wants_checkin_email(user):
            queue_email(
                db,
                user.email,
                "Your Check-in Was Rejected",
                "\n".join(
                    [
                        f"Hi {user.full_name or 'there'},",
                        "",
                        f"Your check-in for {gear_label} was rejected.",
                        f"Reason: {reason}",
                    ]
                ),
                push_data,
            )
        queue_push(
            db,
            outcome["userId"],
            "Your Check-in Was Rejected",
            f"Your check-in for {gear_label} has been rejected. Reason: {reason}. Please contact support for assistance.",
            push_data,
        )
        _notify_admins_by_email(
            db,
            f"Check-in Rejected - {user_name}",
            ["A check-in has been rejected.", f"User: {user_name}", f"Item: {gear_label}", "Status: Rejected", f"Reason: {reason}"],
            push_data,
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Could not queue rejection notifications checkin=%s", outcome["checkinIds"][0])

    _send_chat(
        ADMIN_REJECT_CHECKIN,
        {
            "adminName": admin_name,
            "adminEmail": admin_email,
            "userName": user_name,
            "userEmail": user_email,
            "gearNames": outcome["gearNames"],
            "reason": reason,
        },
    )


def list_notifications(db: Session, user_id: str, unread_only: bool = False) -> list[dict]:
    stmt = select(Notification).where(Notification.user_id == user_id).order_by(Notification.created_at.desc())
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    return [
        {
            "id": n.id,
            "userId": n.user_id,
            "title": n.title,
            "message": n.message,
            "type": n.type,
            "isRead": bool(n.is_read),
            "createdAt": n.created_at,
        }
        for n in db.execute(stmt).scalars().all()
    ]


def mark_notification_read(db: Session, notification_id: str) -> bool:
    notification = db.get(Notification, notification_id)
    if not notification:
        return False
    notification.is_read = True
    db.commit()
    return True


def list_pending_queue(db: Session) -> list[dict]:
    rows = db.execute(
        select(NotificationQueue).where(NotificationQueue.sent_at.is_(None)).order_by(NotificationQueue.id)
    ).scalars().all()
    return [
        {
            "notificationID": n.id,
            "channel": n.channel,
            "recipient": n.recipient,
            "subject": n.subject,
            "body": n.body,
            "payload": parse_json_object(n.payload),
            "createdAt": n.created_at,
        }
        for n in rows
    ]
