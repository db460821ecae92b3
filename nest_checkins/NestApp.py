import logging
import os

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

load_dotenv()

from db.deps import get_db
from models.nest_models import CHECKIN_PENDING, Profile
from schemas.checkins import ApproveCheckinRequest, GoogleChatRequest, RejectCheckinRequest, SubmitCheckinRequest
from services.checkin_approval_service import (
    CheckinConflictError,
    CheckinNotFoundError,
    CheckinStateError,
    GearNotFoundError,
    GroupAlreadyProcessedError,
    RejectionReasonRequired,
    approve_checkin,
    approve_group,
    reject_checkin,
    submit_checkin,
)
from services.checkin_grouping_service import build_checkin_board
from services.checkin_query_service import (
    build_pagination,
    checkin_stats,
    get_request_history,
    list_checkins,
    serialize_checkin,
)
from services.google_chat_service import GoogleChatError, notify_google_chat
from services.notification_service import (
    dispatch_checkin_approved,
    dispatch_checkin_rejected,
    dispatch_checkin_submitted,
    list_notifications,
    list_pending_queue,
    mark_notification_read,
)
from services.request_summary_service import build_request_summaries

app = FastAPI(title="Nest by Eden Oasis - Check-ins")

API_LOGGER = logging.getLogger("nest_checkins.api")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)

CHECKINS_MAX_PAGE_SIZE = int(os.environ.get("CHECKINS_MAX_PAGE_SIZE") or "200")


@app.exception_handler(SQLAlchemyError)
def database_error_handler(request: Request, exc: SQLAlchemyError):
    API_LOGGER.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    detail = str(getattr(exc, "orig", None) or exc)
    return JSONResponse(status_code=500, content={"detail": detail})


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/checkins")
def get_checkins(
    limit: int = Query(10, ge=1),
    page: int = Query(1, ge=1),
    status: str | None = Query(None),
    user_id: str | None = Query(None, alias="userId"),
    db: Session = Depends(get_db),
):
    limit = min(limit, CHECKINS_MAX_PAGE_SIZE)
    rows, total = list_checkins(db, limit=limit, page=page, status=status, user_id=user_id)
    return {
        "checkins": [serialize_checkin(row) for row in rows],
        "pagination": build_pagination(total, page, limit),
    }


@app.post("/api/checkins")
def create_checkin(payload: SubmitCheckinRequest, db: Session = Depends(get_db)):
    if not db.get(Profile, payload.userId):
        raise HTTPException(status_code=400, detail="Unknown user.")
    try:
        checkin = submit_checkin(
            db,
            user_id=payload.userId,
            gear_id=payload.gearId,
            quantity=payload.quantity,
            condition=payload.condition,
            notes=payload.notes,
            request_id=payload.requestId,
            damage_notes=payload.damageNotes,
        )
    except GearNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CheckinStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    _dispatch_safely(dispatch_checkin_submitted, db, checkin)
    return {"checkin": serialize_checkin(checkin)}


@app.get("/api/checkins/board")
def get_checkin_board(
    limit: int = Query(10, ge=1),
    page: int = Query(1, ge=1),
    db: Session = Depends(get_db),
):
    limit = min(limit, CHECKINS_MAX_PAGE_SIZE)
    rows, total = list_checkins(db, limit=limit, page=page)
    _, pending_total = list_checkins(db, limit=1, page=1, status=CHECKIN_PENDING)
    serialized = [serialize_checkin(row) for row in rows]
    summaries = build_request_summaries(db, [row["requestId"] for row in serialized])
    pending_groups, recent_groups = build_checkin_board(serialized)
    for group in pending_groups + recent_groups:
        group["requestSummary"] = summaries.get(group["requestId"]) if group["requestId"] else None
    return {
        "pendingGroups": pending_groups,
        "recentGroups": recent_groups,
        "requestSummaries": summaries,
        "pagination": build_pagination(total, page, limit),
        "pendingTotal": pending_total,
        "displayableTotal": max(total - pending_total, 0),
        "hasMore": total > page * limit,
    }


@app.get("/api/checkins/stats")
def get_checkin_stats(db: Session = Depends(get_db)):
    return checkin_stats(db)


@app.get("/api/checkins/request-summaries")
def get_request_summaries(
    request_ids: str = Query("", alias="requestIds"),
    db: Session = Depends(get_db),
):
    ids = [item.strip() for item in request_ids.split(",") if item.strip()]
    return build_request_summaries(db, ids)


@app.post("/api/checkins/approve")
def approve_checkins(
    payload: ApproveCheckinRequest,
    db: Session = Depends(get_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    admin = _require_admin_or_403(db, _resolve_actor_user_id(payload.adminId, x_user_id))
    if bool(payload.checkinId) == bool(payload.groupKey):
        raise HTTPException(status_code=400, detail="Provide exactly one of checkinId or groupKey.")

    try:
        if payload.groupKey:
            outcome = approve_group(db, payload.groupKey, admin.id)
        else:
            outcome = approve_checkin(db, payload.checkinId, admin.id)
    except GroupAlreadyProcessedError as exc:
        return {"success": True, "approved": 0, "message": str(exc), "checkinIds": [], "requestCompleted": False}
    except CheckinNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (CheckinStateError, CheckinConflictError) as exc:
        API_LOGGER.warning("Approval refused admin=%s reason=%s", admin.id, exc)
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    _dispatch_safely(dispatch_checkin_approved, db, outcome)
    approved = len(outcome["checkinIds"])
    return {
        "success": True,
        "approved": approved,
        "message": f"Approved {approved} pending check-in item(s).",
        "checkinIds": outcome["checkinIds"],
        "requestId": outcome["requestId"],
        "requestCompleted": outcome["requestCompleted"],
    }


@app.post("/api/checkins/reject")
def reject_checkins(
    payload: RejectCheckinRequest,
    db: Session = Depends(get_db),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
):
    if not (payload.reason or "").strip():
        API_LOGGER.warning("Rejection without reason checkin=%s", payload.checkinId)
        raise HTTPException(status_code=400, detail="Rejection reason is required.")
    admin = _require_admin_or_403(db, _resolve_actor_user_id(payload.adminId, x_user_id))

    try:
        outcome = reject_checkin(db, payload.checkinId, admin.id, payload.reason)
    except RejectionReasonRequired as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CheckinNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (CheckinStateError, CheckinConflictError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    _dispatch_safely(dispatch_checkin_rejected, db, outcome)
    return {"success": True, "message": "The user has been notified.", "checkinIds": outcome["checkinIds"]}


@app.get("/api/requests/{request_id}/history")
def get_request_status_history(request_id: str, db: Session = Depends(get_db)):
    history = get_request_history(db, request_id)
    if not history:
        raise HTTPException(status_code=404, detail="Request not found")
    return history


@app.get("/api/notifications")
def get_notifications(
    user_id: str = Query(..., alias="userId"),
    unread_only: bool = Query(False, alias="unreadOnly"),
    db: Session = Depends(get_db),
):
    return list_notifications(db, user_id, unread_only=unread_only)


@app.post("/api/notifications/{notification_id}/read")
def read_notification(notification_id: str, db: Session = Depends(get_db)):
    if not mark_notification_read(db, notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}


@app.get("/api/notifications/pending")
def get_pending_notifications(db: Session = Depends(get_db)):
    return list_pending_queue(db)


@app.post("/api/notifications/google-chat")
def post_google_chat(payload: GoogleChatRequest):
    try:
        sent = notify_google_chat(payload.eventType, payload.payload)
    except GoogleChatError as exc:
        API_LOGGER.error("Google Chat relay failed event=%s: %s", payload.eventType, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"success": True, "sent": sent}


def _dispatch_safely(dispatcher, db: Session, subject) -> None:
    try:
        dispatcher(db, subject)
    except Exception:
        API_LOGGER.exception("Notification dispatch failed via %s", getattr(dispatcher, "__name__", dispatcher))


def _resolve_actor_user_id(candidate_user_id: str | None, header_user_id: str | None) -> str | None:
    for value in (candidate_user_id, header_user_id):
        cleaned = str(value or "").strip()
        if cleaned:
            return cleaned
    return None


def _require_admin_or_403(db: Session, actor_user_id: str | None) -> Profile:
    if not actor_user_id:
        raise HTTPException(status_code=401, detail="Not logged in.")
    profile = db.get(Profile, actor_user_id)
    if not profile or str(profile.role or "").strip() != "Admin" or str(profile.status or "").strip() != "Active":
        raise HTTPException(status_code=403, detail="Admin role required.")
    return profile
