from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class SubmitCheckinRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userId: str
    gearId: str
    requestId: Optional[str] = None
    quantity: int = Field(1, ge=1)
    condition: Optional[str] = "Good"
    notes: Optional[str] = None
    damageNotes: Optional[str] = None


class ApproveCheckinRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    checkinId: Optional[str] = None
    groupKey: Optional[str] = None
    adminId: Optional[str] = None


class RejectCheckinRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    checkinId: str
    reason: Optional[str] = None
    adminId: Optional[str] = None


class GoogleChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    eventType: Literal["USER_CHECKIN", "ADMIN_APPROVE_CHECKIN", "ADMIN_REJECT_CHECKIN"]
    payload: dict[str, Any] = {}
