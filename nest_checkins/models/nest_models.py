import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


CHECKIN_PENDING = "Pending Admin Approval"
CHECKIN_COMPLETED = "Completed"
CHECKIN_REJECTED = "Rejected"

REQUEST_COMPLETED = "Completed"


def _uuid() -> str:
    return str(uuid.uuid4())


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=_uuid)
    full_name = Column(String(255))
    email = Column(String(255))
    avatar_url = Column(String(1000))
    role = Column(String(20), default="User")
    status = Column(String(20), default="Active")
    notification_preferences = Column(Text)
    created_at = Column(DateTime, server_default=func.now())


class Gear(Base):
    __tablename__ = "gears"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    category = Column(String(100))
    status = Column(String(50), default="Available")
    condition = Column(String(50), default="Good")
    quantity = Column(Integer, default=1)
    available_quantity = Column(Integer, default=1)
    checked_out_to = Column(String(36), ForeignKey("profiles.id"))
    current_request_id = Column(String(36), ForeignKey("gear_requests.id"))
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())


class GearRequest(Base):
    __tablename__ = "gear_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"))
    reason = Column(String(1000))
    destination = Column(String(255))
    status = Column(String(30), default="Pending")
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())

    lines = relationship("GearRequestGear", back_populates="request")
    history = relationship(
        "RequestStatusHistory",
        back_populates="request",
        order_by="RequestStatusHistory.changed_at",
    )


class GearRequestGear(Base):
    __tablename__ = "gear_request_gears"

    id = Column(String(36), primary_key=True, default=_uuid)
    gear_request_id = Column(String(36), ForeignKey("gear_requests.id"), nullable=False, index=True)
    gear_id = Column(String(36), ForeignKey("gears.id"), nullable=False)
    quantity = Column(Integer, default=1)

    request = relationship("GearRequest", back_populates="lines")
    gear = relationship("Gear")


class RequestStatusHistory(Base):
    __tablename__ = "request_status_history"

    id = Column(String(36), primary_key=True, default=_uuid)
    request_id = Column(String(36), ForeignKey("gear_requests.id"), nullable=False, index=True)
    status = Column(String(30), nullable=False)
    changed_by = Column(String(36))
    note = Column(String(1000))
    changed_at = Column(DateTime, server_default=func.now())

    request = relationship("GearRequest", back_populates="history")


class Checkin(Base):
    __tablename__ = "checkins"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    gear_id = Column(String(36), ForeignKey("gears.id"), nullable=False, index=True)
    request_id = Column(String(36), ForeignKey("gear_requests.id"), index=True)
    quantity = Column(Integer, default=1)
    checkin_date = Column(DateTime, server_default=func.now())
    status = Column(String(30), nullable=False, default=CHECKIN_PENDING, index=True)
    condition = Column(String(50), default="Good")
    notes = Column(String(2000))
    damage_notes = Column(String(2000))
    approved_by = Column(String(36))
    approved_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())

    profile = relationship("Profile")
    gear = relationship("Gear")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(String(2000))
    type = Column(String(50), default="checkin")
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "notification_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel = Column(String(20), nullable=False)
    recipient = Column(String(255), nullable=False)
    subject = Column(String(255))
    body = Column(Text)
    payload = Column(Text)
    created_at = Column(DateTime, server_default=func.now())
    sent_at = Column(DateTime)
