from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from datetime import datetime
from typing import Any


logger = logging.getLogger("nest_checkins.google_chat")

USER_CHECKIN = "USER_CHECKIN"
ADMIN_APPROVE_CHECKIN = "ADMIN_APPROVE_CHECKIN"
ADMIN_REJECT_CHECKIN = "ADMIN_REJECT_CHECKIN"


class GoogleChatError(RuntimeError):
    pass


def format_timestamp(value: Any = None) -> str:
    """Render like en-US ``{dateStyle: 'medium', timeStyle: 'short'}``: "Jan 5, 2024, 3:04 PM"."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    moment = value if isinstance(value, datetime) else datetime.now()
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{moment:%b} {moment.day}, {moment.year}, {hour}:{moment.minute:02d} {suffix}"


def _items(payload: dict) -> str:
    names = payload.get("gearNames") or []
    if not names and payload.get("gearName"):
        names = [payload["gearName"]]
    return ", ".join(str(name) for name in names) or "N/A"


def _user_checkin(payload: dict) -> str:
    return (
        "**[Check-in]**\n"
        f"- **User:** {payload.get('userName')} ({payload.get('userEmail')})\n"
        f"- **Items:** {_items(payload)}\n"
        f"- **Date:** {format_timestamp(payload.get('checkinDate'))}\n"
        f"- **Timestamp:** {format_timestamp(payload.get('timestamp'))}"
    )


def _admin_approve_checkin(payload: dict) -> str:
    return (
        "**[Check-in Approved]**\n"
        f"- **Admin:** {payload.get('adminName')} ({payload.get('adminEmail')})\n"
        f"- **User:** {payload.get('userName')} ({payload.get('userEmail')})\n"
        f"- **Items:** {_items(payload)}\n"
        f"- **Condition:** {payload.get('condition') or 'N/A'}\n"
        f"- **Notes:** {payload.get('notes') or 'None'}\n"
        f"- **Timestamp:** {format_timestamp(payload.get('timestamp'))}"
    )


def _admin_reject_checkin(payload: dict) -> str:
    return (
        "**[Check-in Rejected]**\n"
        f"- **Admin:** {payload.get('adminName')} ({payload.get('adminEmail')})\n"
        f"- **User:** {payload.get('userName')} ({payload.get('userEmail')})\n"
        f"- **Items:** {_items(payload)}\n"
        f"- **Reason:** {payload.get('reason')}\n"
        f"- **Timestamp:** {format_timestamp(payload.get('timestamp'))}"
    )


MESSAGE_TEMPLATES = {
    USER_CHECKIN: _user_checkin,
    ADMIN_APPROVE_CHECKIN: _admin_approve_checkin,
    ADMIN_REJECT_CHECKIN: _admin_reject_checkin,
}


def build_message(event_type: str, payload: dict) -> str:
    template = MESSAGE_TEMPLATES.get(event_type)
    if not template:
        raise GoogleChatError(f"No template for event type: {event_type}")
    return template(payload)


def _resolve_webhook_url() -> str | None:
    production = (os.environ.get("NEST_ENV") or "").strip().lower() == "production"
    prod_url = (os.environ.get("GOOGLE_CHAT_WEBHOOK_URL") or "").strip()
    dev_url = (os.environ.get("GOOGLE_CHAT_WEBHOOK_URL_DEV") or "").strip()
    if production:
        return prod_url or dev_url or None
    return dev_url or None


def notify_google_chat(event_type: str, payload: dict) -> bool:
    """POST one formatted message to the team chat webhook.

    Returns False when no webhook is configured for this environment.
    """
    message = build_message(event_type, payload)
    webhook_url = _resolve_webhook_url()
    if not webhook_url:
        logger.info("Skipping Google Chat notification event=%s: no webhook for this environment", event_type)
        return False

    request = urllib.request.Request(
        url=webhook_url,
        data=json.dumps({"text": message}).encode("utf-8"),
        headers={"Content-Type": "application/json; charset=UTF-8"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=10) as response:
            if response.status >= 300:
                raise GoogleChatError(f"Google Chat returned status {response.status}")
    except urllib.error.HTTPError as exc:
        raise GoogleChatError(f"Google Chat HTTP error: {exc.code}") from exc
    except urllib.error.URLError as exc:
        raise GoogleChatError(f"Google Chat connection error: {exc.reason}") from exc
    logger.info("Google Chat notification sent event=%s", event_type)
    return True
