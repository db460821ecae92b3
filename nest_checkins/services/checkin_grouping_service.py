from __future__ import annotations

from datetime import date, datetime
from typing import Iterable

from models.nest_models import CHECKIN_PENDING


REQUEST_KEY_PREFIX = "req::"
USER_KEY_PREFIX = "user::"
NO_DATE = "no-date"

_DAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_MONTH_NAMES = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def format_day(value: date | datetime | None) -> str:
    # Same rendering as the web client's Date.toDateString(), e.g. "Fri Jan 05 2024".
    if value is None:
        return NO_DATE
    return f"{_DAY_NAMES[value.weekday()]} {_MONTH_NAMES[value.month - 1]} {value.day:02d} {value.year:04d}"


def checkin_group_key(request_id: str | None, user_id: str | None, checkin_date: date | datetime | None) -> str:
    if request_id:
        return f"{REQUEST_KEY_PREFIX}{request_id}"
    return f"{USER_KEY_PREFIX}{user_id}::{format_day(checkin_date)}"


def group_key_for(row: dict) -> str:
    return checkin_group_key(row.get("requestId"), row.get("userId"), row.get("checkinDate"))


def parse_group_key(group_key: str) -> tuple[str, str, str | None]:
    key = (group_key or "").strip()
    if key.startswith(REQUEST_KEY_PREFIX):
        request_id = key[len(REQUEST_KEY_PREFIX):]
        if request_id:
            return "req", request_id, None
    elif key.startswith(USER_KEY_PREFIX):
        parts = key[len(USER_KEY_PREFIX):].split("::", 1)
        if len(parts) == 2 and parts[0] and parts[1]:
            return "user", parts[0], parts[1]
    raise ValueError(f"Invalid group key: {group_key!r}")


def group_checkins(rows: Iterable[dict]) -> dict[str, list[dict]]:
    groups: dict[str, list[dict]] = {}
    for row in rows:
        groups.setdefault(group_key_for(row), []).append(row)
    return groups


def _latest_checkin_date(items: list[dict]) -> datetime | None:
    dates = [item["checkinDate"] for item in items if item.get("checkinDate")]
    return max(dates) if dates else None


def order_recent_groups(groups: dict[str, list[dict]]) -> list[tuple[str, list[dict]]]:
    dated = []
    undated = []
    for key, items in groups.items():
        latest = _latest_checkin_date(items)
        if latest is None:
            undated.append((key, items))
        else:
            dated.append((latest, key, items))
    dated.sort(key=lambda entry: entry[0], reverse=True)
    return [(key, items) for _, key, items in dated] + undated


def describe_group(group_key: str, items: list[dict]) -> dict:
    first = items[0] if items else {}
    return {
        "groupKey": group_key,
        "requestId": first.get("requestId") if group_key.startswith(REQUEST_KEY_PREFIX) else None,
        "userId": first.get("userId"),
        "userName": first.get("userName"),
        "latestCheckinDate": _latest_checkin_date(items),
        "totalQuantity": sum(int(item.get("quantity") or 1) for item in items),
        "items": items,
    }


def build_checkin_board(rows: Iterable[dict]) -> tuple[list[dict], list[dict]]:
    pending_rows = []
    recent_rows = []
    for row in rows:
        if row.get("status") == CHECKIN_PENDING:
            pending_rows.append(row)
        else:
            recent_rows.append(row)

    pending_groups = [describe_group(key, items) for key, items in group_checkins(pending_rows).items()]
    recent_groups = [describe_group(key, items) for key, items in order_recent_groups(group_checkins(recent_rows))]
    return pending_groups, recent_groups
