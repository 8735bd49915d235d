from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from app.kyudo.errors import NotFound, ValidationError
from app.kyudo.modules.calendar.models import CalendarEvent
from app.kyudo.utils import clean_str, iso, parse_datetime, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.kyudo.rbac import AuthContext


CALENDAR_COLORS = ("#cfe8d8", "#cfe1f2", "#f2d2d7", "#e2d4f0", "#f3e2c8", "#d9dde3")


def event_dict(ev: CalendarEvent) -> dict[str, Any]:
    return {
        "id": ev.id,
        "title": ev.title,
        "description": ev.description,
        "starts_at": iso(ev.starts_at),
        "ends_at": iso(ev.ends_at),
        "all_day": ev.all_day,
        "color": ev.color,
        "created_by": ev.created_by,
        "created_at": iso(ev.created_at),
        "updated_at": iso(ev.updated_at),
    }


def list_events(s: "Session", start_raw: Any, end_raw: Any) -> list[CalendarEvent]:
    """Events overlapping [start, end], inclusive at both ends."""
    start = parse_datetime(start_raw)
    end = parse_datetime(end_raw)
    if start is None or end is None:
        raise ValidationError("start and end are required")
    stmt = (
        select(CalendarEvent)
        .where(CalendarEvent.starts_at <= end, CalendarEvent.ends_at >= start)
        .order_by(CalendarEvent.starts_at.asc(), CalendarEvent.id.asc())
    )
    return list(s.execute(stmt).scalars().all())


def validate_event_payload(payload: dict[str, Any]) -> dict[str, Any]:
    title = clean_str(payload.get("title"))
    if not title:
        raise ValidationError("title required")
    starts_at = parse_datetime(payload.get("startsAt"))
    ends_at = parse_datetime(payload.get("endsAt"))
    if starts_at is None or ends_at is None or ends_at < starts_at:
        raise ValidationError("invalid start or end")
    color = clean_str(payload.get("color"))
    if color is not None:
        color = color.lower()
        if color not in CALENDAR_COLORS:
            raise ValidationError("invalid color")
    return {
        "title": title,
        "description": clean_str(payload.get("description")),
        "starts_at": starts_at,
        "ends_at": ends_at,
        "all_day": bool(payload.get("allDay")),
        "color": color,
    }


def get_event(s: "Session", event_id: int) -> CalendarEvent:
    ev = s.get(CalendarEvent, event_id)
    if ev is None:
        raise NotFound("event not found")
    return ev


def create_event(s: "Session", payload: dict[str, Any], auth: "AuthContext") -> CalendarEvent:
    values = validate_event_payload(payload)
    now = utcnow()
    ev = CalendarEvent(created_by=auth.user_id, created_at=now, updated_at=now, **values)
    s.add(ev)
    s.flush()
    return ev


def update_event(s: "Session", event_id: int, payload: dict[str, Any]) -> CalendarEvent:
    ev = get_event(s, event_id)
    values = validate_event_payload(payload)
    for key, value in values.items():
        setattr(ev, key, value)
    ev.updated_at = utcnow()
    return ev


def delete_event(s: "Session", event_id: int) -> None:
    s.delete(get_event(s, event_id))
