from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.kyudo.constants import SubPermission
from app.kyudo.db import db_session
from app.kyudo.errors import storage_errors
from app.kyudo.modules.calendar.service import (
    create_event,
    delete_event,
    event_dict,
    get_event,
    list_events,
    update_event,
)
from app.kyudo.rbac import require_auth, require_capability, require_login
from app.kyudo.utils import json_body

bp = Blueprint("calendar", __name__)


@bp.get("/calendar")
@require_login
@storage_errors("fetch failed")
def calendar_list():
    events = list_events(db_session(), request.args.get("start"), request.args.get("end"))
    return jsonify({"events": [event_dict(ev) for ev in events]})


@bp.post("/calendar")
@require_capability(SubPermission.CALENDAR_ADMIN)
@storage_errors("create failed")
def calendar_create():
    s = db_session()
    ev = create_event(s, json_body(), require_auth())
    s.commit()
    return jsonify({"id": ev.id})


@bp.get("/calendar/<int:event_id>")
@require_login
@storage_errors("fetch failed")
def calendar_detail(event_id: int):
    return jsonify({"event": event_dict(get_event(db_session(), event_id))})


@bp.put("/calendar/<int:event_id>")
@require_capability(SubPermission.CALENDAR_ADMIN)
@storage_errors("update failed")
def calendar_update(event_id: int):
    s = db_session()
    ev = update_event(s, event_id, json_body())
    s.commit()
    return jsonify({"id": ev.id})


@bp.delete("/calendar/<int:event_id>")
@require_capability(SubPermission.CALENDAR_ADMIN)
@storage_errors("delete failed")
def calendar_delete(event_id: int):
    s = db_session()
    delete_event(s, event_id)
    s.commit()
    return jsonify({"ok": True})
