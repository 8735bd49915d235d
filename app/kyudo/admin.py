from __future__ import annotations

import json
from typing import Any

from flask import Blueprint, jsonify, request
from sqlalchemy import select

from app.kyudo.constants import SubPermission
from app.kyudo.db import db_session
from app.kyudo.errors import NotFound, storage_errors
from app.kyudo.models import AuditEvent, User
from app.kyudo.modules.profiles.models import Profile
from app.kyudo.modules.profiles.service import (
    apply_profile_update,
    build_profile_update,
    change_password,
    create_account,
    deletable_accounts,
    delete_account,
    find_user,
    full_profile_dict,
    set_account_permissions,
)
from app.kyudo.rbac import auth_context_for, require_admin, require_auth, require_capability, require_login
from app.kyudo.utils import iso, json_body, parse_int

bp = Blueprint("admin", __name__)
logs_bp = Blueprint("logs", __name__)

DEFAULT_LOG_LIMIT = 200
MAX_LOG_LIMIT = 1000


def _account_payload(user: User) -> dict[str, Any]:
    ctx = auth_context_for(user)
    return {
        "id": user.id,
        "email": user.email,
        "role": ctx.role.value,
        "subPermissions": sorted(p.value for p in ctx.sub_permissions),
        "is_active": user.is_active,
    }


@bp.get("/profile")
@require_admin
@storage_errors("fetch failed")
def profile_get():
    s = db_session()
    user = find_user(s, user_id=request.args.get("id"), email=request.args.get("email"))
    if user.profile is None:
        raise NotFound("not found")
    return jsonify({"user": _account_payload(user), "profile": full_profile_dict(user.profile)})


@bp.post("/profile")
@require_admin
@storage_errors("update failed")
def profile_post():
    auth = require_auth()
    payload = json_body()
    update = build_profile_update(payload.get("profile"))
    s = db_session()
    user = find_user(s, user_id=payload.get("id"), email=payload.get("email"))
    if user.profile is None:
        user.profile = Profile()
    apply_profile_update(s, user.profile, update, actor=auth, action="account.profile_admin_update")
    s.commit()
    return jsonify({"ok": True, "id": user.id})


@bp.post("/accounts")
@require_admin
@storage_errors("create failed")
def accounts_create():
    s = db_session()
    user = create_account(s, json_body(), actor=require_auth())
    s.commit()
    return jsonify({"ok": True, "id": user.id})


@bp.post("/accounts/<int:user_id>/permissions")
@require_admin
@storage_errors("update failed")
def accounts_permissions(user_id: int):
    s = db_session()
    user = find_user(s, user_id=user_id)
    result = set_account_permissions(s, user, json_body(), actor=require_auth())
    s.commit()
    return jsonify({"ok": True, **result})


@bp.post("/accounts/<int:user_id>/reset-password")
@require_admin
@storage_errors("update failed")
def accounts_reset_password(user_id: int):
    s = db_session()
    payload = json_body()
    user = find_user(s, user_id=user_id)
    change_password(
        s,
        user,
        payload.get("password"),
        payload.get("password_confirm"),
        actor=require_auth(),
        action="account.password_reset",
    )
    s.commit()
    return jsonify({"ok": True})


@bp.get("/profile-delete")
@require_admin
@storage_errors("fetch failed")
def profile_delete_list():
    s = db_session()
    users = deletable_accounts(s, actor=require_auth())
    s.commit()
    return jsonify({"users": users})


@bp.post("/profile-delete")
@require_admin
@storage_errors("delete failed")
def profile_delete_post():
    s = db_session()
    delete_account(s, json_body().get("id"), actor=require_auth())
    s.commit()
    return jsonify({"ok": True})


# --- logs ---


def _log_limit() -> int:
    limit = parse_int(request.args.get("limit"))
    if limit is None or limit <= 0:
        return DEFAULT_LOG_LIMIT
    return min(limit, MAX_LOG_LIMIT)


def _log_rows(prefix: str) -> list[dict[str, Any]]:
    """Newest-first audit rows for one action namespace, with operator/subject names."""
    s = db_session()
    events = (
        s.execute(
            select(AuditEvent)
            .where(AuditEvent.action.like(f"{prefix}.%"))
            .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
            .limit(_log_limit())
        )
        .scalars()
        .all()
    )
    ids = {e.actor_user_id for e in events} | {e.subject_user_id for e in events}
    ids.discard(None)
    names: dict[int, str | None] = {}
    if ids:
        names = dict(s.execute(select(Profile.id, Profile.display_name).where(Profile.id.in_(ids))).all())
    return [
        {
            "id": e.id,
            "created_at": iso(e.created_at),
            "action": e.action,
            "operator_id": e.actor_user_id,
            "operator_email": e.actor_user_email,
            "operator_display_name": names.get(e.actor_user_id),
            "subject_user_id": e.subject_user_id,
            "subject_display_name": names.get(e.subject_user_id),
            "entity_type": e.entity_type,
            "entity_id": e.entity_id,
            "target_label": e.target_label,
            "reason": e.reason,
            "metadata": json.loads(e.metadata_json) if e.metadata_json else None,
            "request_id": e.request_id,
        }
        for e in events
    ]


@logs_bp.get("/account")
@require_admin
@storage_errors("fetch failed")
def logs_account():
    return jsonify({"logs": _log_rows("account")})


@logs_bp.get("/invoices")
@require_capability(SubPermission.INVOICE_ADMIN)
@storage_errors("fetch failed")
def logs_invoices():
    return jsonify({"logs": _log_rows("invoice")})


@logs_bp.get("/bows")
@require_login
@storage_errors("fetch failed")
def logs_bows():
    return jsonify({"logs": _log_rows("bow")})


@logs_bp.get("/surveys")
@require_capability(SubPermission.SURVEY_ADMIN)
@storage_errors("fetch failed")
def logs_surveys():
    return jsonify({"logs": _log_rows("survey")})
