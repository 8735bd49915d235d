from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash

from app.kyudo.audit import record_event
from app.kyudo.db import db_session
from app.kyudo.errors import ApiError, ValidationError, storage_errors
from app.kyudo.models import User
from app.kyudo.modules.profiles.service import change_password
from app.kyudo.rbac import auth_context_for, current_auth, require_auth, require_login
from app.kyudo.security import ensure_csrf_token
from app.kyudo.utils import json_body, utcnow

bp = Blueprint("auth", __name__)


class TooManyAttempts(ApiError):
    status_code = 429
    default_message = "too many login attempts"


def _attempts() -> dict[str, list]:
    return current_app.extensions.setdefault("login_attempts", defaultdict(list))


def _check_rate_limit(ip: str) -> bool:
    window = timedelta(seconds=current_app.config["LOGIN_RATE_WINDOW"])
    cutoff = utcnow() - window
    attempts = _attempts()
    attempts[ip] = [t for t in attempts[ip] if t > cutoff]
    return len(attempts[ip]) >= current_app.config["LOGIN_RATE_LIMIT"]


def _record_attempt(ip: str) -> None:
    _attempts()[ip].append(utcnow())


def load_current_user() -> None:
    """
    Resolves g.auth from the signed session cookie.
    Also assigns a per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.auth = None
    if request.path.startswith(("/health", "/healthz")):
        return

    user_id = session.get("user_id")
    if not user_id:
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
    except (SQLAlchemyError, ValueError, TypeError) as e:
        current_app.logger.error("load_current_user failed (clearing session): %s", e)
        session.pop("user_id", None)
        return
    if not user or not user.is_active:
        session.pop("user_id", None)
        return
    g.auth = auth_context_for(user)


def _user_payload(auth) -> dict:
    return {
        "id": auth.user_id,
        "email": auth.email,
        "role": auth.role.value,
        "subPermissions": sorted(p.value for p in auth.sub_permissions),
    }


@bp.post("/login")
@storage_errors("login failed")
def login_post():
    payload = json_body()
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        current_app.logger.warning("Login rate limit hit (ip=%s request_id=%s)", ip, getattr(g, "request_id", None))
        raise TooManyAttempts()
    _record_attempt(ip)

    if not email or not password:
        raise ValidationError("email and password required")

    s = db_session()
    user = s.execute(select(User).where(User.email == email)).scalars().one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="account.login_failed",
            entity_type="User",
            entity_id=email,
            reason="invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        return jsonify({"error": "invalid credentials"}), 401

    session.clear()
    session["user_id"] = user.id
    ensure_csrf_token()
    _attempts()[ip].clear()
    auth = auth_context_for(user)
    g.auth = auth
    record_event(
        s,
        actor=auth,
        action="account.login",
        entity_type="User",
        entity_id=str(user.id),
        subject_user_id=user.id,
        target_label=user.email,
    )
    s.commit()
    return jsonify({"ok": True, "user": _user_payload(auth), "csrf_token": session["csrf_token"]})


@bp.post("/logout")
def logout():
    auth = current_auth()
    if auth:
        s = db_session()
        record_event(
            s,
            actor=auth,
            action="account.logout",
            entity_type="User",
            entity_id=str(auth.user_id),
            subject_user_id=auth.user_id,
            target_label=auth.email,
        )
        s.commit()
    session.clear()
    return jsonify({"ok": True})


@bp.get("/session")
def session_get():
    auth = current_auth()
    return jsonify({"user": _user_payload(auth) if auth else None, "csrf_token": ensure_csrf_token()})


@bp.post("/password")
@require_login
@storage_errors("update failed")
def password_post():
    auth = require_auth()
    payload = json_body()
    s = db_session()
    user = s.get(User, auth.user_id)
    if user is None or not check_password_hash(user.password_hash, payload.get("current_password") or ""):
        raise ValidationError("current password is incorrect")
    change_password(s, user, payload.get("password"), payload.get("password_confirm"), actor=auth)
    s.commit()
    return jsonify({"ok": True})
