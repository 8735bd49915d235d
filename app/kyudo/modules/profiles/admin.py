from __future__ import annotations

from flask import Blueprint, jsonify

from app.kyudo.db import db_session
from app.kyudo.errors import NotFound, storage_errors
from app.kyudo.modules.profiles.models import Profile
from app.kyudo.modules.profiles.service import (
    apply_profile_update,
    build_profile_update,
    full_profile_dict,
    list_profiles,
)
from app.kyudo.rbac import require_auth, require_login
from app.kyudo.utils import json_body

bp = Blueprint("profiles", __name__)


@bp.get("/me")
@require_login
@storage_errors("fetch failed")
def me_get():
    auth = require_auth()
    s = db_session()
    profile = s.get(Profile, auth.user_id)
    return jsonify(
        {
            "user": {"id": auth.user_id, "email": auth.email, "role": auth.role.value},
            "subPermissions": sorted(p.value for p in auth.sub_permissions),
            "profile": full_profile_dict(profile) if profile else None,
        }
    )


@bp.post("/me")
@require_login
@storage_errors("update failed")
def me_post():
    auth = require_auth()
    payload = json_body()
    update = build_profile_update(payload.get("profile", payload))
    s = db_session()
    profile = s.get(Profile, auth.user_id)
    if profile is None:
        raise NotFound("not found")
    apply_profile_update(s, profile, update, actor=auth)
    s.commit()
    return jsonify({"ok": True, "profile": full_profile_dict(profile)})


@bp.get("/profiles")
@require_login
@storage_errors("fetch failed")
def profiles_list():
    auth = require_auth()
    return jsonify({"users": list_profiles(db_session(), auth)})
