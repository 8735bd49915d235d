from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.kyudo.constants import SubPermission
from app.kyudo.db import db_session
from app.kyudo.errors import storage_errors
from app.kyudo.modules.surveys.service import (
    add_option,
    admin_survey_detail,
    change_status,
    create_survey,
    delete_survey,
    get_survey_detail,
    list_surveys,
    option_dict,
    replace_survey,
    submit_response,
    survey_analytics,
)
from app.kyudo.rbac import require_auth, require_capability, require_login
from app.kyudo.utils import json_body

bp = Blueprint("surveys", __name__)


# ---------- Member-facing ----------
@bp.get("/surveys")
@require_login
@storage_errors("fetch failed")
def surveys_list():
    auth = require_auth()
    return jsonify({"surveys": list_surveys(db_session(), auth), "role": auth.role.value})


@bp.get("/surveys/<int:survey_id>")
@require_login
@storage_errors("fetch failed")
def survey_detail(survey_id: int):
    return jsonify(get_survey_detail(db_session(), survey_id, require_auth()))


def _submit(survey_id, payload: dict):
    s = db_session()
    submit_response(s, survey_id, payload.get("answers"), require_auth())
    s.commit()
    return jsonify({"ok": True})


@bp.post("/surveys/<int:survey_id>/response")
@require_login
@storage_errors("submit failed")
def survey_response(survey_id: int):
    return _submit(survey_id, json_body())


@bp.post("/surveys/response")
@require_login
@storage_errors("submit failed")
def survey_response_by_body():
    payload = json_body()
    return _submit(payload.get("surveyId"), payload)


def _append_option(survey_id, payload: dict):
    s = db_session()
    option = add_option(s, survey_id, payload, require_auth())
    s.commit()
    return jsonify({"option": option_dict(option)})


@bp.post("/surveys/<int:survey_id>/option")
@require_login
@storage_errors("create failed")
def survey_option(survey_id: int):
    return _append_option(survey_id, json_body())


@bp.post("/surveys/option")
@require_login
@storage_errors("create failed")
def survey_option_by_body():
    return _append_option(None, json_body())


# ---------- Admin ----------
@bp.post("/admin/surveys")
@require_capability(SubPermission.SURVEY_ADMIN)
@storage_errors("create failed")
def admin_survey_create():
    s = db_session()
    survey = create_survey(s, json_body(), require_auth())
    s.commit()
    return jsonify({"id": survey.id})


@bp.get("/admin/surveys/analytics")
@require_capability(SubPermission.SURVEY_ADMIN)
@storage_errors("fetch failed")
def admin_survey_analytics():
    rows = survey_analytics(db_session(), request.args.get("start"), request.args.get("end"))
    return jsonify({"rows": rows})


@bp.post("/admin/surveys/delete")
@require_capability(SubPermission.SURVEY_ADMIN)
@storage_errors("delete failed")
def admin_survey_delete():
    s = db_session()
    delete_survey(s, json_body().get("id"), require_auth())
    s.commit()
    return jsonify({"ok": True})


@bp.get("/admin/surveys/<int:survey_id>")
@require_capability(SubPermission.SURVEY_ADMIN)
@storage_errors("fetch failed")
def admin_survey_get(survey_id: int):
    return jsonify(admin_survey_detail(db_session(), survey_id))


@bp.post("/admin/surveys/<int:survey_id>")
@require_capability(SubPermission.SURVEY_ADMIN)
@storage_errors("update failed")
def admin_survey_replace(survey_id: int):
    s = db_session()
    replace_survey(s, survey_id, json_body(), require_auth())
    s.commit()
    return jsonify({"ok": True})


@bp.post("/admin/surveys/<int:survey_id>/status")
@require_capability(SubPermission.SURVEY_ADMIN)
@storage_errors("update failed")
def admin_survey_status(survey_id: int):
    s = db_session()
    survey = change_status(s, survey_id, json_body().get("status"), require_auth())
    s.commit()
    return jsonify({"ok": True, "status": survey.status.value})
