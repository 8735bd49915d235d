from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.kyudo.constants import SubPermission
from app.kyudo.db import db_session
from app.kyudo.errors import storage_errors
from app.kyudo.modules.bows.service import (
    create_bow,
    delete_bow,
    list_bows,
    loan_bow,
    loan_history,
    return_bow,
    update_bow,
)
from app.kyudo.rbac import require_auth, require_capability, require_login
from app.kyudo.utils import json_body

bp = Blueprint("bows", __name__)


@bp.get("/bows")
@require_login
@storage_errors("fetch failed")
def bows_list():
    return jsonify({"bows": list_bows(db_session(), require_auth(), request.args)})


@bp.post("/bows")
@require_capability(SubPermission.BOW_ADMIN)
@storage_errors("create failed")
def bows_create():
    s = db_session()
    bow = create_bow(s, json_body(), require_auth())
    s.commit()
    return jsonify({"ok": True, "id": bow.id})


@bp.post("/bows/update")
@require_capability(SubPermission.BOW_ADMIN)
@storage_errors("update failed")
def bows_update():
    s = db_session()
    update_bow(s, json_body(), require_auth())
    s.commit()
    return jsonify({"ok": True})


@bp.post("/bows/delete")
@require_capability(SubPermission.BOW_ADMIN)
@storage_errors("delete failed")
def bows_delete():
    s = db_session()
    delete_bow(s, json_body().get("id"), require_auth())
    s.commit()
    return jsonify({"ok": True})


@bp.post("/bows/loan")
@require_login
@storage_errors("loan failed")
def bows_loan():
    s = db_session()
    loan = loan_bow(s, json_body(), require_auth())
    s.commit()
    return jsonify({"ok": True, "loanId": loan.id})


@bp.post("/bows/return")
@require_login
@storage_errors("return failed")
def bows_return():
    s = db_session()
    return_bow(s, json_body(), require_auth())
    s.commit()
    return jsonify({"ok": True})


@bp.get("/bows/<int:bow_id>/loans")
@require_login
@storage_errors("fetch failed")
def bows_loans(bow_id: int):
    return jsonify({"loans": loan_history(db_session(), bow_id)})
