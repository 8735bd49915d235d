from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.kyudo.constants import SubPermission
from app.kyudo.db import db_session
from app.kyudo.errors import storage_errors
from app.kyudo.modules.invoices.service import (
    approve_invoices,
    create_invoices,
    delete_invoice,
    invoice_dict,
    list_invoices_admin,
    list_own_invoices,
    revert_invoice,
    update_invoice,
)
from app.kyudo.rbac import require_auth, require_capability, require_login
from app.kyudo.utils import json_body

bp = Blueprint("invoices", __name__)


@bp.get("/invoices")
@require_login
@storage_errors("fetch failed")
def invoices_mine():
    s = db_session()
    rows = list_own_invoices(s, require_auth(), request.args.get("status"))
    # Commit so the view events are written.
    s.commit()
    return jsonify({"invoices": rows})


@bp.get("/admin/invoices")
@require_capability(SubPermission.INVOICE_ADMIN)
@storage_errors("fetch failed")
def invoices_admin_list():
    s = db_session()
    rows = list_invoices_admin(s, require_auth(), request.args)
    s.commit()
    return jsonify({"invoices": rows})


@bp.post("/admin/invoices")
@require_capability(SubPermission.INVOICE_ADMIN)
@storage_errors("create failed")
def invoices_admin_create():
    s = db_session()
    created = create_invoices(s, json_body(), require_auth())
    s.commit()
    return jsonify({"created": len(created)})


@bp.post("/admin/invoices/approve")
@require_capability(SubPermission.INVOICE_ADMIN)
@storage_errors("approve failed")
def invoices_admin_approve():
    s = db_session()
    updated = approve_invoices(s, json_body(), require_auth())
    s.commit()
    return jsonify({"updated": updated})


@bp.post("/admin/invoices/revert")
@require_capability(SubPermission.INVOICE_ADMIN)
@storage_errors("revert failed")
def invoices_admin_revert():
    s = db_session()
    updated = revert_invoice(s, json_body(), require_auth())
    s.commit()
    return jsonify({"updated": updated})


@bp.post("/admin/invoices/update")
@require_capability(SubPermission.INVOICE_ADMIN)
@storage_errors("update failed")
def invoices_admin_update():
    s = db_session()
    inv = update_invoice(s, json_body(), require_auth())
    s.commit()
    return jsonify({"invoice": invoice_dict(inv)})


@bp.post("/admin/invoices/delete")
@require_capability(SubPermission.INVOICE_ADMIN)
@storage_errors("delete failed")
def invoices_admin_delete():
    s = db_session()
    delete_invoice(s, json_body(), require_auth())
    s.commit()
    return jsonify({"deleted": True})
