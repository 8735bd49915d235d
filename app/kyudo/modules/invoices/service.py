from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from app.kyudo.audit import record_event
from app.kyudo.errors import NotFound, ValidationError
from app.kyudo.models import User
from app.kyudo.modules.invoices.models import Invoice, InvoiceStatus
from app.kyudo.modules.profiles.models import Profile
from app.kyudo.utils import clean_str, iso, parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.kyudo.rbac import AuthContext


def parse_amount(value: Any) -> int:
    """Whole yen, strictly positive. Fractions are rejected rather than rounded."""
    if isinstance(value, bool):
        raise ValidationError("amount must be greater than 0")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str):
        value = parse_int(value)
    if not isinstance(value, int) or value <= 0:
        raise ValidationError("amount must be greater than 0")
    return value


def parse_status_filter(raw: Any, *, default: str) -> InvoiceStatus | None:
    """None means every status."""
    value = default if raw is None else str(raw).strip()
    if value in ("", "all"):
        return None
    try:
        return InvoiceStatus(value)
    except ValueError:
        raise ValidationError("invalid status") from None


def _parse_ids(payload: dict[str, Any]) -> list[int]:
    raw = payload.get("ids")
    if raw is None and payload.get("id") is not None:
        raw = [payload.get("id")]
    ids: list[int] = []
    for value in raw if isinstance(raw, list) else []:
        parsed = parse_int(value)
        if parsed is not None and parsed not in ids:
            ids.append(parsed)
    return ids


def _profiles_for(s: "Session", ids: set[int]) -> dict[int, Profile]:
    ids = {i for i in ids if i is not None}
    if not ids:
        return {}
    return {p.id: p for p in s.execute(select(Profile).where(Profile.id.in_(ids))).scalars().all()}


def invoice_dict(inv: Invoice, profiles: dict[int, Profile] | None = None) -> dict[str, Any]:
    profiles = profiles or {}
    account = profiles.get(inv.account_id)
    requester = profiles.get(inv.requester_id) if inv.requester_id else None
    approver = profiles.get(inv.approver_id) if inv.approver_id else None
    return {
        "id": inv.id,
        "account_id": inv.account_id,
        "amount": inv.amount,
        "billed_at": iso(inv.billed_at),
        "approved_at": iso(inv.approved_at),
        "requester_id": inv.requester_id,
        "approver_id": inv.approver_id,
        "title": inv.title,
        "description": inv.description,
        "status": inv.status.value,
        "account_display_name": account.display_name if account else None,
        "account_student_number": account.student_number if account else None,
        "requester_display_name": requester.display_name if requester else None,
        "approver_display_name": approver.display_name if approver else None,
    }


def _log_viewed(s: "Session", invoices: list[Invoice], auth: "AuthContext") -> None:
    for inv in invoices:
        record_event(
            s,
            actor=auth,
            action="invoice.view",
            entity_type="Invoice",
            entity_id=str(inv.id),
            subject_user_id=inv.account_id,
            target_label=inv.title or "invoice",
        )


def list_own_invoices(s: "Session", auth: "AuthContext", raw_status: Any) -> list[dict[str, Any]]:
    status = parse_status_filter(raw_status, default=InvoiceStatus.PENDING.value)
    stmt = select(Invoice).where(Invoice.account_id == auth.user_id)
    if status is not None:
        stmt = stmt.where(Invoice.status == status)
    invoices = list(s.execute(stmt.order_by(Invoice.billed_at.desc(), Invoice.id.desc())).scalars().all())
    _log_viewed(s, invoices, auth)
    profiles = _profiles_for(s, {auth.user_id} | {i.requester_id for i in invoices} | {i.approver_id for i in invoices})
    return [invoice_dict(i, profiles) for i in invoices]


def _filtered_account_ids(s: "Session", args: Any) -> set[int] | None:
    """Account ids matching the profile filters; None when no filter is set."""
    display_name = (args.get("display_name") or "").strip()
    student_number = (args.get("student_number") or "").strip()
    generation = (args.get("generation") or "").strip()
    gender = (args.get("gender") or "").strip()
    if not (display_name or student_number or generation or gender):
        return None

    stmt = select(Profile.id)
    if display_name:
        stmt = stmt.where(Profile.display_name.ilike(f"%{display_name}%"))
    if student_number:
        stmt = stmt.where(Profile.student_number.ilike(f"%{student_number}%"))
    if generation:
        parts = [p.strip() for p in generation.split(",") if p.strip()]
        if len(parts) > 1:
            stmt = stmt.where(Profile.generation.in_(parts))
        else:
            stmt = stmt.where(Profile.generation.ilike(f"%{generation}%"))
    if gender:
        stmt = stmt.where(Profile.gender == gender)
    return set(s.execute(stmt).scalars().all())


def list_invoices_admin(s: "Session", auth: "AuthContext", args: Any) -> list[dict[str, Any]]:
    status = parse_status_filter((args.get("status") or "").strip() or None, default=InvoiceStatus.PENDING.value)
    account_ids = _filtered_account_ids(s, args)
    if account_ids is not None and not account_ids:
        return []
    stmt = select(Invoice)
    if status is not None:
        stmt = stmt.where(Invoice.status == status)
    if account_ids is not None:
        stmt = stmt.where(Invoice.account_id.in_(account_ids))
    invoices = list(s.execute(stmt.order_by(Invoice.billed_at.desc(), Invoice.id.desc())).scalars().all())
    _log_viewed(s, invoices, auth)
    ids: set[int] = set()
    for inv in invoices:
        ids.update(x for x in (inv.account_id, inv.requester_id, inv.approver_id) if x is not None)
    profiles = _profiles_for(s, ids)
    return [invoice_dict(i, profiles) for i in invoices]


def create_invoices(s: "Session", payload: dict[str, Any], auth: "AuthContext") -> list[Invoice]:
    """One pending invoice per account."""
    raw_accounts = payload.get("accountIds")
    account_ids: list[int] = []
    for value in raw_accounts if isinstance(raw_accounts, list) else []:
        aid = parse_int(value)
        if aid is not None and aid not in account_ids:
            account_ids.append(aid)
    if not account_ids:
        raise ValidationError("accountIds required")
    amount = parse_amount(payload.get("amount"))
    known = set(s.execute(select(User.id).where(User.id.in_(account_ids))).scalars().all())
    if len(known) != len(account_ids):
        raise ValidationError("unknown account")

    title = clean_str(payload.get("title"))
    description = clean_str(payload.get("description"))
    now = utcnow()
    created = []
    for aid in account_ids:
        inv = Invoice(
            account_id=aid,
            amount=amount,
            title=title,
            description=description,
            status=InvoiceStatus.PENDING,
            billed_at=now,
            requester_id=auth.user_id,
        )
        s.add(inv)
        created.append(inv)
    s.flush()
    for inv in created:
        record_event(
            s,
            actor=auth,
            action="invoice.create",
            entity_type="Invoice",
            entity_id=str(inv.id),
            subject_user_id=inv.account_id,
            target_label=inv.title or "invoice",
            reason=inv.description,
            metadata={"amount": inv.amount},
        )
    return created


def approve_invoices(s: "Session", payload: dict[str, Any], auth: "AuthContext") -> int:
    """Only pending rows change; approving an approved invoice is a no-op, not an error."""
    ids = _parse_ids(payload)
    if not ids:
        raise ValidationError("ids required")
    pending = (
        s.execute(
            select(Invoice)
            .where(Invoice.id.in_(ids), Invoice.status == InvoiceStatus.PENDING)
            .with_for_update()
        )
        .scalars()
        .all()
    )
    now = utcnow()
    for inv in pending:
        inv.status = InvoiceStatus.APPROVED
        inv.approver_id = auth.user_id
        inv.approved_at = now
        record_event(
            s,
            actor=auth,
            action="invoice.approve",
            entity_type="Invoice",
            entity_id=str(inv.id),
            subject_user_id=inv.account_id,
            target_label=inv.title or "invoice",
        )
    return len(pending)


def revert_invoice(s: "Session", payload: dict[str, Any], auth: "AuthContext") -> int:
    invoice_id = parse_int(payload.get("id"))
    if invoice_id is None:
        raise ValidationError("id required")
    inv = (
        s.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status == InvoiceStatus.APPROVED)
            .with_for_update()
        )
        .scalars()
        .first()
    )
    if inv is None:
        return 0
    inv.status = InvoiceStatus.PENDING
    inv.approver_id = None
    inv.approved_at = None
    record_event(
        s,
        actor=auth,
        action="invoice.revert",
        entity_type="Invoice",
        entity_id=str(inv.id),
        subject_user_id=inv.account_id,
        target_label=inv.title or "invoice",
    )
    return 1


def update_invoice(s: "Session", payload: dict[str, Any], auth: "AuthContext") -> Invoice:
    invoice_id = parse_int(payload.get("id"))
    if invoice_id is None:
        raise ValidationError("id required")
    amount = parse_amount(payload.get("amount"))
    inv = s.get(Invoice, invoice_id)
    if inv is None or inv.status != InvoiceStatus.PENDING:
        raise NotFound("invoice not found")
    changes = {}
    for key, value in (
        ("amount", amount),
        ("title", clean_str(payload.get("title"))),
        ("description", clean_str(payload.get("description"))),
    ):
        if getattr(inv, key) != value:
            changes[key] = {"old": getattr(inv, key), "new": value}
            setattr(inv, key, value)
    record_event(
        s,
        actor=auth,
        action="invoice.update",
        entity_type="Invoice",
        entity_id=str(inv.id),
        subject_user_id=inv.account_id,
        target_label=inv.title or "invoice",
        metadata={"changes": changes} if changes else None,
    )
    return inv


def delete_invoice(s: "Session", payload: dict[str, Any], auth: "AuthContext") -> None:
    invoice_id = parse_int(payload.get("id"))
    if invoice_id is None:
        raise ValidationError("id required")
    inv = s.get(Invoice, invoice_id)
    if inv is None:
        raise NotFound("invoice not found")
    record_event(
        s,
        actor=auth,
        action="invoice.delete",
        entity_type="Invoice",
        entity_id=str(inv.id),
        subject_user_id=inv.account_id,
        target_label=inv.title or "invoice",
        reason=inv.description,
    )
    s.delete(inv)
