from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from app.kyudo.audit import record_event
from app.kyudo.constants import SubPermission
from app.kyudo.errors import Forbidden, NotFound, ValidationError
from app.kyudo.modules.bows.models import Bow, BowLength, BowLoan
from app.kyudo.modules.profiles.models import Profile
from app.kyudo.rbac import has_capability
from app.kyudo.utils import clean_str, iso, parse_datetime, parse_int, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.kyudo.rbac import AuthContext


def parse_strength(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_length(value: Any) -> BowLength | None:
    try:
        return BowLength(str(value or "").strip())
    except ValueError:
        return None


def validate_bow_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Returns the cleaned column values; raises on the first invalid field."""
    bow_number = clean_str(payload.get("bowNumber"))
    if not bow_number:
        raise ValidationError("bowNumber required")
    name = clean_str(payload.get("name"))
    if not name:
        raise ValidationError("name required")
    strength = parse_strength(payload.get("strength"))
    if strength is None or strength < 0:
        raise ValidationError("strength must be 0 or greater")
    length = parse_length(payload.get("length"))
    if length is None:
        raise ValidationError("length invalid")
    return {
        "bow_number": bow_number,
        "name": name,
        "strength": strength,
        "length": length,
        "note": clean_str(payload.get("note")),
    }


def bow_dict(bow: Bow, borrower: Profile | None = None) -> dict[str, Any]:
    return {
        "id": bow.id,
        "bow_number": bow.bow_number,
        "name": bow.name,
        "strength": bow.strength,
        "length": bow.length.value,
        "note": bow.note,
        "borrower_profile_id": bow.borrower_profile_id,
        "borrower_display_name": borrower.display_name if borrower else None,
        "borrower_student_number": borrower.student_number if borrower else None,
        "created_at": iso(bow.created_at),
    }


def list_bows(s: "Session", auth: "AuthContext", args: Any) -> list[dict[str, Any]]:
    status = (args.get("status") or "").strip()
    query = (args.get("q") or "").strip()
    bow_number = (args.get("bow_number") or "").strip()
    name = (args.get("name") or "").strip()
    borrower = (args.get("borrower") or "").strip()
    length = parse_length(args.get("length"))
    strength = parse_strength(args.get("strength"))

    stmt = select(Bow)
    if status == "borrowed":
        stmt = stmt.where(Bow.borrower_profile_id.isnot(None))
    elif status == "available":
        stmt = stmt.where(Bow.borrower_profile_id.is_(None))
    if borrower == "me":
        stmt = stmt.where(Bow.borrower_profile_id == auth.user_id)
    if bow_number:
        stmt = stmt.where(Bow.bow_number.ilike(f"%{bow_number}%"))
    if name:
        stmt = stmt.where(Bow.name.ilike(f"%{name}%"))
    if length is not None:
        stmt = stmt.where(Bow.length == length)
    if strength is not None:
        stmt = stmt.where(Bow.strength == strength)
    if query:
        like = f"%{query}%"
        stmt = stmt.where(or_(Bow.bow_number.ilike(like), Bow.name.ilike(like)))

    bows = s.execute(stmt.order_by(Bow.bow_number.asc(), Bow.id.asc())).scalars().all()
    borrower_ids = {b.borrower_profile_id for b in bows if b.borrower_profile_id is not None}
    borrowers = {}
    if borrower_ids:
        borrowers = {p.id: p for p in s.execute(select(Profile).where(Profile.id.in_(borrower_ids))).scalars().all()}
    return [bow_dict(b, borrowers.get(b.borrower_profile_id)) for b in bows]


def _get_bow(s: "Session", raw_id: Any, *, missing: str = "id required") -> Bow:
    bow_id = parse_int(raw_id)
    if bow_id is None:
        raise ValidationError(missing)
    bow = s.get(Bow, bow_id)
    if bow is None:
        raise NotFound("bow not found")
    return bow


def create_bow(s: "Session", payload: dict[str, Any], auth: "AuthContext") -> Bow:
    values = validate_bow_payload(payload)
    bow = Bow(created_at=utcnow(), **values)
    s.add(bow)
    s.flush()
    record_event(s, actor=auth, action="bow.create", entity_type="Bow", entity_id=str(bow.id), target_label=bow.bow_number)
    return bow


def update_bow(s: "Session", payload: dict[str, Any], auth: "AuthContext") -> Bow:
    bow = _get_bow(s, payload.get("id"))
    values = validate_bow_payload(payload)
    changes = {}
    for key, value in values.items():
        old = getattr(bow, key)
        if old != value:
            changes[key] = {"old": getattr(old, "value", old), "new": getattr(value, "value", value)}
            setattr(bow, key, value)
    record_event(
        s,
        actor=auth,
        action="bow.update",
        entity_type="Bow",
        entity_id=str(bow.id),
        target_label=bow.bow_number,
        metadata={"changes": changes} if changes else None,
    )
    return bow


def delete_bow(s: "Session", raw_id: Any, auth: "AuthContext") -> None:
    bow = _get_bow(s, raw_id)
    label = bow.bow_number
    s.delete(bow)
    record_event(s, actor=auth, action="bow.delete", entity_type="Bow", entity_id=str(raw_id), target_label=label)


def _open_loan(s: "Session", bow_id: int) -> BowLoan | None:
    return (
        s.execute(
            select(BowLoan)
            .where(BowLoan.bow_id == bow_id, BowLoan.returned_at.is_(None))
            .order_by(BowLoan.loaned_at.desc(), BowLoan.id.desc())
            .limit(1)
        )
        .scalars()
        .first()
    )


def _optional_instant(value: Any) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        return utcnow()
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValidationError("invalid date")
    return parsed


def loan_bow(s: "Session", payload: dict[str, Any], auth: "AuthContext") -> BowLoan:
    """
    Borrow a bow for yourself, or for another member with bow_admin.
    The conditional update and the open-loan unique index keep two borrowers from
    both winning the same bow.
    """
    bow_id = parse_int(payload.get("bowId"))
    raw_borrower = payload.get("borrowerProfileId")
    borrower_id = auth.user_id if raw_borrower in (None, "") else parse_int(raw_borrower)
    if bow_id is None or borrower_id is None:
        raise ValidationError("bowId and borrowerProfileId required")
    if borrower_id != auth.user_id and not has_capability(auth, SubPermission.BOW_ADMIN):
        raise Forbidden("forbidden")
    loaned_at = _optional_instant(payload.get("loanedAt"))

    bow = s.get(Bow, bow_id)
    if bow is None:
        raise NotFound("bow not found")
    borrower = s.get(Profile, borrower_id)
    if borrower is None:
        raise NotFound("profile not found")
    if bow.borrower_profile_id is not None:
        raise ValidationError("bow already borrowed")
    if _open_loan(s, bow.id) is not None:
        raise ValidationError("open loan exists")

    claimed = s.execute(
        update(Bow)
        .where(Bow.id == bow.id, Bow.borrower_profile_id.is_(None))
        .values(borrower_profile_id=borrower_id)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        s.rollback()
        raise ValidationError("bow already borrowed")
    loan = BowLoan(bow_id=bow.id, borrower_profile_id=borrower_id, loaned_at=loaned_at)
    s.add(loan)
    try:
        s.flush()
    except IntegrityError:
        s.rollback()
        raise ValidationError("open loan exists") from None
    s.refresh(bow)

    record_event(
        s,
        actor=auth,
        action="bow.loan",
        entity_type="Bow",
        entity_id=str(bow.id),
        subject_user_id=borrower_id,
        target_label=bow.bow_number,
    )
    return loan


def return_bow(s: "Session", payload: dict[str, Any], auth: "AuthContext") -> BowLoan:
    bow_id = parse_int(payload.get("bowId"))
    if bow_id is None:
        raise ValidationError("bowId required")
    loan = _open_loan(s, bow_id)
    if loan is None:
        raise NotFound("open loan not found")
    if loan.borrower_profile_id != auth.user_id and not has_capability(auth, SubPermission.BOW_ADMIN):
        raise Forbidden("forbidden")
    returned_at = _optional_instant(payload.get("returnedAt"))
    if returned_at < loan.loaned_at:
        raise ValidationError("returnedAt must not be before loanedAt")

    bow = s.get(Bow, bow_id)
    loan.returned_at = returned_at
    if bow is not None:
        bow.borrower_profile_id = None

    record_event(
        s,
        actor=auth,
        action="bow.return",
        entity_type="Bow",
        entity_id=str(bow_id),
        subject_user_id=loan.borrower_profile_id,
        target_label=bow.bow_number if bow else None,
    )
    return loan


def close_loans_for_member(s: "Session", profile_id: int, *, actor: "AuthContext") -> int:
    """Return every bow the member still holds; used before the member is deleted."""
    loans = (
        s.execute(select(BowLoan).where(BowLoan.borrower_profile_id == profile_id, BowLoan.returned_at.is_(None)))
        .scalars()
        .all()
    )
    now = utcnow()
    for loan in loans:
        loan.returned_at = max(now, loan.loaned_at)
        bow = s.get(Bow, loan.bow_id)
        if bow is not None and bow.borrower_profile_id == profile_id:
            bow.borrower_profile_id = None
        record_event(
            s,
            actor=actor,
            action="bow.return",
            entity_type="Bow",
            entity_id=str(loan.bow_id),
            subject_user_id=profile_id,
            target_label=bow.bow_number if bow else None,
            reason="account deleted",
        )
    s.flush()
    return len(loans)


def loan_history(s: "Session", raw_id: Any) -> list[dict[str, Any]]:
    bow = _get_bow(s, raw_id)
    loans = (
        s.execute(select(BowLoan).where(BowLoan.bow_id == bow.id).order_by(BowLoan.loaned_at.desc(), BowLoan.id.desc()))
        .scalars()
        .all()
    )
    borrower_ids = {loan.borrower_profile_id for loan in loans if loan.borrower_profile_id is not None}
    profiles = {}
    if borrower_ids:
        profiles = {p.id: p for p in s.execute(select(Profile).where(Profile.id.in_(borrower_ids))).scalars().all()}
    out = []
    for loan in loans:
        p = profiles.get(loan.borrower_profile_id)
        out.append(
            {
                "id": loan.id,
                "bow_id": loan.bow_id,
                "borrower_profile_id": loan.borrower_profile_id,
                "borrower_display_name": p.display_name if p else None,
                "loaned_at": iso(loan.loaned_at),
                "returned_at": iso(loan.returned_at),
            }
        )
    return out
