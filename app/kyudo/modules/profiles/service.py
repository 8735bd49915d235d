from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash

from app.kyudo.audit import record_event
from app.kyudo.constants import RoleKey, SubPermission, normalize_sub_permissions
from app.kyudo.errors import NotFound, ValidationError
from app.kyudo.models import Permission, Role, User
from app.kyudo.modules.bows.service import close_loans_for_member
from app.kyudo.modules.profiles.models import Profile
from app.kyudo.rbac import role_for
from app.kyudo.utils import clean_str, iso, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.kyudo.rbac import AuthContext


PROFILE_FIELDS = (
    "display_name",
    "student_number",
    "name_kana",
    "generation",
    "gender",
    "department",
    "ryuha",
    "position",
    "public_note",
    "restricted_note",
)
GENDERS = ("male", "female")
MIN_PASSWORD_LENGTH = 8


def public_profile_dict(p: Profile) -> dict[str, Any]:
    return {
        "id": p.id,
        "display_name": p.display_name,
        "student_number": p.student_number,
        "generation": p.generation,
        "department": p.department,
        "ryuha": p.ryuha,
        "position": p.position,
        "public_note": p.public_note,
    }


def full_profile_dict(p: Profile) -> dict[str, Any]:
    data = public_profile_dict(p)
    data.update(
        {
            "name_kana": p.name_kana,
            "gender": p.gender,
            "restricted_note": p.restricted_note,
            "updated_at": iso(p.updated_at),
        }
    )
    return data


def build_profile_update(raw: Any) -> dict[str, Any]:
    """
    Pick the editable profile fields out of a payload.
    Keys that are absent are left alone; present keys may clear a field with null/"".
    """
    if not isinstance(raw, dict):
        raise ValidationError("profile must be an object")
    update: dict[str, Any] = {}
    for key in PROFILE_FIELDS:
        if key not in raw:
            continue
        value = clean_str(raw.get(key))
        if key == "gender" and value is not None and value not in GENDERS:
            raise ValidationError("gender invalid")
        update[key] = value
    return update


def apply_profile_update(
    s: "Session",
    profile: Profile,
    update: dict[str, Any],
    *,
    actor: "AuthContext",
    action: str = "account.profile_update",
) -> Profile:
    if not update:
        raise ValidationError("no fields to update")
    changes = {}
    for key, value in update.items():
        old = getattr(profile, key)
        if old != value:
            changes[key] = {"old": old, "new": value}
            setattr(profile, key, value)
    record_event(
        s,
        actor=actor,
        action=action,
        entity_type="Profile",
        entity_id=str(profile.id),
        subject_user_id=profile.id,
        target_label=profile.display_name,
        metadata={"changes": changes} if changes else None,
    )
    return profile


def list_profiles(s: "Session", auth: "AuthContext") -> list[dict[str, Any]]:
    """Members ordered by generation then student number; non-admins get the public projection."""
    users = s.execute(select(User).order_by(User.id.asc())).scalars().all()
    out = []
    for u in users:
        p = u.profile
        if not auth.is_admin:
            if p is None:
                continue
            out.append(public_profile_dict(p))
            continue
        row = full_profile_dict(p) if p is not None else {"id": u.id}
        row.update({"id": u.id, "email": u.email, "role": role_for(u).value})
        out.append(row)
    out.sort(key=lambda r: (r.get("generation") or "", r.get("student_number") or "", r["id"]))
    return out


def find_user(s: "Session", *, user_id: Any = None, email: Any = None) -> User:
    """Look an account up by id, falling back to email. 400 when neither is given."""
    uid = parse_int(user_id)
    mail = (clean_str(email) or "").lower()
    if uid is None and not mail:
        raise ValidationError("missing id or email")
    if uid is not None:
        user = s.get(User, uid)
    else:
        user = s.execute(select(User).where(User.email == mail)).scalar_one_or_none()
    if user is None:
        raise NotFound("not found")
    return user


def _role(s: "Session", key: RoleKey) -> Role:
    role = s.execute(select(Role).where(Role.key == key.value)).scalar_one_or_none()
    if role is None:
        role = Role(key=key.value, name=key.value.title())
        s.add(role)
        s.flush()
    return role


def _permission(s: "Session", key: SubPermission) -> Permission:
    perm = s.execute(select(Permission).where(Permission.key == key.value)).scalar_one_or_none()
    if perm is None:
        perm = Permission(key=key.value, name=key.value)
        s.add(perm)
        s.flush()
    return perm


def _parse_role(value: Any) -> RoleKey:
    raw = clean_str(value) or RoleKey.USER.value
    try:
        return RoleKey(raw)
    except ValueError:
        raise ValidationError("invalid role") from None


def _validate_password(password: Any, confirm: Any = None) -> str:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if confirm is not None and confirm != password:
        raise ValidationError("passwords do not match")
    return password


def create_account(s: "Session", payload: dict[str, Any], *, actor: "AuthContext | None") -> User:
    email = (clean_str(payload.get("email")) or "").lower()
    password = payload.get("password")
    if not email or not password:
        raise ValidationError("email and password required")
    _validate_password(password)
    role_key = _parse_role(payload.get("role"))
    if s.execute(select(User.id).where(User.email == email)).first() is not None:
        raise ValidationError("email already registered")

    user = User(email=email, password_hash=generate_password_hash(password), is_active=True)
    user.roles = [_role(s, role_key)]
    user.profile = Profile(display_name=clean_str(payload.get("display_name")))
    s.add(user)
    try:
        s.flush()
    except IntegrityError:
        s.rollback()
        raise ValidationError("email already registered") from None

    record_event(
        s,
        actor=actor,
        action="account.create",
        entity_type="User",
        entity_id=str(user.id),
        subject_user_id=user.id,
        target_label=user.profile.display_name or email,
        metadata={"email": email, "role": role_key.value},
    )
    return user


def set_account_permissions(
    s: "Session", user: User, payload: dict[str, Any], *, actor: "AuthContext"
) -> dict[str, Any]:
    role_key = _parse_role(payload.get("role")) if "role" in payload else role_for(user)
    if user.id == actor.user_id and role_key != RoleKey.ADMIN:
        raise ValidationError("cannot remove own admin role")
    subs = normalize_sub_permissions(payload.get("subPermissions"))

    user.roles = [_role(s, role_key)]
    user.permissions = [_permission(s, p) for p in subs]
    record_event(
        s,
        actor=actor,
        action="account.permissions",
        entity_type="User",
        entity_id=str(user.id),
        subject_user_id=user.id,
        target_label=user.profile.display_name if user.profile else user.email,
        metadata={"role": role_key.value, "sub_permissions": [p.value for p in subs]},
    )
    return {"role": role_key.value, "subPermissions": [p.value for p in subs]}


def change_password(
    s: "Session",
    user: User,
    password: Any,
    confirm: Any,
    *,
    actor: "AuthContext",
    action: str = "account.password_change",
) -> None:
    user.password_hash = generate_password_hash(_validate_password(password, confirm))
    record_event(
        s,
        actor=actor,
        action=action,
        entity_type="User",
        entity_id=str(user.id),
        subject_user_id=user.id,
        target_label=user.email,
    )


def deletable_accounts(s: "Session", *, actor: "AuthContext") -> list[dict[str, Any]]:
    users = s.execute(select(User).where(User.id != actor.user_id).order_by(User.id.asc())).scalars().all()
    record_event(
        s,
        actor=actor,
        action="account.delete_list",
        entity_type="User",
        subject_user_id=actor.user_id,
        target_label="list",
    )
    return [
        {
            "id": u.id,
            "email": u.email,
            "role": role_for(u).value,
            "display_name": u.profile.display_name if u.profile else None,
        }
        for u in users
    ]


def delete_account(s: "Session", raw_id: Any, *, actor: "AuthContext") -> None:
    target_id = parse_int(raw_id)
    if target_id is None:
        raise ValidationError("missing id")
    if target_id == actor.user_id:
        raise ValidationError("cannot delete self")
    user = s.get(User, target_id)
    if user is None:
        raise NotFound("not found")
    label = user.profile.display_name if user.profile and user.profile.display_name else user.email
    close_loans_for_member(s, user.id, actor=actor)
    s.delete(user)
    record_event(
        s,
        actor=actor,
        action="account.delete",
        entity_type="User",
        entity_id=str(target_id),
        subject_user_id=target_id,
        target_label=label,
    )
