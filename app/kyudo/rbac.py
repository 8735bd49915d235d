from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from functools import wraps
from typing import Any

from flask import g

from app.kyudo.constants import RoleKey, SubPermission
from app.kyudo.errors import Forbidden, Unauthorized
from app.kyudo.models import User


@dataclass(frozen=True)
class AuthContext:
    """Who is calling, resolved once per request from the session cookie."""

    user_id: int
    email: str
    role: RoleKey
    sub_permissions: frozenset[SubPermission] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.role == RoleKey.ADMIN


def role_for(user: User) -> RoleKey:
    return RoleKey.ADMIN if any(r.key == RoleKey.ADMIN.value for r in user.roles) else RoleKey.USER


def auth_context_for(user: User) -> AuthContext:
    role = role_for(user)
    subs: set[SubPermission] = set()
    for perm in user.permissions:
        try:
            subs.add(SubPermission(perm.key))
        except ValueError:
            continue
    return AuthContext(user_id=user.id, email=user.email, role=role, sub_permissions=frozenset(subs))


def has_capability(auth: AuthContext | None, permission: SubPermission) -> bool:
    """Admin role implies every sub-permission."""
    if auth is None:
        return False
    return auth.is_admin or permission in auth.sub_permissions


def current_auth() -> AuthContext | None:
    return getattr(g, "auth", None)


def require_auth() -> AuthContext:
    auth = current_auth()
    if auth is None:
        raise Unauthorized("unauthorized")
    return auth


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        require_auth()
        return fn(*args, **kwargs)

    return wrapped


def require_admin(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        auth = require_auth()
        if not auth.is_admin:
            g.missing_permission = RoleKey.ADMIN.value
            raise Forbidden("forbidden")
        return fn(*args, **kwargs)

    return wrapped


def require_capability(permission: SubPermission) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            auth = require_auth()
            if not has_capability(auth, permission):
                g.missing_permission = permission.value
                raise Forbidden("forbidden")
            return fn(*args, **kwargs)

        return wrapped

    return decorator
