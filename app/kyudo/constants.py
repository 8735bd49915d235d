"""
Central constants for the console.
"""
from __future__ import annotations

from enum import Enum


class RoleKey(str, Enum):
    ADMIN = "admin"
    USER = "user"


class SubPermission(str, Enum):
    SURVEY_ADMIN = "survey_admin"
    BOW_ADMIN = "bow_admin"
    INVOICE_ADMIN = "invoice_admin"
    CALENDAR_ADMIN = "calendar_admin"


SUB_PERMISSION_LABELS = {
    SubPermission.SURVEY_ADMIN: "アンケート",
    SubPermission.BOW_ADMIN: "弓管理",
    SubPermission.INVOICE_ADMIN: "請求",
    SubPermission.CALENDAR_ADMIN: "カレンダー",
}


def normalize_sub_permissions(value: object) -> list[SubPermission]:
    """Keep only known sub-permission keys, preserving order, dropping duplicates."""
    if not isinstance(value, (list, tuple, set, frozenset)):
        return []
    out: list[SubPermission] = []
    for entry in value:
        if not isinstance(entry, str):
            continue
        try:
            perm = SubPermission(entry)
        except ValueError:
            continue
        if perm not in out:
            out.append(perm)
    return out
