"""
Conditional survey targeting.

A survey's rule set is a list of target groups: conditions inside one group are
ANDed, groups are ORed. The same rules are evaluated two ways:

- ``matches_any_group`` against one in-memory profile (viewer eligibility);
- ``resolve_account_ids_for_target_groups`` as SQL over every profile
  (eligible population).

Both lowercase with ``str.lower`` semantics and treat a null or empty field as a
non-match, so they always produce the same membership.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import String, and_, func, select

from app.kyudo.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


class TargetField(str, Enum):
    DISPLAY_NAME = "display_name"
    STUDENT_NUMBER = "student_number"
    GENERATION = "generation"
    GENDER = "gender"
    DEPARTMENT = "department"
    RYUHA = "ryuha"
    POSITION = "position"


class TargetOp(str, Enum):
    EQ = "eq"  # case-insensitive exact
    ILIKE = "ilike"  # case-insensitive substring


@dataclass(frozen=True)
class TargetCondition:
    field: TargetField
    op: TargetOp
    value: str


@dataclass(frozen=True)
class TargetGroup:
    conditions: tuple[TargetCondition, ...] = field(default_factory=tuple)


def profile_target_values(profile: Any) -> dict[TargetField, str | None]:
    """Project a Profile row (or a plain mapping) onto the targetable fields."""
    out: dict[TargetField, str | None] = {}
    for f in TargetField:
        if isinstance(profile, Mapping):
            raw = profile.get(f.value)
        else:
            raw = getattr(profile, f.value, None)
        out[f] = None if raw is None else str(raw)
    return out


def _matches(values: Mapping[TargetField, str | None], condition: TargetCondition) -> bool:
    current = values.get(condition.field)
    # Absent is never a wildcard.
    if not current:
        return False
    current = current.lower()
    expected = condition.value.lower()
    if condition.op == TargetOp.EQ:
        return current == expected
    if condition.op == TargetOp.ILIKE:
        return expected in current
    raise ValueError(f"unsupported target op: {condition.op!r}")


def matches_condition(profile: Any, condition: TargetCondition) -> bool:
    return _matches(profile_target_values(profile), condition)


def matches_any_group(profile: Any, groups: Iterable[TargetGroup]) -> bool:
    """True when no groups exist, or when every condition of some group matches."""
    groups = list(groups)
    if not groups:
        return True
    values = profile_target_values(profile)
    return any(all(_matches(values, c) for c in g.conditions) for g in groups)


def _condition_clause(condition: TargetCondition):
    from app.kyudo.modules.profiles.models import Profile

    column = getattr(Profile, condition.field.value)
    lowered = func.lower(column, type_=String)
    expected = condition.value.lower()
    present = and_(column.isnot(None), column != "")
    if condition.op == TargetOp.EQ:
        return and_(present, lowered == expected)
    if condition.op == TargetOp.ILIKE:
        return and_(present, lowered.contains(expected, autoescape=True))
    raise ValueError(f"unsupported target op: {condition.op!r}")


def resolve_account_ids_for_target_groups(s: "Session", groups: Iterable[TargetGroup]) -> set[int]:
    """Union of per-group queries; every profile id when there are no groups."""
    from app.kyudo.modules.profiles.models import Profile

    groups = list(groups)
    if not groups:
        return set(s.execute(select(Profile.id)).scalars().all())
    ids: set[int] = set()
    for g in groups:
        stmt = select(Profile.id)
        for c in g.conditions:
            stmt = stmt.where(_condition_clause(c))
        ids.update(s.execute(stmt).scalars().all())
    return ids


def parse_target_groups(raw: Any) -> list[TargetGroup]:
    """
    Parse ``[{conditions: [{field, op, value}]}]`` from a request body.
    Every group needs at least one condition with a non-empty value.
    """
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("targetGroups must be a list")
    groups: list[TargetGroup] = []
    for entry in raw:
        raw_conditions = entry.get("conditions") if isinstance(entry, dict) else None
        if not isinstance(raw_conditions, list) or not raw_conditions:
            raise ValidationError("each target group needs at least one condition")
        conditions = []
        for rc in raw_conditions:
            if not isinstance(rc, dict):
                raise ValidationError("invalid target condition")
            try:
                f = TargetField(str(rc.get("field") or "").strip())
            except ValueError:
                raise ValidationError("invalid target field") from None
            try:
                op = TargetOp(str(rc.get("op") or TargetOp.EQ.value).strip())
            except ValueError:
                raise ValidationError("invalid target op") from None
            value = str(rc.get("value") or "").strip()
            if not value:
                raise ValidationError("target condition value required")
            conditions.append(TargetCondition(field=f, op=op, value=value))
        groups.append(TargetGroup(conditions=tuple(conditions)))
    return groups
