from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from flask import request

from app.kyudo.errors import ValidationError


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_datetime(value: Any) -> datetime | None:
    """
    Parse an ISO-8601 string into naive UTC.
    Returns None for empty or unparseable input.
    """
    if value is None or not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


def parse_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def clean_str(value: Any) -> str | None:
    """Strip strings; empty becomes None."""
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    return value.strip() or None


def json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        if request.form:
            return request.form.to_dict()
        raise ValidationError("invalid json")
    if not isinstance(data, dict):
        raise ValidationError("invalid json")
    return data
