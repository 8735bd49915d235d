"""
Append-only audit trail.

``record_event`` only queues a row on the session. The rows are written by an
``after_commit`` listener on a separate connection, so an audit failure is logged
and never undoes or fails the primary operation. A rollback discards the queue.
"""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from flask import g, has_request_context
from sqlalchemy import event, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.kyudo.models import AuditEvent
from app.kyudo.utils import utcnow

if TYPE_CHECKING:
    from app.kyudo.rbac import AuthContext

logger = logging.getLogger(__name__)

_PENDING_KEY = "pending_audit"


def record_event(
    s: Session,
    *,
    actor: "AuthContext | None",
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    subject_user_id: int | None = None,
    target_label: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    rid = request_id or (getattr(g, "request_id", None) if has_request_context() else None)
    row = {
        "created_at": utcnow(),
        "request_id": rid,
        "actor_user_id": actor.user_id if actor else None,
        "actor_user_email": actor.email if actor else None,
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "subject_user_id": subject_user_id,
        "target_label": target_label,
        "reason": reason,
        "metadata_json": json.dumps(metadata, sort_keys=True, ensure_ascii=False, default=str) if metadata else None,
    }
    s.info.setdefault(_PENDING_KEY, []).append(row)
    return row


def _flush_pending(session: Session) -> None:
    rows = session.info.pop(_PENDING_KEY, None)
    if not rows:
        return
    bind = session.get_bind()
    engine = getattr(bind, "engine", bind)
    try:
        with engine.begin() as conn:
            conn.execute(insert(AuditEvent.__table__), rows)
    except SQLAlchemyError:
        logger.exception(
            "Audit write failed; %d event(s) dropped (actions=%s)",
            len(rows),
            ",".join(sorted({r["action"] for r in rows})),
        )


def _discard_pending(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)


def install_audit_sink(sm: sessionmaker[Session]) -> None:
    event.listen(sm, "after_commit", _flush_pending)
    event.listen(sm, "after_rollback", _discard_pending)
