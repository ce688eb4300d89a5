"""Append-only audit sink. Writing an audit row never fails the operation that triggered it."""
from typing import Any, Dict, Optional

from flask import current_app, has_request_context, request

from extensions import db
from models import AuditLog
from utils.security import client_ip


def _actor_scope(actor) -> tuple[Optional[str], Optional[str]]:
    if actor is None:
        return None, None
    if getattr(actor, "is_superadmin", False):
        return "superadmin", None
    return actor.assigned_level, actor.assigned_id


def record_audit(
    actor,
    action: str,
    target_type: str | None = None,
    target_id: str | None = None,
    details: Dict[str, Any] | None = None,
    note: str | None = None,
    target_name: str | None = None,
    commit: bool = False,
) -> Optional[AuditLog]:
    """Queue an AuditLog row on the current session; ``commit=True`` flushes it on its own."""
    level, level_id = _actor_scope(actor)
    try:
        entry = AuditLog(
            action=action,
            performed_by=actor.id if actor is not None else None,
            performed_by_email=getattr(actor, "email", None),
            performed_by_name=getattr(actor, "name", None),
            performed_by_role=getattr(actor, "role", None),
            level=level,
            level_id=level_id,
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            target_name=target_name,
            details=details or {},
            note=(note or "")[:1000] or None,
            ip_address=client_ip() if has_request_context() else None,
            user_agent=request.headers.get("User-Agent", "unknown")[:255] if has_request_context() else "system",
        )
        db.session.add(entry)
        if commit:
            db.session.commit()
        return entry
    except Exception:
        if commit:
            db.session.rollback()
        current_app.logger.warning("Audit log failed", extra={"action": action, "target_id": target_id})
        return None


def record_denial(actor, operation: str, target_type: str, target_id: str | None) -> None:
    """Authorization failures go to the audit trail and the log, never to the response body."""
    current_app.logger.warning(
        "Authorization denied",
        extra={
            "user_id": getattr(actor, "id", None),
            "role": getattr(actor, "role", None),
            "operation": operation,
            "target_id": target_id,
        },
    )
    record_audit(
        actor,
        "authorization_denied",
        target_type=target_type,
        target_id=target_id,
        details={"operation": operation},
        commit=True,
    )
