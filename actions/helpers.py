from __future__ import annotations

import json
import logging
import os
from typing import Any, Optional

from flask import g, has_request_context

from models import AuditLog
from utils import AuthContext, ValidationError, iso_utc_now, redact_for_audit


log = logging.getLogger("audit")


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    fromState: str = "",
    toState: str = "",
    stageTag: str = "",
    remark: str = "",
    actor: Optional[AuthContext] = None,
    at: str = "",
    meta: Optional[dict[str, Any]] = None,
) -> None:
    """Queue an audit row on `db`. Never raises; the caller's primary write must not depend on it."""
    try:
        correlation_id = str(getattr(g, "request_id", "") or "") if has_request_context() else ""
        with db.begin_nested():
            db.add(
                AuditLog(
                    logId=f"LOG-{os.urandom(16).hex()}",
                    entityType=str(entityType or ""),
                    entityId=str(entityId or ""),
                    action=str(action or "").upper(),
                    fromState=str(fromState or ""),
                    toState=str(toState or ""),
                    stageTag=str(stageTag or ""),
                    remark=str(remark or ""),
                    actorUserId=str(actor.userId) if actor else "SYSTEM",
                    actorRole=str(actor.role) if actor else "SYSTEM",
                    actorEmail=str(actor.email or "") if actor else "",
                    at=at or iso_utc_now(),
                    correlationId=correlation_id,
                    metaJson=json.dumps(redact_for_audit(meta or {}), default=str),
                )
            )
    except Exception:
        log.exception("audit write failed entity=%s/%s action=%s", entityType, entityId, action)


def actor_id(auth: Optional[AuthContext]) -> str:
    if not auth:
        return "SYSTEM"
    return str(auth.userId or auth.email or "SYSTEM")


def require_str(data: dict[str, Any], key: str, *, label: str = "") -> str:
    value = str((data or {}).get(key) or "").strip()
    if not value:
        raise ValidationError(f"Missing {label or key}")
    return value
