from __future__ import annotations

from actions.helpers import actor_id, append_audit, require_str
from auth import revoke_user_sessions
from docstore import get_store
from services.caang_service import (
    blacklist_caang,
    calculate_caang_stats,
    get_caang_detail,
    list_caangs,
    unblacklist_caang,
)
from utils import AuthContext, NotFoundError


def caang_list(data, auth: AuthContext | None, db, cfg):
    data = data or {}
    store = get_store()
    if data.get("userId"):
        detail = get_caang_detail(store, str(data["userId"]))
        if detail is None:
            raise NotFoundError(f"User not found: {data['userId']}")
        return {"items": [detail], "total": 1}

    blacklisted = data.get("blacklisted")
    items = list_caangs(
        store,
        status=str(data.get("status") or "").strip().lower() or None,
        or_period=str(data.get("orPeriod") or "").strip() or None,
        search=data.get("search"),
        blacklisted=blacklisted if isinstance(blacklisted, bool) else None,
    )
    return {"items": items, "total": len(items)}


def caang_stats(data, auth: AuthContext | None, db, cfg):
    return calculate_caang_stats(list_caangs(get_store()))


def caang_blacklist(data, auth: AuthContext | None, db, cfg):
    user_id = require_str(data, "userId")
    reason = require_str(data, "reason")
    user = blacklist_caang(
        get_store(), user_id, reason=reason, actor_id=actor_id(auth), period=str((data or {}).get("period") or "permanent")
    )
    revoked = revoke_user_sessions(db, user_id=user_id, revoked_by=actor_id(auth))
    append_audit(
        db,
        entityType="USER",
        entityId=user_id,
        action="CAANG_BLACKLIST",
        toState="BLACKLISTED",
        stageTag="CAANG",
        remark=reason,
        actor=auth,
        meta={"revokedSessions": revoked},
    )
    return {"user": user, "revokedSessions": revoked}


def caang_unblacklist(data, auth: AuthContext | None, db, cfg):
    user_id = require_str(data, "userId")
    user = unblacklist_caang(get_store(), user_id, actor_id=actor_id(auth))
    append_audit(
        db,
        entityType="USER",
        entityId=user_id,
        action="CAANG_UNBLACKLIST",
        fromState="BLACKLISTED",
        toState="ACTIVE",
        stageTag="CAANG",
        actor=auth,
    )
    return {"user": user}
