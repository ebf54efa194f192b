from __future__ import annotations

from actions.helpers import actor_id, append_audit, require_str
from auth import USERS_COLLECTION
from docstore import get_store
from services.logbook_service import (
    add_comment,
    can_view,
    create_logbook,
    get_logbook,
    get_logbook_history,
    get_logbook_stats,
    invite_collaborator,
    list_logbooks,
    permanent_delete_logbook,
    restore_logbook,
    soft_delete_logbook,
    update_logbook,
)
from utils import AuthContext, NotFoundError, normalize_role


def _is_reviewer(auth: AuthContext | None) -> bool:
    return bool(auth) and normalize_role(auth.role) == "ADMIN"


def _actor_name(store, auth: AuthContext | None) -> str:
    if not auth:
        return "SYSTEM"
    user = store.get_document(USERS_COLLECTION, auth.userId) or {}
    return str((user.get("profile") or {}).get("fullName") or user.get("fullName") or auth.email or auth.userId)


def _visible_logbook(store, data, auth: AuthContext | None) -> dict:
    logbook_id = require_str(data, "logbookId")
    doc = get_logbook(store, logbook_id)
    if doc is None or not can_view(doc, actor_id(auth), is_reviewer=_is_reviewer(auth)):
        raise NotFoundError(f"Logbook not found: {logbook_id}")
    return doc


def _audit(db, auth, logbook_id: str, action: str, *, to_state: str = "", meta=None) -> None:
    append_audit(
        db,
        entityType="LOGBOOK",
        entityId=logbook_id,
        action=action,
        toState=to_state,
        stageTag="LOGBOOK",
        actor=auth,
        meta=meta,
    )


def logbook_create(data, auth: AuthContext | None, db, cfg):
    store = get_store()
    doc = create_logbook(store, data or {}, author_id=actor_id(auth), author_name=_actor_name(store, auth))
    _audit(db, auth, doc["id"], "LOGBOOK_CREATE", to_state=doc["status"], meta={"team": doc["team"]})
    return {"logbook": doc}


def logbook_get(data, auth: AuthContext | None, db, cfg):
    return {"logbook": _visible_logbook(get_store(), data, auth)}


def logbook_list(data, auth: AuthContext | None, db, cfg):
    data = data or {}
    items = list_logbooks(
        get_store(),
        team=require_str(data, "team"),
        viewer_id=actor_id(auth),
        is_reviewer=_is_reviewer(auth),
        trashed=bool(data.get("trashed")),
        status=data.get("status") or None,
        category=data.get("category") or None,
        author_id=data.get("authorId") or None,
        start_date=data.get("startDate") or None,
        end_date=data.get("endDate") or None,
        limit=data.get("limit"),
    )
    return {"items": items, "total": len(items)}


def logbook_update(data, auth: AuthContext | None, db, cfg):
    data = data or {}
    store = get_store()
    logbook_id = require_str(data, "logbookId")
    result = update_logbook(
        store,
        logbook_id,
        data.get("changes") or {},
        actor_id=actor_id(auth),
        actor_name=_actor_name(store, auth),
        is_reviewer=_is_reviewer(auth),
        base_updated_at=data.get("baseUpdatedAt") or None,
        force=bool(data.get("force")),
        epsilon_seconds=cfg.CONFLICT_EPSILON_SECONDS,
    )
    if result.get("changed"):
        _audit(
            db,
            auth,
            logbook_id,
            "LOGBOOK_UPDATE",
            to_state=str(result["logbook"].get("status") or ""),
            meta={"fields": [c["field"] for c in result.get("changes", [])], "forced": bool(data.get("force"))},
        )
    return result


def logbook_history(data, auth: AuthContext | None, db, cfg):
    store = get_store()
    doc = _visible_logbook(store, data, auth)
    return {"items": get_logbook_history(store, doc["id"])}


def logbook_invite(data, auth: AuthContext | None, db, cfg):
    store = get_store()
    logbook_id = require_str(data, "logbookId")
    collaborator_id = require_str(data, "collaboratorId")
    doc = invite_collaborator(
        store, logbook_id, collaborator_id, actor_id=actor_id(auth), actor_name=_actor_name(store, auth)
    )
    _audit(db, auth, logbook_id, "LOGBOOK_INVITE", meta={"collaboratorId": collaborator_id})
    return {"logbook": doc}


def logbook_comment_add(data, auth: AuthContext | None, db, cfg):
    store = get_store()
    logbook_id = require_str(data, "logbookId")
    out = add_comment(
        store,
        logbook_id,
        (data or {}).get("content"),
        author_id=actor_id(auth),
        author_name=_actor_name(store, auth),
        is_reviewer=_is_reviewer(auth),
    )
    _audit(db, auth, logbook_id, "LOGBOOK_COMMENT_ADD", meta={"commentId": out["comment"].get("id")})
    return out


def logbook_delete(data, auth: AuthContext | None, db, cfg):
    store = get_store()
    logbook_id = require_str(data, "logbookId")
    doc = soft_delete_logbook(
        store, logbook_id, actor_id=actor_id(auth), actor_name=_actor_name(store, auth), is_reviewer=_is_reviewer(auth)
    )
    _audit(db, auth, logbook_id, "LOGBOOK_DELETE", to_state="TRASHED")
    return {"logbook": doc}


def logbook_restore(data, auth: AuthContext | None, db, cfg):
    store = get_store()
    logbook_id = require_str(data, "logbookId")
    doc = restore_logbook(
        store, logbook_id, actor_id=actor_id(auth), actor_name=_actor_name(store, auth), is_reviewer=_is_reviewer(auth)
    )
    _audit(db, auth, logbook_id, "LOGBOOK_RESTORE", to_state=str(doc.get("status") or ""))
    return {"logbook": doc}


def logbook_permanent_delete(data, auth: AuthContext | None, db, cfg):
    logbook_id = require_str(data, "logbookId")
    removed = permanent_delete_logbook(get_store(), logbook_id, actor_id=actor_id(auth))
    _audit(db, auth, logbook_id, "LOGBOOK_PERMANENT_DELETE", to_state="DELETED", meta={"historyRemoved": removed})
    return {"deleted": True, "historyRemoved": removed}


def logbook_stats(data, auth: AuthContext | None, db, cfg):
    return get_logbook_stats(get_store(), require_str(data, "team"))
