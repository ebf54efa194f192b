from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Callable, Optional

from docstore import WriteOp
from services.conflict_detector import DEFAULT_EPSILON_SECONDS, is_newer_than
from utils import (
    ApiError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    iso_utc_now,
    new_uuid,
)


log = logging.getLogger("logbook")

LOGBOOKS_COLLECTION = "research_logbooks"
HISTORY_COLLECTION = "research_logbook_history"

KRI_TEAMS = ("krai", "krsbi_h", "krsbi_b", "krsti", "krsri")

LOGBOOK_STATUSES = ("draft", "submitted", "needs_revision", "approved")
PUBLIC_STATUSES = {"submitted", "approved"}
# statuses a non-reviewer may move an entry to
AUTHOR_STATUSES = {"draft", "submitted"}

LOGBOOK_CATEGORIES = (
    "design",
    "fabrication",
    "assembly",
    "programming",
    "testing",
    "debugging",
    "documentation",
    "meeting",
    "training",
    "competition_prep",
    "other",
)

# fields an editor may patch; anything else is rejected
LOGBOOK_UPDATABLE_FIELDS = (
    "activityDate",
    "title",
    "category",
    "description",
    "achievements",
    "challenges",
    "nextPlan",
    "durationHours",
    "status",
    "collaboratorIds",
)

# fields tracked in history diffs
DIFF_FIELDS = (
    "title",
    "category",
    "description",
    "achievements",
    "challenges",
    "nextPlan",
    "durationHours",
    "status",
    "activityDate",
)

_MAX_WRITE_ATTEMPTS = 3


class _StaleRead(Exception):
    pass


def _text(data: dict[str, Any], key: str, *, required: bool = False, max_len: int = 10000) -> str:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    s = str(value or "").strip()
    if required and not s:
        raise ValidationError(f"{key} is required")
    if len(s) > max_len:
        raise ValidationError(f"{key} is too long")
    return s


def _activity_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    s = str(value or "").strip()
    if not s:
        raise ValidationError("activityDate is required")
    try:
        return date.fromisoformat(s[:10]).isoformat()
    except ValueError:
        raise ValidationError("activityDate must be YYYY-MM-DD")


def _duration(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise ValidationError("durationHours must be a number")
    if hours < 0 or hours > 24:
        raise ValidationError("durationHours must be between 0 and 24")
    return hours


def _id_list(value: Any, key: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{key} must be a list")
    out: list[str] = []
    for raw in value:
        s = str(raw or "").strip()
        if s and s not in out:
            out.append(s)
    return out


def _choice(value: Any, allowed: tuple[str, ...], key: str) -> str:
    s = str(value or "").strip().lower()
    if s not in allowed:
        raise ValidationError(f"{key} must be one of {', '.join(allowed)}")
    return s


def normalize_update(data: dict[str, Any]) -> dict[str, Any]:
    """Validate an editor patch. Only LOGBOOK_UPDATABLE_FIELDS are accepted."""
    data = data or {}
    unknown = sorted(set(data) - set(LOGBOOK_UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Fields cannot be edited: {', '.join(unknown)}")

    out: dict[str, Any] = {}
    for key in LOGBOOK_UPDATABLE_FIELDS:
        if key not in data:
            continue
        if key == "activityDate":
            out[key] = _activity_date(data[key])
        elif key == "title":
            out[key] = _text(data, key, required=True, max_len=200)
        elif key == "description":
            out[key] = _text(data, key, required=True)
        elif key == "category":
            out[key] = _choice(data[key], LOGBOOK_CATEGORIES, key)
        elif key == "status":
            out[key] = _choice(data[key], LOGBOOK_STATUSES, key)
        elif key == "durationHours":
            out[key] = _duration(data[key])
        elif key == "collaboratorIds":
            out[key] = _id_list(data[key], key)
        else:
            out[key] = _text(data, key)
    return out


def generate_diff(old: dict[str, Any], new: dict[str, Any]) -> list[dict[str, Any]]:
    changes = []
    for key in DIFF_FIELDS:
        if key not in new:
            continue
        if old.get(key) != new[key]:
            changes.append({"field": key, "oldValue": old.get(key), "newValue": new[key]})
    return changes


def is_member(logbook: dict[str, Any], user_id: str) -> bool:
    """Author or invited collaborator."""
    uid = str(user_id or "")
    return bool(uid) and (logbook.get("authorId") == uid or uid in (logbook.get("collaboratorIds") or []))


def can_view(logbook: dict[str, Any], user_id: str, *, is_reviewer: bool = False) -> bool:
    if is_reviewer or is_member(logbook, user_id):
        return True
    return str(logbook.get("status") or "") in PUBLIC_STATUSES and not logbook.get("deletedAt")


def _history_entry(logbook_id: str, actor_id: str, actor_name: str, action: str, description: str, at: str, changes=None):
    entry = {
        "logbookId": logbook_id,
        "authorId": actor_id,
        "authorName": actor_name,
        "timestamp": at,
        "action": action,
        "description": description,
    }
    if changes:
        entry["changes"] = changes
    return entry


def _history_op(entry: dict[str, Any]) -> WriteOp:
    return WriteOp("set", HISTORY_COLLECTION, new_uuid(), entry)


def _require_logbook(store, logbook_id: str) -> dict[str, Any]:
    doc = store.get_document(LOGBOOKS_COLLECTION, str(logbook_id or "").strip())
    if doc is None:
        raise NotFoundError(f"Logbook not found: {logbook_id}")
    return doc


def get_logbook(store, logbook_id: str) -> Optional[dict[str, Any]]:
    lid = str(logbook_id or "").strip()
    if not lid:
        return None
    return store.get_document(LOGBOOKS_COLLECTION, lid)


def create_logbook(store, data: dict[str, Any], *, author_id: str, author_name: str = "") -> dict[str, Any]:
    data = data or {}
    author_id = str(author_id or "").strip()
    if not author_id:
        raise ValidationError("Missing author id")

    team = _choice(data.get("team"), KRI_TEAMS, "team")
    fields = normalize_update({k: v for k, v in data.items() if k in LOGBOOK_UPDATABLE_FIELDS})
    for key in ("title", "category", "description", "activityDate"):
        if key not in fields:
            raise ValidationError(f"{key} is required")
    fields.setdefault("status", "draft")
    if fields["status"] not in AUTHOR_STATUSES:
        raise ValidationError("A new logbook must be draft or submitted")

    now = iso_utc_now()
    logbook_id = new_uuid()
    doc = {
        "team": team,
        "authorId": author_id,
        "authorName": str(author_name or ""),
        "title": fields["title"],
        "category": fields["category"],
        "description": fields["description"],
        "activityDate": fields["activityDate"],
        "achievements": fields.get("achievements", ""),
        "challenges": fields.get("challenges", ""),
        "nextPlan": fields.get("nextPlan", ""),
        "durationHours": fields.get("durationHours"),
        "status": fields["status"],
        "collaboratorIds": [c for c in fields.get("collaboratorIds", []) if c != author_id],
        "attachments": [],
        "comments": [],
        "deletedAt": None,
        "deletedBy": None,
        "createdAt": now,
        "updatedAt": now,
    }
    history = _history_entry(logbook_id, author_id, doc["authorName"], "create", "Logbook created", now)
    store.batch_write([WriteOp("set", LOGBOOKS_COLLECTION, logbook_id, doc), _history_op(history)])
    log.info("logbook created id=%s team=%s author=%s", logbook_id, team, author_id)
    return _require_logbook(store, logbook_id)


def _write_with_history(
    store,
    logbook_id: str,
    build: Callable[[dict[str, Any]], Optional[tuple[dict[str, Any], dict[str, Any]]]],
) -> tuple[dict[str, Any], Optional[dict[str, Any]]]:
    """
    Commit a logbook patch and its history entry in one batch.

    `build(doc)` returns (patch, history entry) or None for no write. The batch only commits
    if the logbook is unchanged since `build` saw it; otherwise it is rebuilt from a fresh read.
    Returns (logbook after the write, history entry or None).
    """
    for _ in range(_MAX_WRITE_ATTEMPTS):
        snapshot = _require_logbook(store, logbook_id)
        built = build(snapshot)
        if built is None:
            return snapshot, None
        patch, history = built

        def _unchanged(current: Optional[dict[str, Any]]) -> None:
            if current is None:
                raise NotFoundError(f"Logbook not found: {logbook_id}")
            if current != snapshot:
                raise _StaleRead()

        try:
            store.batch_write(
                [
                    WriteOp("update", LOGBOOKS_COLLECTION, snapshot["id"], patch, precondition=_unchanged),
                    _history_op(history),
                ]
            )
        except _StaleRead:
            log.info("logbook changed during write id=%s, retrying", logbook_id)
            continue
        return _require_logbook(store, logbook_id), history
    raise ApiError("CONFLICT", f"Logbook {logbook_id} is being modified concurrently, try again")


def _require_not_trashed(doc: dict[str, Any]) -> None:
    if doc.get("deletedAt"):
        raise InvalidTransitionError(f"Logbook {doc.get('id')} is in the trash")


def update_logbook(
    store,
    logbook_id: str,
    data: dict[str, Any],
    *,
    actor_id: str,
    actor_name: str = "",
    is_reviewer: bool = False,
    base_updated_at: Any = None,
    force: bool = False,
    epsilon_seconds: float = DEFAULT_EPSILON_SECONDS,
) -> dict[str, Any]:
    """
    Apply an editor patch and record a history entry with the field diff.

    With `base_updated_at`, the update is refused (not raised) when the stored entry was
    modified after that version, unless `force` is set. Returns
    `{"ok", "conflict", "changed", "logbook", "changes"}`.
    """
    fields = normalize_update(data)
    actor_id = str(actor_id or "").strip()
    if not actor_id:
        raise ValidationError("Missing actor id")

    conflict: dict[str, Any] = {}

    def _build(doc: dict[str, Any]):
        _require_not_trashed(doc)
        content = {k: v for k, v in fields.items() if k != "status"}
        if content and not (is_reviewer or is_member(doc, actor_id)):
            raise ApiError("FORBIDDEN", "Only the author or collaborators can edit this logbook")
        if "status" in fields and fields["status"] != doc.get("status"):
            if not is_reviewer:
                if not is_member(doc, actor_id):
                    raise ApiError("FORBIDDEN", "Only the author or collaborators can change the status")
                if fields["status"] not in AUTHOR_STATUSES:
                    raise ApiError("FORBIDDEN", f"Only reviewers can set status {fields['status']}")

        if base_updated_at is not None and not force:
            if is_newer_than(doc.get("updatedAt"), base_updated_at, epsilon_seconds):
                conflict["serverData"] = doc
                return None

        changes = generate_diff(doc, fields)
        collab_changed = "collaboratorIds" in fields and fields["collaboratorIds"] != (doc.get("collaboratorIds") or [])
        if not changes and not collab_changed:
            return None

        now = iso_utc_now()
        patch = dict(fields)
        patch["updatedAt"] = now
        status_change = next((c for c in changes if c["field"] == "status"), None)
        if status_change:
            action = "status_change"
            description = f"Status changed from {status_change['oldValue']} to {status_change['newValue']}"
        else:
            action = "update"
            description = "Logbook updated"
        return patch, _history_entry(doc["id"], actor_id, actor_name, action, description, now, changes)

    logbook, history = _write_with_history(store, logbook_id, _build)
    if conflict:
        log.info("logbook update refused id=%s by=%s: newer version on server", logbook_id, actor_id)
        return {"ok": False, "conflict": True, "changed": False, "serverData": conflict["serverData"]}
    if history is None:
        return {"ok": True, "conflict": False, "changed": False, "logbook": logbook, "changes": []}
    log.info("logbook updated id=%s by=%s action=%s", logbook_id, actor_id, history["action"])
    return {"ok": True, "conflict": False, "changed": True, "logbook": logbook, "changes": history.get("changes", [])}


def invite_collaborator(store, logbook_id: str, collaborator_id: str, *, actor_id: str, actor_name: str = "") -> dict[str, Any]:
    collaborator_id = str(collaborator_id or "").strip()
    if not collaborator_id:
        raise ValidationError("Missing collaborator id")

    def _build(doc: dict[str, Any]):
        _require_not_trashed(doc)
        if not is_member(doc, actor_id):
            raise ApiError("FORBIDDEN", "Only the author or collaborators can invite")
        current = list(doc.get("collaboratorIds") or [])
        if collaborator_id in current or collaborator_id == doc.get("authorId"):
            return None
        now = iso_utc_now()
        patch = {"collaboratorIds": current + [collaborator_id], "updatedAt": now}
        return patch, _history_entry(doc["id"], actor_id, actor_name, "invite", f"Invited collaborator {collaborator_id}", now)

    logbook, _ = _write_with_history(store, logbook_id, _build)
    return logbook


def add_comment(store, logbook_id: str, content: str, *, author_id: str, author_name: str = "", is_reviewer: bool = False):
    content = str(content or "").strip()
    if not content:
        raise ValidationError("Comment content is required")
    if len(content) > 5000:
        raise ValidationError("Comment is too long")

    comment: dict[str, Any] = {}

    def _build(doc: dict[str, Any]):
        _require_not_trashed(doc)
        if not can_view(doc, author_id, is_reviewer=is_reviewer):
            raise NotFoundError(f"Logbook not found: {logbook_id}")
        now = iso_utc_now()
        comment.clear()
        comment.update(
            {"id": new_uuid(), "authorId": author_id, "authorName": author_name, "content": content, "createdAt": now}
        )
        patch = {"comments": list(doc.get("comments") or []) + [dict(comment)], "updatedAt": now}
        return patch, _history_entry(doc["id"], author_id, author_name, "comment", "Comment added", now)

    logbook, _ = _write_with_history(store, logbook_id, _build)
    return {"comment": dict(comment), "logbook": logbook}


def soft_delete_logbook(store, logbook_id: str, *, actor_id: str, actor_name: str = "", is_reviewer: bool = False):
    def _build(doc: dict[str, Any]):
        if doc.get("deletedAt"):
            raise InvalidTransitionError(f"Logbook {doc['id']} is already in the trash")
        if not is_reviewer and doc.get("authorId") != actor_id:
            raise ApiError("FORBIDDEN", "Only the author can delete this logbook")
        now = iso_utc_now()
        patch = {"deletedAt": now, "deletedBy": actor_id, "updatedAt": now}
        return patch, _history_entry(doc["id"], actor_id, actor_name, "delete", "Logbook moved to trash", now)

    logbook, _ = _write_with_history(store, logbook_id, _build)
    log.info("logbook trashed id=%s by=%s", logbook_id, actor_id)
    return logbook


def restore_logbook(store, logbook_id: str, *, actor_id: str, actor_name: str = "", is_reviewer: bool = False):
    def _build(doc: dict[str, Any]):
        if not doc.get("deletedAt"):
            raise InvalidTransitionError(f"Logbook {doc['id']} is not in the trash")
        if not is_reviewer and doc.get("authorId") != actor_id:
            raise ApiError("FORBIDDEN", "Only the author can restore this logbook")
        now = iso_utc_now()
        patch = {"deletedAt": None, "deletedBy": None, "updatedAt": now}
        return patch, _history_entry(doc["id"], actor_id, actor_name, "restore", "Logbook restored", now)

    logbook, _ = _write_with_history(store, logbook_id, _build)
    log.info("logbook restored id=%s by=%s", logbook_id, actor_id)
    return logbook


def get_logbook_history(store, logbook_id: str) -> list[dict[str, Any]]:
    return store.query_documents(
        HISTORY_COLLECTION, [("logbookId", "==", str(logbook_id or ""))], order_by="timestamp", descending=True
    )


def permanent_delete_logbook(store, logbook_id: str, *, actor_id: str) -> int:
    """Remove a trashed logbook and its history. Returns the number of history entries removed."""
    doc = _require_logbook(store, logbook_id)
    if not doc.get("deletedAt"):
        raise InvalidTransitionError("Move the logbook to the trash before deleting it permanently")

    history_ids = [h["id"] for h in get_logbook_history(store, doc["id"])]
    ops = [WriteOp("delete", HISTORY_COLLECTION, hid) for hid in history_ids]
    ops.append(WriteOp("delete", LOGBOOKS_COLLECTION, doc["id"]))
    size = store.max_batch_ops
    # the logbook itself goes in the last chunk so a failure never orphans it from its history
    for start in range(0, len(ops), size):
        store.batch_write(ops[start : start + size])
    log.info("logbook deleted permanently id=%s by=%s history=%s", doc["id"], actor_id, len(history_ids))
    return len(history_ids)


def list_logbooks(
    store,
    *,
    team: str,
    viewer_id: str = "",
    is_reviewer: bool = False,
    trashed: bool = False,
    status: Optional[str] = None,
    category: Optional[str] = None,
    author_id: Optional[str] = None,
    start_date: Any = None,
    end_date: Any = None,
    limit: Optional[int] = None,
) -> list[dict[str, Any]]:
    team = _choice(team, KRI_TEAMS, "team")
    filters: list[tuple[str, str, Any]] = [("team", "==", team)]
    if trashed:
        filters.append(("deletedAt", "!=", None))
        order_by = "deletedAt"
    else:
        filters.append(("deletedAt", "==", None))
        order_by = "activityDate"
    if status:
        filters.append(("status", "==", _choice(status, LOGBOOK_STATUSES, "status")))
    if category:
        filters.append(("category", "==", _choice(category, LOGBOOK_CATEGORIES, "category")))
    if author_id:
        filters.append(("authorId", "==", str(author_id)))
    if start_date:
        filters.append(("activityDate", ">=", _activity_date(start_date)))
    if end_date:
        filters.append(("activityDate", "<=", _activity_date(end_date)))

    docs = store.query_documents(LOGBOOKS_COLLECTION, filters, order_by=order_by, descending=True)
    if trashed and not is_reviewer:
        docs = [d for d in docs if d.get("authorId") == viewer_id]
    else:
        docs = [d for d in docs if can_view(d, viewer_id, is_reviewer=is_reviewer)]
    if limit is not None:
        try:
            n = int(limit)
        except (TypeError, ValueError):
            raise ValidationError("limit must be an integer")
        docs = docs[: max(0, n)]
    return docs


def get_logbook_stats(store, team: str) -> dict[str, Any]:
    docs = list_logbooks(store, team=team, is_reviewer=True)
    by_status = {s: 0 for s in LOGBOOK_STATUSES}
    by_category = {c: 0 for c in LOGBOOK_CATEGORIES}
    total_hours = 0.0
    for d in docs:
        s = str(d.get("status") or "")
        if s in by_status:
            by_status[s] += 1
        c = str(d.get("category") or "")
        if c in by_category:
            by_category[c] += 1
        total_hours += float(d.get("durationHours") or 0)
    return {
        "team": str(team).lower(),
        "totalEntries": len(docs),
        "entriesByStatus": by_status,
        "entriesByCategory": by_category,
        "totalHours": total_hours,
    }

