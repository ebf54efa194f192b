from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from docstore import MAX_BATCH_OPS, WriteOp
from services.registration_ids import REGISTRATIONS_COLLECTION
from services.step_verification import FORM_SUBMITTED, PAYMENT_PENDING, approval_patch
from utils import (
    ApiError,
    BatchPartialFailureError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    iso_utc_now,
)


log = logging.getLogger("bulk")

USERS_COLLECTION = "users"

VERIFY_PAYMENT = "verify_payment"
VERIFY_FORM_DATA = "verify_form_data"
BLACKLIST = "blacklist"

BULK_ACTIONS = (VERIFY_PAYMENT, VERIFY_FORM_DATA, BLACKLIST)

# status each registration must be in for the verify actions
_REQUIRED_STATUS = {VERIFY_PAYMENT: PAYMENT_PENDING, VERIFY_FORM_DATA: FORM_SUBMITTED}


@dataclass
class BulkOperation:
    action: str
    target_ids: list[str]
    actor_id: str
    reason: str = ""
    period: str = ""


@dataclass
class BulkResult:
    action: str
    succeeded_ids: list[str] = field(default_factory=list)
    chunks: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"action": self.action, "succeededIds": list(self.succeeded_ids), "count": len(self.succeeded_ids), "chunks": self.chunks}


def _dedupe(ids: list[Any]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for raw in ids or []:
        s = str(raw or "").strip()
        if s and s not in seen:
            seen.add(s)
            out.append(s)
    return out


def _status_guard(action: str, expected: str) -> Callable[[Optional[dict[str, Any]]], None]:
    def _check(doc: Optional[dict[str, Any]]) -> None:
        if doc is None:
            raise NotFoundError("Registration not found")
        status = str(doc.get("status") or "")
        if status != expected:
            raise InvalidTransitionError(f"{action}: registration {doc.get('id')} is {status}, expected {expected}")

    return _check


def _user_guard(doc: Optional[dict[str, Any]]) -> None:
    if doc is None:
        raise NotFoundError("User not found")


def _validate(op: BulkOperation) -> tuple[str, list[str]]:
    action = str(op.action or "").strip().lower()
    if action not in BULK_ACTIONS:
        raise ValidationError(f"Unknown bulk action: {op.action}")
    ids = _dedupe(op.target_ids)
    if not ids:
        raise ValidationError("No target ids")
    if not str(op.actor_id or "").strip():
        raise ValidationError("Missing actor id")
    if action == BLACKLIST and not str(op.reason or "").strip():
        raise ValidationError("Blacklist reason is required")
    return action, ids


def _precheck(store, action: str, ids: list[str]) -> None:
    """Reject the whole operation before any write when a target is missing or in the wrong state."""
    collection = USERS_COLLECTION if action == BLACKLIST else REGISTRATIONS_COLLECTION
    missing: list[str] = []
    wrong: list[str] = []
    expected = _REQUIRED_STATUS.get(action)
    for doc_id in ids:
        doc = store.get_document(collection, doc_id)
        if doc is None:
            missing.append(doc_id)
        elif expected and str(doc.get("status") or "") != expected:
            wrong.append(doc_id)
    if missing:
        raise NotFoundError(f"{action}: not found: {', '.join(missing)}", details={"missingIds": missing})
    if wrong:
        raise InvalidTransitionError(
            f"{action}: not in status {expected}: {', '.join(wrong)}", details={"invalidIds": wrong}
        )


def build_ops(op: BulkOperation, action: str, ids: list[str], at: str) -> list[WriteOp]:
    actor = str(op.actor_id).strip()
    if action == VERIFY_PAYMENT:
        guard = _status_guard(action, PAYMENT_PENDING)
        return [WriteOp("update", REGISTRATIONS_COLLECTION, i, approval_patch(3, actor, at), precondition=guard) for i in ids]
    if action == VERIFY_FORM_DATA:
        guard = _status_guard(action, FORM_SUBMITTED)
        return [WriteOp("update", REGISTRATIONS_COLLECTION, i, approval_patch(1, actor, at), precondition=guard) for i in ids]
    blacklist_info = {
        "isBlacklisted": True,
        "reason": str(op.reason).strip(),
        "bannedAt": at,
        "bannedBy": actor,
        "period": str(op.period or "").strip(),
    }
    patch = {"isActive": False, "blacklistInfo": blacklist_info, "updatedAt": at}
    return [WriteOp("update", USERS_COLLECTION, i, patch, precondition=_user_guard) for i in ids]


def execute_bulk(store, op: BulkOperation, *, chunk_size: int = MAX_BATCH_OPS) -> BulkResult:
    """
    Apply one action to every target.

    Each chunk of at most `chunk_size` writes commits atomically, so a single-chunk
    operation is all-or-nothing. When a later chunk fails the earlier chunks stay
    committed and BatchPartialFailureError lists which ids were and were not applied.
    """
    action, ids = _validate(op)
    chunk_size = max(1, min(int(chunk_size or MAX_BATCH_OPS), store.max_batch_ops))
    _precheck(store, action, ids)

    ops = build_ops(op, action, ids, iso_utc_now())
    result = BulkResult(action=action)
    for start in range(0, len(ops), chunk_size):
        chunk = ops[start : start + chunk_size]
        try:
            store.batch_write(chunk)
        except ApiError as e:
            if not result.succeeded_ids:
                log.warning("bulk action=%s failed before any commit: %s", action, e.message)
                raise
            failed = [o.doc_id for o in ops[start:]]
            log.error(
                "bulk action=%s partial failure committed=%s failed=%s", action, len(result.succeeded_ids), len(failed)
            )
            raise BatchPartialFailureError(
                f"{action}: {len(failed)} of {len(ops)} records were not updated",
                succeeded_ids=result.succeeded_ids,
                failed_ids=failed,
                cause=e.message,
            ) from e
        result.succeeded_ids.extend(o.doc_id for o in chunk)
        result.chunks += 1

    log.info("bulk action=%s by=%s count=%s chunks=%s", action, op.actor_id, len(result.succeeded_ids), result.chunks)
    return result
