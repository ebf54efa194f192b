from __future__ import annotations

import logging
from typing import Any, Optional

from services.bulk_ops import BLACKLIST, BulkOperation, execute_bulk
from services.registration_ids import REGISTRATIONS_COLLECTION
from services.step_verification import (
    DOCUMENTS_UPLOADED,
    FORM_SUBMITTED,
    PAYMENT_PENDING,
    VERIFIED,
)
from utils import InvalidTransitionError, ValidationError, iso_utc_now


log = logging.getLogger("caang")

USERS_COLLECTION = "users"
CAANG_ROLE = "CAANG"

# statuses with a step waiting for an admin
PENDING_STATUSES = {FORM_SUBMITTED, DOCUMENTS_UPLOADED, PAYMENT_PENDING}


def is_blacklisted(user: Optional[dict[str, Any]]) -> bool:
    return bool(((user or {}).get("blacklistInfo") or {}).get("isBlacklisted"))


def list_caangs(
    store,
    *,
    status: Optional[str] = None,
    or_period: Optional[str] = None,
    search: Optional[str] = None,
    blacklisted: Optional[bool] = None,
) -> list[dict[str, Any]]:
    """Candidates joined with their registration (None when not started yet)."""
    users = store.query_documents(USERS_COLLECTION, [("role", "==", CAANG_ROLE)], order_by="createdAt", descending=True)
    registrations = {r["id"]: r for r in store.query_documents(REGISTRATIONS_COLLECTION)}

    needle = str(search or "").strip().lower()
    out = []
    for user in users:
        reg = registrations.get(user["id"])
        if status and (reg is None or reg.get("status") != status):
            continue
        if or_period and (reg is None or str(reg.get("orPeriod") or "") != str(or_period).strip()):
            continue
        if blacklisted is not None and is_blacklisted(user) != bool(blacklisted):
            continue
        if needle:
            profile = user.get("profile") or {}
            haystack = " ".join(
                str(v or "")
                for v in (
                    user.get("email"),
                    user.get("fullName"),
                    profile.get("fullName"),
                    profile.get("nim"),
                    (reg or {}).get("registrationId"),
                )
            ).lower()
            if needle not in haystack:
                continue
        out.append({"user": user, "registration": reg})
    return out


def get_caang_detail(store, user_id: str) -> Optional[dict[str, Any]]:
    uid = str(user_id or "").strip()
    user = store.get_document(USERS_COLLECTION, uid) if uid else None
    if user is None:
        return None
    return {"user": user, "registration": store.get_document(REGISTRATIONS_COLLECTION, uid)}


def calculate_caang_stats(caangs: list[dict[str, Any]]) -> dict[str, int]:
    stats = {"total": len(caangs), "pendingVerification": 0, "verified": 0, "blacklisted": 0}
    for item in caangs:
        if is_blacklisted(item.get("user")):
            stats["blacklisted"] += 1
            continue
        status = (item.get("registration") or {}).get("status")
        if status == VERIFIED:
            stats["verified"] += 1
        elif status in PENDING_STATUSES:
            stats["pendingVerification"] += 1
    return stats


def blacklist_caang(store, user_id: str, *, reason: str, actor_id: str, period: str = "permanent") -> dict[str, Any]:
    execute_bulk(store, BulkOperation(action=BLACKLIST, target_ids=[user_id], actor_id=actor_id, reason=reason, period=period))
    return store.get_document(USERS_COLLECTION, str(user_id).strip()) or {}


def unblacklist_caang(store, user_id: str, *, actor_id: str) -> dict[str, Any]:
    uid = str(user_id or "").strip()
    if not uid:
        raise ValidationError("Missing user id")
    now = iso_utc_now()

    def _mutate(user: dict[str, Any]) -> dict[str, Any]:
        if not is_blacklisted(user):
            raise InvalidTransitionError(f"User {uid} is not blacklisted")
        return {
            "isActive": True,
            "blacklistInfo.isBlacklisted": False,
            "blacklistInfo.liftedAt": now,
            "blacklistInfo.liftedBy": str(actor_id or ""),
            "updatedAt": now,
        }

    user = store.update_document_with(USERS_COLLECTION, uid, _mutate)
    log.info("caang unblacklisted user=%s by=%s", uid, actor_id)
    return user
