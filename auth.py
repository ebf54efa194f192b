from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from sqlalchemy import select

from cache_layer import cache_get, cache_set
from models import Permission, Session as DbSession
from utils import (
    ApiError,
    AuthContext,
    iso_utc_now,
    new_uuid,
    normalize_role,
    parse_datetime_maybe,
    parse_roles_csv,
    sha256_hex,
    to_iso_utc,
)


USERS_COLLECTION = "users"

KNOWN_ROLES = {"ADMIN", "CAANG", "MEMBER"}

PUBLIC_ACTIONS = {"LOGIN_EXCHANGE"}


STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    "LOGIN_EXCHANGE": ["PUBLIC"],
    "GET_ME": ["ADMIN", "CAANG", "MEMBER"],
    "SETTINGS_GET": ["ADMIN", "CAANG", "MEMBER"],
    "SETTINGS_UPSERT": ["ADMIN"],
    # Candidate registration wizard
    "REGISTRATION_INIT": ["CAANG"],
    "REGISTRATION_GET": ["ADMIN", "CAANG"],
    "REGISTRATION_SUBMIT_FORM": ["CAANG"],
    "REGISTRATION_SUBMIT_DOCUMENTS": ["CAANG"],
    "REGISTRATION_SUBMIT_PAYMENT": ["CAANG"],
    "FILE_UPLOAD": ["ADMIN", "CAANG", "MEMBER"],
    # Admin review
    "REGISTRATION_VERIFY_STEP": ["ADMIN"],
    "REGISTRATION_VERIFY_ALL": ["ADMIN"],
    "REGISTRATION_REJECT": ["ADMIN"],
    "REGISTRATION_REQUEST_REVISION": ["ADMIN"],
    "REGISTRATION_BULK": ["ADMIN"],
    "CAANG_LIST": ["ADMIN"],
    "CAANG_STATS": ["ADMIN"],
    "CAANG_BLACKLIST": ["ADMIN"],
    "CAANG_UNBLACKLIST": ["ADMIN"],
    # Research logbook
    "LOGBOOK_CREATE": ["ADMIN", "MEMBER"],
    "LOGBOOK_GET": ["ADMIN", "MEMBER"],
    "LOGBOOK_LIST": ["ADMIN", "MEMBER"],
    "LOGBOOK_UPDATE": ["ADMIN", "MEMBER"],
    "LOGBOOK_HISTORY": ["ADMIN", "MEMBER"],
    "LOGBOOK_INVITE": ["ADMIN", "MEMBER"],
    "LOGBOOK_COMMENT_ADD": ["ADMIN", "MEMBER"],
    "LOGBOOK_DELETE": ["ADMIN", "MEMBER"],
    "LOGBOOK_RESTORE": ["ADMIN", "MEMBER"],
    "LOGBOOK_PERMANENT_DELETE": ["ADMIN"],
    "LOGBOOK_STATS": ["ADMIN", "MEMBER"],
}


_RBAC_RULE_PREFIX = "RBAC:RULE:"
_INVALID = AuthContext(valid=False, userId="", email="", role="", expiresAt="")


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def verify_google_id_token(id_token: str, google_client_id: str, allow_test_tokens: bool = False) -> dict[str, Any]:
    if not id_token or not isinstance(id_token, str):
        raise ApiError("BAD_REQUEST", "Missing idToken")

    if allow_test_tokens and id_token.startswith("TEST:"):
        email = id_token.split(":", 1)[1].strip().lower()
        if not email:
            raise ApiError("AUTH_INVALID", "Invalid test token")
        return {"email": email, "fullName": email.split("@", 1)[0], "picture": "", "sub": f"TEST:{email}"}

    if not google_client_id:
        raise ApiError("INTERNAL", "Missing GOOGLE_CLIENT_ID")

    try:
        payload = google_id_token.verify_oauth2_token(id_token, google_requests.Request(), audience=google_client_id)
    except ValueError:
        raise ApiError("AUTH_INVALID", "Invalid Google ID token")

    if payload.get("aud") != google_client_id:
        raise ApiError("AUTH_INVALID", "Google token audience mismatch")
    if str(payload.get("email_verified", "")).lower() != "true":
        raise ApiError("AUTH_INVALID", "Google email not verified")

    return {
        "email": str(payload.get("email", "")).lower(),
        "fullName": payload.get("name", "") or "",
        "picture": payload.get("picture", "") or "",
        "sub": payload.get("sub", "") or "",
    }


def user_id_for_email(email: str) -> str:
    """Stable user document id derived from the login email."""
    return "U-" + sha256_hex(str(email or "").strip().lower())[:24]


def user_is_blocked(user: Optional[dict[str, Any]]) -> bool:
    if not user:
        return True
    if user.get("isActive") is False:
        return True
    return bool((user.get("blacklistInfo") or {}).get("isBlacklisted"))


def issue_session_token(db, *, user_id: str, email: str, role: str, session_ttl_minutes: int) -> dict[str, str]:
    token = "ST-" + new_uuid().replace("-", "") + new_uuid().replace("-", "")
    issued_at = iso_utc_now()
    expires_at = to_iso_utc(datetime.now(timezone.utc) + timedelta(minutes=int(session_ttl_minutes)))

    db.add(
        DbSession(
            sessionId="SES-" + new_uuid(),
            tokenHash=sha256_hex(token),
            tokenPrefix=token[:12],
            userId=str(user_id or ""),
            email=str(email or ""),
            role=normalize_role(role),
            issuedAt=issued_at,
            expiresAt=expires_at,
            lastSeenAt=issued_at,
            revokedAt="",
            revokedBy="",
        )
    )
    return {"sessionToken": token, "expiresAt": expires_at}


def revoke_user_sessions(db, *, user_id: str, revoked_by: str) -> int:
    """Revoke every live session of a user (blacklist, deactivation)."""
    uid = str(user_id or "").strip()
    if not uid:
        return 0
    now = iso_utc_now()
    rows = db.execute(select(DbSession).where(DbSession.userId == uid).where(DbSession.revokedAt == "")).scalars().all()
    for s in rows:
        s.revokedAt = now
        s.revokedBy = str(revoked_by or "")
    return len(rows)


def validate_session_token(db, token: Any, *, store=None) -> AuthContext:
    if not token or not isinstance(token, str):
        return _INVALID

    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return _INVALID

    exp_dt = parse_datetime_maybe(ses.expiresAt)
    if exp_dt and exp_dt < datetime.now(timezone.utc):
        return _INVALID

    user_id = str(ses.userId or "").strip()
    if store is not None:
        user = store.get_document(USERS_COLLECTION, user_id)
        if not user:
            return _INVALID
        if user_is_blocked(user):
            raise ApiError("FORBIDDEN", "Account is disabled", http_status=403)

    # lastSeenAt is refreshed at most once per interval
    try:
        interval_s = int(os.getenv("SESSION_LAST_SEEN_UPDATE_SECONDS", "300") or "300")
    except ValueError:
        interval_s = 300
    last_dt = parse_datetime_maybe(ses.lastSeenAt)
    if interval_s <= 0 or not last_dt or (datetime.now(timezone.utc) - last_dt).total_seconds() >= interval_s:
        ses.lastSeenAt = iso_utc_now()

    return AuthContext(
        valid=True,
        userId=user_id,
        email=str(ses.email or ""),
        role=normalize_role(ses.role),
        expiresAt=str(ses.expiresAt or ""),
    )


def get_permission_rule(db, perm_type: str, perm_key: str) -> Optional[dict[str, Any]]:
    perm_type_u = str(perm_type or "").upper().strip()
    perm_key_u = str(perm_key or "").upper().strip()
    if not perm_type_u or not perm_key_u:
        return None

    cache_key = f"{_RBAC_RULE_PREFIX}{perm_type_u}:{perm_key_u}"
    cached = cache_get(cache_key)
    if cached is False:
        return None
    if isinstance(cached, dict):
        return cached

    row = (
        db.execute(select(Permission).where(Permission.permType == perm_type_u).where(Permission.permKey == perm_key_u))
        .scalars()
        .first()
    )
    if not row:
        cache_set(cache_key, False)
        return None
    out = {"enabled": bool(row.enabled), "roles": parse_roles_csv(row.rolesCsv or "")}
    cache_set(cache_key, out)
    return out


def assert_permission(db, role: str, action: str) -> None:
    role_u = normalize_role(role)
    action_u = str(action or "").upper().strip()

    if is_public_action(action_u):
        return

    allowed_static = STATIC_RBAC_PERMISSIONS.get(action_u)
    rule = get_permission_rule(db, "ACTION", action_u)
    has_dyn = bool(rule and rule.get("enabled") is True)

    if not allowed_static and not has_dyn:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    if not role_u or role_u == "PUBLIC":
        raise ApiError("AUTH_INVALID", "Login required")
    if role_u not in KNOWN_ROLES:
        raise ApiError("FORBIDDEN", f"Unknown role: {role_u}")

    if action_u == "GET_ME":
        return

    roles = (rule.get("roles") or []) if has_dyn else (allowed_static or [])
    if "PUBLIC" not in roles and role_u not in roles:
        raise ApiError("FORBIDDEN", f"Not allowed for role: {role_u}")


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return normalize_role(auth.role) or "PUBLIC"
