from __future__ import annotations

from actions.helpers import append_audit
from auth import (
    KNOWN_ROLES,
    USERS_COLLECTION,
    issue_session_token,
    user_id_for_email,
    user_is_blocked,
    verify_google_id_token,
)
from docstore import get_store
from utils import ApiError, AuthContext, iso_utc_now, normalize_role


# accounts without a users document sign in as candidates
DEFAULT_ROLE = "CAANG"


def _public_me(user: dict) -> dict:
    return {
        "userId": user.get("id", ""),
        "email": user.get("email", ""),
        "fullName": user.get("fullName", ""),
        "picture": user.get("picture", ""),
        "role": normalize_role(user.get("role")),
        "isActive": user.get("isActive") is not False,
        "profile": user.get("profile") or {},
    }


def login_exchange(data, auth: AuthContext | None, db, cfg):
    id_token = (data or {}).get("idToken")
    google_user = verify_google_id_token(
        id_token,
        google_client_id=cfg.GOOGLE_CLIENT_ID,
        allow_test_tokens=bool(cfg.AUTH_ALLOW_TEST_TOKENS),
    )

    email = str(google_user.get("email") or "").strip().lower()
    if not email or "@" not in email:
        raise ApiError("AUTH_INVALID", "Google account has no email")

    store = get_store()
    user_id = user_id_for_email(email)
    now = iso_utc_now()
    created = store.create_document(
        USERS_COLLECTION,
        user_id,
        {
            "email": email,
            "fullName": str(google_user.get("fullName") or ""),
            "picture": str(google_user.get("picture") or ""),
            "role": DEFAULT_ROLE,
            "isActive": True,
            "createdAt": now,
            "updatedAt": now,
        },
    )
    user = store.get_document(USERS_COLLECTION, user_id) or {}

    if user_is_blocked(user):
        raise ApiError("FORBIDDEN", "Account is disabled", http_status=403)
    role = normalize_role(user.get("role"))
    if role not in KNOWN_ROLES:
        raise ApiError("FORBIDDEN", f"Unknown role: {role}")

    store.update_document(USERS_COLLECTION, user_id, {"lastLoginAt": now})

    ses = issue_session_token(db, user_id=user_id, email=email, role=role, session_ttl_minutes=cfg.SESSION_TTL_MINUTES)

    append_audit(
        db,
        entityType="AUTH",
        entityId=user_id,
        action="LOGIN_EXCHANGE",
        stageTag="AUTH_LOGIN",
        actor=AuthContext(valid=True, userId=user_id, email=email, role=role, expiresAt=ses["expiresAt"]),
        meta={"provisioned": bool(created)},
    )

    return {"sessionToken": ses["sessionToken"], "expiresAt": ses["expiresAt"], "me": _public_me(user)}


def get_me(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    user = get_store().get_document(USERS_COLLECTION, auth.userId)
    if not user:
        raise ApiError("AUTH_INVALID", "User missing")
    return {"me": _public_me(user), "expiresAt": auth.expiresAt}
