from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Optional

from flask import Blueprint, current_app, g, request
from sqlalchemy.exc import DBAPIError

import db as db_module
from actions import dispatch
from actions.helpers import append_audit
from auth import assert_permission, is_public_action, role_or_public, validate_session_token
from docstore import get_store
from models import AuditLog
from storage import upload_file
from utils import (
    ApiError,
    AuthContext,
    err,
    iso_utc_now,
    now_monotonic,
    ok,
    parse_json_body,
    redact_for_audit,
    sanitize_filename,
)


api_bp = Blueprint("api", __name__)

log = logging.getLogger("api")

LOGIN_ACTIONS = {"LOGIN_EXCHANGE"}

UPLOADS_COLLECTION = "uploads"
UPLOAD_KINDS = {
    "photo",
    "ktm",
    "igRobotikFollow",
    "igMrcFollow",
    "youtubeSubscribe",
    "paymentProof",
    "logbookAttachment",
}


def _request_token(body_token: Any = None) -> str:
    if body_token:
        return str(body_token)
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return str(request.headers.get("X-Session-Token") or "").strip() or str(request.args.get("token") or "").strip()


def _limiter():
    return current_app.config["RATE_LIMITER"]


def _check_rate(action_u: str) -> None:
    cfg = current_app.config["CFG"]
    ip = request.headers.get("X-Forwarded-For", request.remote_addr or "")
    if action_u in LOGIN_ACTIONS:
        _limiter().check(f"{ip}:LOGIN", cfg.RATE_LIMIT_LOGIN)
    else:
        _limiter().check(f"{ip}:GLOBAL", cfg.RATE_LIMIT_GLOBAL)
        _limiter().check(f"{ip}:API:{action_u}", cfg.RATE_LIMIT_DEFAULT)


def _authenticate(db, token: str, action_u: str) -> Optional[AuthContext]:
    if action_u in LOGIN_ACTIONS or is_public_action(action_u):
        return None
    auth_ctx = validate_session_token(db, token, store=get_store())
    if not auth_ctx.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    return auth_ctx


def _api_call_audit(db, action_u: str, auth_ctx: Optional[AuthContext], data: Any, stage_tag: str) -> None:
    try:
        db.add(
            AuditLog(
                logId=f"LOG-{os.urandom(16).hex()}",
                entityType="API",
                entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
                action=action_u,
                fromState="",
                toState="",
                stageTag=stage_tag,
                remark="",
                actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
                actorEmail=str(auth_ctx.email or "") if auth_ctx else "",
                at=iso_utc_now(),
                correlationId=str(getattr(g, "request_id", "") or ""),
                metaJson=json.dumps({"data": redact_for_audit(data)}, default=str),
            )
        )
    except Exception:
        log.exception("api audit failed action=%s", action_u)


def _error_response(action_u: str, auth_ctx, data: Any, e: ApiError):
    _write_error_audit(action_u, auth_ctx, data, e)
    return err(e.code, e.message, http_status=e.http_status, details=e.details)[0], e.http_status


def _unexpected_message(cfg, kind: str, detail: str) -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if cfg.IS_PRODUCTION or not detail:
        return f"{kind} (requestId: {request_id})" if request_id else kind
    return f"{kind}: {detail} (requestId: {request_id})" if request_id else f"{kind}: {detail}"


def run_action(action: str, data: Any, token: Any, *, stage_tag: str = "API_CALL"):
    """Authenticate, authorize, dispatch and audit one action. Returns a Flask response tuple."""
    cfg = current_app.config["CFG"]
    action_u = str(action or "").upper().strip()
    db = None
    auth_ctx = None
    try:
        if not action_u:
            raise ApiError("BAD_REQUEST", "Missing action")
        _check_rate(action_u)

        db = db_module.SessionLocal()
        auth_ctx = _authenticate(db, _request_token(token), action_u)
        assert_permission(db, role_or_public(auth_ctx), action_u)

        out = dispatch(action_u, data, auth_ctx, db, cfg)

        _api_call_audit(db, action_u, auth_ctx, data, stage_tag)
        db.commit()

        latency_ms = int((now_monotonic() - g.start_ts) * 1000)
        log.info(
            "request_id=%s action=%s user=%s role=%s latency_ms=%s",
            g.request_id,
            action_u,
            (auth_ctx.userId if auth_ctx else "PUBLIC"),
            (auth_ctx.role if auth_ctx else "PUBLIC"),
            latency_ms,
        )
        return ok(out)
    except ApiError as e:
        if db is not None:
            db.rollback()
        if e.http_status >= 500:
            log.error("request_id=%s action=%s %s: %s", getattr(g, "request_id", ""), action_u, e.code, e.message)
        return _error_response(action_u, auth_ctx, data, e)
    except DBAPIError as e:
        if db is not None:
            db.rollback()
        orig = re.sub(r"\s+", " ", str(getattr(e, "orig", "") or "")).strip()[:300]
        log.exception("request_id=%s action=%s", getattr(g, "request_id", ""), action_u)
        return _error_response(action_u, auth_ctx, data, ApiError("INTERNAL", _unexpected_message(cfg, "Database error", orig), 500))
    except Exception as e:
        if db is not None:
            db.rollback()
        log.exception("request_id=%s action=%s", getattr(g, "request_id", ""), action_u)
        return _error_response(
            action_u, auth_ctx, data, ApiError("INTERNAL", _unexpected_message(cfg, "Unexpected error", type(e).__name__), 500)
        )
    finally:
        if db is not None:
            db.close()


def _write_error_audit(action: str, auth_ctx, data: Any, err_obj: ApiError) -> None:
    if db_module.SessionLocal is None:
        return
    db2 = db_module.SessionLocal()
    try:
        db2.add(
            AuditLog(
                logId=f"LOG-{os.urandom(16).hex()}",
                entityType="API",
                entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
                action=str(action or "").upper() or "UNKNOWN",
                fromState="",
                toState="",
                stageTag="API_ERROR",
                remark=f"{err_obj.code}: {err_obj.message}"[:1000],
                actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
                actorEmail=str(auth_ctx.email or "") if auth_ctx else "",
                at=iso_utc_now(),
                correlationId=str(getattr(g, "request_id", "") or ""),
                metaJson=json.dumps(
                    {"data": redact_for_audit(data or {}), "error": {"code": err_obj.code, "message": err_obj.message}},
                    default=str,
                ),
            )
        )
        db2.commit()
    except Exception:
        db2.rollback()
        log.exception("error audit failed action=%s", action)
    finally:
        db2.close()


@api_bp.post("/api")
def api_route():
    raw = request.get_data(as_text=True)
    try:
        body = parse_json_body(raw)
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status)[0], e.http_status
    return run_action(body.get("action"), body.get("data") or {}, body.get("token"))


# -- REST aliases -----------------------------------------------------------


def _json_body() -> dict[str, Any]:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


@api_bp.get("/api/settings/recruitment")
def rest_settings_get():
    return run_action("SETTINGS_GET", {}, None, stage_tag="API_CALL_REST")


@api_bp.get("/api/registrations/me")
def rest_registration_me():
    return run_action("REGISTRATION_GET", {}, None, stage_tag="API_CALL_REST")


@api_bp.get("/api/registrations/<candidate_id>")
def rest_registration_get(candidate_id: str):
    return run_action("REGISTRATION_GET", {"candidateId": candidate_id}, None, stage_tag="API_CALL_REST")


@api_bp.post("/api/registrations/<registration_id>/steps/<int:step>/verify")
def rest_registration_verify_step(registration_id: str, step: int):
    body = _json_body()
    data = {
        "registrationId": registration_id,
        "step": step,
        "approve": body.get("approve"),
        "notes": body.get("notes"),
        "rejectionReason": body.get("rejectionReason"),
    }
    return run_action("REGISTRATION_VERIFY_STEP", data, None, stage_tag="API_CALL_REST")


@api_bp.post("/api/registrations/bulk")
def rest_registration_bulk():
    return run_action("REGISTRATION_BULK", _json_body(), None, stage_tag="API_CALL_REST")


@api_bp.get("/api/logbooks")
def rest_logbook_list():
    data: dict[str, Any] = {k: v for k, v in request.args.items() if k != "token"}
    if "trashed" in data:
        data["trashed"] = str(data["trashed"]).lower() in {"1", "true", "yes"}
    return run_action("LOGBOOK_LIST", data, None, stage_tag="API_CALL_REST")


@api_bp.get("/api/logbooks/<logbook_id>")
def rest_logbook_get(logbook_id: str):
    return run_action("LOGBOOK_GET", {"logbookId": logbook_id}, None, stage_tag="API_CALL_REST")


@api_bp.patch("/api/logbooks/<logbook_id>")
def rest_logbook_update(logbook_id: str):
    body = _json_body()
    data = {
        "logbookId": logbook_id,
        "changes": body.get("changes") or {},
        "baseUpdatedAt": body.get("baseUpdatedAt"),
        "force": bool(body.get("force")),
    }
    return run_action("LOGBOOK_UPDATE", data, None, stage_tag="API_CALL_REST")


@api_bp.post("/api/uploads")
def rest_upload():
    cfg = current_app.config["CFG"]
    action_u = "FILE_UPLOAD"
    db = None
    auth_ctx = None
    meta: dict[str, Any] = {}
    try:
        _check_rate(action_u)
        db = db_module.SessionLocal()
        auth_ctx = _authenticate(db, _request_token(), action_u)
        assert_permission(db, role_or_public(auth_ctx), action_u)

        kind = str(request.form.get("kind") or "").strip()
        if kind not in UPLOAD_KINDS:
            raise ApiError("BAD_REQUEST", f"kind must be one of {', '.join(sorted(UPLOAD_KINDS))}")
        up = request.files.get("file")
        if not up:
            raise ApiError("BAD_REQUEST", "Missing file")

        filename = sanitize_filename(str(getattr(up, "filename", "") or "") or kind)
        mime_type = str(getattr(up, "mimetype", "") or "").strip()
        blob = up.read() or b""
        meta = {"kind": kind, "fileName": filename, "mimeType": mime_type, "size": len(blob)}

        url = upload_file(
            cfg,
            blob,
            f"{kind}/{auth_ctx.userId}/{kind}_{filename}",
            mime_type,
            uploaded_by=auth_ctx.userId,
        )
        if url.startswith("/files/"):
            get_store().set_document(
                UPLOADS_COLLECTION,
                url.rsplit("/", 1)[-1],
                {"ownerId": auth_ctx.userId, "kind": kind, "mimeType": mime_type, "size": len(blob), "createdAt": iso_utc_now()},
            )

        append_audit(db, entityType="FILE", entityId=url, action=action_u, stageTag="FILE_UPLOAD", actor=auth_ctx, meta=meta)
        db.commit()
        return ok({"url": url, "kind": kind, "size": len(blob)})
    except ApiError as e:
        if db is not None:
            db.rollback()
        return _error_response(action_u, auth_ctx, meta, e)
    finally:
        if db is not None:
            db.close()
