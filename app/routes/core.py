from __future__ import annotations

import mimetypes

from flask import Blueprint, current_app, request, send_file

import db as db_module
from auth import role_or_public, validate_session_token
from cache_layer import cache_stats
from docstore import get_store
from storage import local_file_path
from utils import ApiError, err, iso_utc_now, ok


core_bp = Blueprint("core", __name__)

UPLOADS_COLLECTION = "uploads"


@core_bp.get("/health")
def health():
    cfg = current_app.config["CFG"]
    return ok(
        {
            "status": "ok",
            "time": iso_utc_now(),
            "version": cfg.APP_VERSION,
            "db_pool": db_module.get_pool_stats(),
            "cache": cache_stats(),
        }
    )


@core_bp.get("/")
def index():
    return ok(
        {
            "status": "ok",
            "message": "Recruitment backend is running. Use /health for a quick check and POST /api for actions.",
            "endpoints": {"health": "/health", "api": "/api", "uploads": "/api/uploads"},
        }
    )


@core_bp.get("/files/<key>")
def files_get(key: str):
    cfg = current_app.config["CFG"]
    path = local_file_path(cfg, key)
    if path is None:
        return err("NOT_FOUND", "File not found", http_status=404)

    token = str(request.args.get("token") or "").strip()
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        token = authz[7:].strip()
    if not token:
        return err("AUTH_INVALID", "Missing token", http_status=401)

    db = db_module.SessionLocal()
    try:
        store = get_store()
        try:
            auth_ctx = validate_session_token(db, token, store=store)
        except ApiError as e:
            return err(e.code, e.message, http_status=e.http_status)
        if not auth_ctx.valid:
            return err("AUTH_INVALID", "Invalid or expired session", http_status=401)

        # candidates and members only see their own uploads
        if role_or_public(auth_ctx) != "ADMIN":
            meta = store.get_document(UPLOADS_COLLECTION, key) or {}
            if meta.get("ownerId") != auth_ctx.userId:
                return err("FORBIDDEN", "File not accessible", http_status=403)
        db.commit()
    finally:
        db.close()

    download_name = key.split("_", 1)[-1]
    mime, _enc = mimetypes.guess_type(download_name)
    resp = send_file(path, mimetype=mime or "application/octet-stream", as_attachment=False, download_name=download_name)
    resp.headers["X-Content-Type-Options"] = "nosniff"
    return resp
