from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from flask import Flask, g, request
from flask_cors import CORS

import db as db_module
from config import Config
from docstore import init_store
from utils import SimpleRateLimiter, err, now_monotonic, setup_logging


def create_app() -> Flask:
    load_dotenv()
    cfg = Config()
    cfg.validate()
    setup_logging(cfg.LOG_LEVEL)

    engine = db_module.init_engine(cfg.DATABASE_URL)
    if db_module.SessionLocal is None:
        raise RuntimeError("DB not initialized")

    import models  # noqa: F401  registers tables on Base

    db_module.Base.metadata.create_all(bind=engine)
    init_store(db_module.SessionLocal, max_batch_ops=cfg.BULK_CHUNK_SIZE)

    if cfg.FILE_STORAGE_MODE == "local":
        os.makedirs(cfg.UPLOAD_DIR, exist_ok=True)

    app = Flask(__name__)
    app.config["CFG"] = cfg
    app.config["RATE_LIMITER"] = SimpleRateLimiter()
    app.config["MAX_CONTENT_LENGTH"] = (cfg.MAX_UPLOAD_MB + 1) * 1024 * 1024

    CORS(
        app,
        origins=cfg.ALLOWED_ORIGINS,
        supports_credentials=False,
        allow_headers=["Content-Type", "Authorization", "X-Session-Token", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    from app.routes.api import api_bp
    from app.routes.core import core_bp

    app.register_blueprint(core_bp)
    app.register_blueprint(api_bp)

    @app.before_request
    def _before():
        g.request_id = str(request.headers.get("X-Request-ID") or "").strip()[:64] or os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}. Use POST /api for actions.", http_status=404)

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("BAD_REQUEST", "Method not allowed. Use POST /api for actions.", http_status=405)

    @app.errorhandler(413)
    def too_large(_e):
        return err("BAD_REQUEST", f"Max upload size is {cfg.MAX_UPLOAD_MB}MB", http_status=413)

    logging.getLogger("api").info(
        "app started env=%s version=%s storage=%s", cfg.APP_ENV, cfg.APP_VERSION, cfg.FILE_STORAGE_MODE
    )
    return app
