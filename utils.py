from __future__ import annotations

import hashlib
import json
import logging
import re
import sys
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from flask import jsonify


_DEFAULT_HTTP_STATUS = {
    "BAD_REQUEST": 400,
    "AUTH_INVALID": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "RATE_LIMITED": 429,
    "INTERNAL": 500,
    "BATCH_PARTIAL_FAILURE": 500,
    "STORE_UNAVAILABLE": 503,
}


class ApiError(Exception):
    def __init__(self, code: str, message: str, http_status: Optional[int] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.code = str(code or "INTERNAL").upper()
        self.message = str(message or "")
        self.http_status = int(http_status or _DEFAULT_HTTP_STATUS.get(self.code, 400))
        self.details = details


class NotFoundError(ApiError):
    def __init__(self, message: str = "Not found", **kwargs):
        super().__init__("NOT_FOUND", message, http_status=404, **kwargs)


class ValidationError(ApiError):
    def __init__(self, message: str, **kwargs):
        super().__init__("BAD_REQUEST", message, http_status=400, **kwargs)


class InvalidTransitionError(ApiError):
    """Operation is not allowed from the record's current status."""

    def __init__(self, message: str, **kwargs):
        super().__init__("CONFLICT", message, http_status=409, **kwargs)


class StoreUnavailableError(ApiError):
    def __init__(self, message: str = "Document store unavailable", **kwargs):
        super().__init__("STORE_UNAVAILABLE", message, http_status=503, **kwargs)


class BatchPartialFailureError(ApiError):
    """
    A chunked bulk write stopped part way.

    Chunks listed in `succeeded_ids` are committed and are NOT rolled back.
    """

    def __init__(self, message: str, *, succeeded_ids: list[str], failed_ids: list[str], cause: str = ""):
        self.succeeded_ids = list(succeeded_ids or [])
        self.failed_ids = list(failed_ids or [])
        details = {"succeededIds": self.succeeded_ids, "failedIds": self.failed_ids}
        if cause:
            details["cause"] = cause
        super().__init__("BATCH_PARTIAL_FAILURE", message, http_status=500, details=details)


@dataclass
class AuthContext:
    valid: bool
    userId: str
    email: str
    role: str
    expiresAt: str


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    lvl = getattr(logging, str(level or "INFO").upper().strip(), logging.INFO)
    root.setLevel(lvl)
    if any(getattr(h, "_robotics_handler", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    handler._robotics_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)


def iso_utc_now() -> str:
    return to_iso_utc(datetime.now(timezone.utc))


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    dt = dt.replace(microsecond=(dt.microsecond // 1000) * 1000)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_datetime_maybe(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    s = str(value or "").strip()
    if not s:
        return None
    try:
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def now_monotonic() -> float:
    return time.monotonic()


def new_uuid() -> str:
    return str(uuid.uuid4())


def sha256_hex(value: str) -> str:
    return hashlib.sha256(str(value or "").encode("utf-8")).hexdigest()


def normalize_role(role: Any) -> str:
    return str(role or "").upper().strip()


def parse_roles_csv(value: str) -> list[str]:
    return [normalize_role(x) for x in str(value or "").split(",") if normalize_role(x)]


_FILENAME_SAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(name: str) -> str:
    base = str(name or "").strip().replace("\\", "/").split("/")[-1]
    base = _FILENAME_SAFE_RE.sub("_", base).strip("._")
    return base[:120] or "file"


def ok(data: Any = None):
    return jsonify({"ok": True, "data": data}), 200


def err(code: str, message: str, http_status: int = 400, details: Optional[dict] = None):
    body: dict[str, Any] = {"code": str(code or "INTERNAL"), "message": str(message or "")}
    if details:
        body["details"] = details
    return jsonify({"ok": False, "error": body}), http_status


def parse_json_body(raw: str) -> dict[str, Any]:
    s = str(raw or "").strip()
    if not s:
        raise ApiError("BAD_REQUEST", "Empty body")
    try:
        body = json.loads(s)
    except json.JSONDecodeError:
        raise ApiError("BAD_REQUEST", "Invalid JSON body")
    if not isinstance(body, dict):
        raise ApiError("BAD_REQUEST", "Body must be a JSON object")
    return body


_REDACT_KEYS = {"token", "idtoken", "sessiontoken", "password", "accountnumber", "ewalletnumber", "phone", "nim"}


def redact_for_audit(value: Any, _depth: int = 0) -> Any:
    if _depth > 6:
        return "..."
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if str(k).lower() in _REDACT_KEYS:
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v, _depth + 1)
        return out
    if isinstance(value, list):
        return [redact_for_audit(v, _depth + 1) for v in value[:50]]
    if isinstance(value, str) and len(value) > 500:
        return value[:500] + "..."
    return value


class SimpleRateLimiter:
    """Fixed-window per-key limiter. `limit` is "<count>/<seconds>", e.g. "60/60"."""

    def __init__(self):
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[int, float]] = {}

    @staticmethod
    def _parse(limit: str) -> tuple[int, int]:
        try:
            count_s, window_s = str(limit or "").split("/", 1)
            return max(1, int(count_s)), max(1, int(window_s))
        except ValueError:
            return 60, 60

    def check(self, key: str, limit: str) -> None:
        count, window = self._parse(limit)
        now = time.monotonic()
        with self._lock:
            used, started = self._windows.get(key, (0, now))
            if now - started >= window:
                used, started = 0, now
            used += 1
            self._windows[key] = (used, started)
        if used > count:
            raise ApiError("RATE_LIMITED", "Too many requests", http_status=429)
