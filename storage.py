from __future__ import annotations

import base64
import logging
import os
import re
from typing import Any, Optional

import requests

from utils import ApiError, ValidationError, sanitize_filename


log = logging.getLogger("storage")

ALLOWED_MIME_TYPES = {"image/jpeg", "image/png", "image/webp", "application/pdf"}

_KEY_RE = re.compile(r"^[0-9a-f]{32}_[A-Za-z0-9._-]+$")


def _upload_dir(cfg: Any) -> str:
    return str(getattr(cfg, "UPLOAD_DIR", "./uploads") or "./uploads")


def _storage_mode(cfg: Any) -> str:
    return str(getattr(cfg, "FILE_STORAGE_MODE", "") or "local").strip().lower()


def gas_upload_file(*, cfg: Any, file_base64: str, file_name: str, mime_type: str, extra: Optional[dict] = None) -> dict:
    """POST a base64 file to the Apps Script upload endpoint. Returns its JSON (`fileId`, `url`)."""
    url = str(getattr(cfg, "GAS_UPLOAD_URL", "") or "").strip()
    if not url:
        raise ApiError("INTERNAL", "GAS_UPLOAD_URL is not configured")
    payload = {
        "token": str(getattr(cfg, "GAS_UPLOAD_TOKEN", "") or ""),
        "fileName": file_name,
        "mimeType": mime_type,
        "fileBase64": file_base64,
    }
    payload.update(extra or {})
    try:
        resp = requests.post(url, json=payload, timeout=30)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        log.exception("gas upload failed name=%s", file_name)
        raise ApiError("STORE_UNAVAILABLE", f"Upload failed: {e}", http_status=503)
    if not isinstance(data, dict) or data.get("ok") is False:
        raise ApiError("INTERNAL", f"Upload rejected: {(data or {}).get('error') if isinstance(data, dict) else data}")
    return data


def upload_file(cfg: Any, file_bytes: bytes, destination_path: str, mime_type: str = "", *, uploaded_by: str = "") -> str:
    """
    Store a blob and return its URL.

    `destination_path` is a logical name like "registrations/<uid>/photo.jpg"; only its
    sanitized basename is kept. Local mode serves the file from `/files/<key>`.
    """
    size = len(file_bytes or b"")
    if size <= 0:
        raise ValidationError("Empty file")
    max_mb = int(getattr(cfg, "MAX_UPLOAD_MB", 5) or 5)
    if size > max_mb * 1024 * 1024:
        raise ValidationError(f"File exceeds {max_mb} MB")
    mime = str(mime_type or "").strip().lower() or "application/octet-stream"
    if mime not in ALLOWED_MIME_TYPES:
        raise ValidationError(f"Unsupported file type: {mime}")

    logical = str(destination_path or "").strip().strip("/")
    name = sanitize_filename(logical.rsplit("/", 1)[-1] or "upload")

    if _storage_mode(cfg) == "gas":
        up = gas_upload_file(
            cfg=cfg,
            file_base64=base64.b64encode(file_bytes).decode("ascii"),
            file_name=name,
            mime_type=mime,
            extra={"path": logical, "uploadedBy": uploaded_by},
        )
        url = str(up.get("url") or "").strip()
        if not url:
            file_id = str(up.get("fileId") or "").strip()
            if not file_id:
                raise ApiError("INTERNAL", "Upload failed (missing fileId)")
            url = f"https://drive.google.com/uc?id={file_id}"
        log.info("uploaded blob mode=gas path=%s size=%s", logical, size)
        return url

    key = f"{os.urandom(16).hex()}_{name}"
    os.makedirs(_upload_dir(cfg), exist_ok=True)
    with open(os.path.join(_upload_dir(cfg), key), "wb") as f:
        f.write(file_bytes)
    log.info("uploaded blob mode=local path=%s key=%s size=%s", logical, key, size)
    return f"/files/{key}"


def local_file_path(cfg: Any, key: str) -> Optional[str]:
    """Resolve a local blob key to a path, or None when the key is malformed or missing."""
    k = str(key or "").strip()
    if not _KEY_RE.match(k):
        return None
    path = os.path.join(_upload_dir(cfg), k)
    return path if os.path.isfile(path) else None
