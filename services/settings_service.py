from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

from cache_layer import cache_get, cache_invalidate_prefix, cache_set
from utils import ApiError, ValidationError, iso_utc_now, parse_datetime_maybe, to_iso_utc


log = logging.getLogger("settings")

SETTINGS_COLLECTION = "configs"
SETTINGS_DOC_ID = "recruitment_settings"

_CACHE_PREFIX = "SETTINGS:"
_CACHE_KEY = f"{_CACHE_PREFIX}RECRUITMENT"

_WHATSAPP_RE = re.compile(r"^[0-9+]+$")

EXTERNAL_LINK_KEYS = (
    "groupChatUrl",
    "guidebookUrl",
    "faqUrl",
    "instagramRobotikUrl",
    "instagramMrcUrl",
    "youtubeRobotikUrl",
)


def get_recruitment_settings(store) -> Optional[dict[str, Any]]:
    cached = cache_get(_CACHE_KEY)
    if cached is False:
        return None
    if isinstance(cached, dict):
        return dict(cached)

    doc = store.get_document(SETTINGS_COLLECTION, SETTINGS_DOC_ID)
    if doc is None:
        cache_set(_CACHE_KEY, False)
        return None

    # older documents stored a single contact person object
    contact = doc.get("contactPerson")
    if isinstance(contact, dict):
        doc["contactPerson"] = [contact]

    cache_set(_CACHE_KEY, doc)
    return dict(doc)


def invalidate_settings_cache() -> None:
    cache_invalidate_prefix(_CACHE_PREFIX)


def _req(value: Any, label: str) -> str:
    s = str(value or "").strip()
    if not s:
        raise ValidationError(f"{label} is required")
    return s


def _as_list(value: Any, label: str) -> list[dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(x, dict) for x in value):
        raise ValidationError(f"{label} must be a list of objects")
    return value


def _is_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def normalize_settings(data: dict[str, Any]) -> dict[str, Any]:
    data = data or {}

    try:
        fee = float(data.get("registrationFee") or 0)
    except (TypeError, ValueError):
        raise ValidationError("registrationFee must be a number")
    if fee < 0:
        raise ValidationError("registrationFee must be >= 0")

    schedule = data.get("schedule") or {}
    open_dt = parse_datetime_maybe(schedule.get("openDate"))
    close_dt = parse_datetime_maybe(schedule.get("closeDate"))
    if not open_dt or not close_dt:
        raise ValidationError("schedule.openDate and schedule.closeDate must be ISO datetimes")
    if close_dt < open_dt:
        raise ValidationError("schedule.closeDate must not be before schedule.openDate")

    contacts = data.get("contactPerson")
    if isinstance(contacts, dict):
        contacts = [contacts]
    contact_out = []
    for cp in _as_list(contacts, "contactPerson"):
        whatsapp = str(cp.get("whatsapp") or "").strip()
        if len(whatsapp) < 10 or not _WHATSAPP_RE.match(whatsapp):
            raise ValidationError("contactPerson.whatsapp must be at least 10 digits or '+'")
        contact_out.append({"name": _req(cp.get("name"), "contactPerson.name"), "whatsapp": whatsapp})

    banks = [
        {
            "bankName": _req(b.get("bankName"), "bankAccounts.bankName"),
            "accountNumber": _req(b.get("accountNumber"), "bankAccounts.accountNumber"),
            "accountHolder": _req(b.get("accountHolder"), "bankAccounts.accountHolder"),
        }
        for b in _as_list(data.get("bankAccounts"), "bankAccounts")
    ]
    wallets = [
        {
            "provider": _req(w.get("provider"), "eWallets.provider"),
            "number": _req(w.get("number"), "eWallets.number"),
            "accountHolder": _req(w.get("accountHolder"), "eWallets.accountHolder"),
        }
        for w in _as_list(data.get("eWallets"), "eWallets")
    ]

    links_in = data.get("externalLinks") or {}
    links = {}
    for key in EXTERNAL_LINK_KEYS:
        v = str(links_in.get(key) or "").strip()
        if v and not _is_url(v):
            raise ValidationError(f"externalLinks.{key} must be a URL")
        links[key] = v

    return {
        "activePeriod": _req(data.get("activePeriod"), "activePeriod"),
        "activeYear": _req(data.get("activeYear"), "activeYear"),
        "registrationFee": int(fee) if fee.is_integer() else fee,
        "schedule": {"openDate": to_iso_utc(open_dt), "closeDate": to_iso_utc(close_dt)},
        "contactPerson": contact_out,
        "bankAccounts": banks,
        "eWallets": wallets,
        "externalLinks": links,
        "isRegistrationOpen": bool(data.get("isRegistrationOpen", False)),
        "announcementMessage": str(data.get("announcementMessage") or ""),
    }


def update_recruitment_settings(store, data: dict[str, Any], *, actor_id: str) -> dict[str, Any]:
    body = normalize_settings(data)
    body["updatedAt"] = iso_utc_now()
    body["updatedBy"] = str(actor_id or "")
    saved = store.set_document(SETTINGS_COLLECTION, SETTINGS_DOC_ID, body, merge=True)
    invalidate_settings_cache()
    log.info("recruitment settings updated by=%s period=%s", actor_id, body["activePeriod"])
    return saved


def is_registration_open(settings: Optional[dict[str, Any]], *, now: Optional[datetime] = None) -> bool:
    if not settings or not settings.get("isRegistrationOpen"):
        return False
    schedule = settings.get("schedule") or {}
    open_dt = parse_datetime_maybe(schedule.get("openDate"))
    close_dt = parse_datetime_maybe(schedule.get("closeDate"))
    if not open_dt or not close_dt:
        return False
    now = now or datetime.now(timezone.utc)
    return open_dt <= now <= close_dt


def require_open_registration(store) -> dict[str, Any]:
    settings = get_recruitment_settings(store)
    if not settings:
        raise ApiError("FORBIDDEN", "Recruitment settings are not configured", http_status=403)
    if not is_registration_open(settings):
        raise ApiError("FORBIDDEN", "Registration is closed", http_status=403)
    return settings
