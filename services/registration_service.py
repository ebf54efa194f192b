from __future__ import annotations

import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Optional

from docstore import DELETE_FIELD, WriteOp
from services.registration_ids import (
    REGISTRATIONS_COLLECTION,
    next_registration_id,
    normalize_period,
    normalize_year,
)
from services.step_verification import (
    DOCUMENTS_UPLOADED,
    DOCUMENTS_VERIFIED,
    DRAFT,
    FORM_SUBMITTED,
    FORM_VERIFIED,
    PAYMENT_PENDING,
    STEP_BASE_STATUS,
    STEP_KEYS,
    STEP_SUBMITTED_STATUS,
    empty_step_verifications,
)
from utils import InvalidTransitionError, NotFoundError, ValidationError, iso_utc_now


log = logging.getLogger("registration")

USERS_COLLECTION = "users"

PAYMENT_METHODS = ("transfer", "e_wallet", "cash")
GENDERS = ("male", "female")

REQUIRED_DOCUMENT_KEYS = ("photoUrl", "igRobotikFollowUrl", "igMrcFollowUrl", "youtubeSubscribeUrl")
DOCUMENT_KEYS = REQUIRED_DOCUMENT_KEYS + ("ktmUrl",)

_STEP_OF_STATUS = {
    DRAFT: 1,
    FORM_SUBMITTED: 1,
    FORM_VERIFIED: 2,
    DOCUMENTS_UPLOADED: 2,
    DOCUMENTS_VERIFIED: 3,
    PAYMENT_PENDING: 3,
}

_PHONE_RE = re.compile(r"^\+?[0-9]{9,15}$")


def get_registration(store, candidate_id: str) -> Optional[dict[str, Any]]:
    cid = str(candidate_id or "").strip()
    if not cid:
        return None
    return store.get_document(REGISTRATIONS_COLLECTION, cid)


def _require_registration(store, candidate_id: str) -> dict[str, Any]:
    reg = get_registration(store, candidate_id)
    if reg is None:
        raise NotFoundError(f"Registration not found: {candidate_id}")
    return reg


def new_registration(or_period: str, or_year: str, registration_id: str) -> dict[str, Any]:
    now = iso_utc_now()
    return {
        "orPeriod": or_period,
        "orYear": or_year,
        "registrationId": registration_id,
        "status": DRAFT,
        "stepVerifications": empty_step_verifications(),
        "documents": {"allUploaded": False},
        "payment": {"method": "transfer", "verified": False},
        "motivation": "",
        "experience": "",
        "achievement": "",
        "canEdit": True,
        "createdAt": now,
        "updatedAt": now,
    }


def initialize_registration(store, candidate_id: str, or_period: str, or_year: str, *, prefix: str = "CAANG") -> dict[str, Any]:
    """Create the candidate's DRAFT registration. A no-op when one already exists."""
    cid = str(candidate_id or "").strip()
    if not cid:
        raise ValidationError("Missing candidate id")

    existing = get_registration(store, cid)
    if existing is not None:
        return existing

    period = normalize_period(or_period)
    year = normalize_year(or_year)
    reg_id = next_registration_id(store, or_period=period, or_year=year, prefix=prefix)
    created = store.create_document(REGISTRATIONS_COLLECTION, cid, new_registration(period, year, reg_id))
    if created:
        log.info("registration initialized candidate=%s registrationId=%s", cid, reg_id)
    else:
        # lost a concurrent initialize; the sequence allocated here stays unused
        log.info("registration already initialized candidate=%s unused=%s", cid, reg_id)
    return _require_registration(store, cid)


def current_step(registration: Optional[dict[str, Any]]) -> Optional[int]:
    """Step the candidate is working on, or None once the record is final."""
    if not registration:
        return None
    return _STEP_OF_STATUS.get(str(registration.get("status") or ""))


def can_edit_step(registration: Optional[dict[str, Any]], step: int) -> bool:
    if not registration or not registration.get("canEdit"):
        return False
    if step not in STEP_KEYS:
        return False
    sv = (registration.get("stepVerifications") or {}).get(STEP_KEYS[step]) or {}
    if sv.get("verified"):
        return False
    return str(registration.get("status") or "") in {STEP_BASE_STATUS[step], STEP_SUBMITTED_STATUS[step]}


def _editable_check(step: int):
    def _check(reg: Optional[dict[str, Any]]) -> None:
        if reg is None:
            raise NotFoundError("Registration not found")
        if not can_edit_step(reg, step):
            raise InvalidTransitionError(
                f"Step {step} cannot be edited (status {reg.get('status')}, canEdit {bool(reg.get('canEdit'))})"
            )

    return _check


def _text(data: dict[str, Any], key: str, *, required: bool = False, max_len: int = 2000) -> str:
    value = data.get(key)
    if value is not None and not isinstance(value, (str, int, float)):
        raise ValidationError(f"{key} must be a string")
    s = str(value if value is not None else "").strip()
    if required and not s:
        raise ValidationError(f"{key} is required")
    if len(s) > max_len:
        raise ValidationError(f"{key} is too long")
    return s


def normalize_personal_data(data: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split step-1 input into (profile fields, registration fields)."""
    data = data or {}
    gender = _text(data, "gender", required=True).lower()
    if gender not in GENDERS:
        raise ValidationError("gender must be male or female")

    phone = re.sub(r"[\s-]", "", _text(data, "phone", required=True))
    if not _PHONE_RE.match(phone):
        raise ValidationError("phone must be 9-15 digits")

    birth_date = _text(data, "birthDate")
    if birth_date:
        try:
            birth_date = date.fromisoformat(birth_date[:10]).isoformat()
        except ValueError:
            raise ValidationError("birthDate must be YYYY-MM-DD")

    entry_year_raw = _text(data, "entryYear")
    try:
        entry_year = int(entry_year_raw) if entry_year_raw else datetime.now(timezone.utc).year
    except ValueError:
        raise ValidationError("entryYear must be a year")

    profile = {
        "fullName": _text(data, "fullName", required=True, max_len=200),
        "nickname": _text(data, "nickname", max_len=100),
        "nim": _text(data, "nim", required=True, max_len=50),
        "phone": phone,
        "gender": gender,
        "birthPlace": _text(data, "birthPlace", max_len=200),
        "birthDate": birth_date,
        "address": _text(data, "address"),
        "major": _text(data, "major", max_len=200),
        "department": _text(data, "department", max_len=200),
        "entryYear": entry_year,
    }
    registration_fields = {
        "motivation": _text(data, "motivation", required=True, max_len=5000),
        "experience": _text(data, "experience", max_len=5000),
        "achievement": _text(data, "achievement", max_len=5000),
    }
    return profile, registration_fields


def submit_step1_form_data(
    store,
    candidate_id: str,
    personal_data: dict[str, Any],
    *,
    or_period: Optional[str] = None,
    or_year: Optional[str] = None,
    prefix: str = "CAANG",
) -> dict[str, Any]:
    """
    Save personal data and move the registration to FORM_SUBMITTED.

    Upserts: a missing registration is initialized first when the period is known,
    otherwise NotFoundError. Profile and registration are written in one batch.
    """
    cid = str(candidate_id or "").strip()
    profile, reg_fields = normalize_personal_data(personal_data)

    reg = get_registration(store, cid)
    if reg is None:
        if not or_period or not or_year:
            raise NotFoundError(f"Registration not found: {cid}")
        reg = initialize_registration(store, cid, or_period, or_year, prefix=prefix)

    now = iso_utc_now()
    patch: dict[str, Any] = dict(reg_fields)
    patch.update({"status": FORM_SUBMITTED, "updatedAt": now})
    if str(reg.get("status") or "") != FORM_SUBMITTED or not reg.get("submittedAt"):
        patch["submittedAt"] = now

    store.batch_write(
        [
            WriteOp("update", REGISTRATIONS_COLLECTION, cid, patch, precondition=_editable_check(1)),
            WriteOp("set", USERS_COLLECTION, cid, {"profile": profile, "updatedAt": now}, merge=True),
        ]
    )
    log.info("step1 submitted candidate=%s", cid)
    return _require_registration(store, cid)


def documents_all_uploaded(documents: Optional[dict[str, Any]]) -> bool:
    docs = documents or {}
    return all(isinstance(docs.get(k), str) and docs.get(k).strip() for k in REQUIRED_DOCUMENT_KEYS)


def submit_step2_documents(store, candidate_id: str, document_urls: dict[str, Any]) -> dict[str, Any]:
    """
    Save document URLs. Partial saves are kept; the status only advances to
    DOCUMENTS_UPLOADED once every required document is present.
    """
    cid = str(candidate_id or "").strip()
    incoming: dict[str, str] = {}
    for key in DOCUMENT_KEYS:
        if key not in (document_urls or {}):
            continue
        value = document_urls.get(key)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{key} must be a string URL")
        incoming[key] = str(value or "").strip()
    unknown = set(document_urls or {}) - set(DOCUMENT_KEYS)
    if unknown:
        raise ValidationError(f"Unknown document fields: {', '.join(sorted(unknown))}")

    check = _editable_check(2)
    now = iso_utc_now()

    def _mutate(reg: dict[str, Any]) -> dict[str, Any]:
        check(reg)
        merged = dict(reg.get("documents") or {})
        merged.update(incoming)
        all_uploaded = documents_all_uploaded(merged)
        patch: dict[str, Any] = {f"documents.{k}": v for k, v in incoming.items()}
        patch.update(
            {
                "documents.uploadedAt": now,
                "documents.allUploaded": all_uploaded,
                "documents.rejectionReason": DELETE_FIELD,
                "status": DOCUMENTS_UPLOADED if all_uploaded else FORM_VERIFIED,
                "updatedAt": now,
            }
        )
        return patch

    updated = store.update_document_with(REGISTRATIONS_COLLECTION, cid, _mutate)
    log.info(
        "step2 submitted candidate=%s allUploaded=%s",
        cid,
        bool((updated.get("documents") or {}).get("allUploaded")),
    )
    return updated


def normalize_payment(payment: dict[str, Any]) -> dict[str, Any]:
    payment = payment or {}
    method = str(payment.get("method") or "").strip().lower()
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"payment method must be one of {', '.join(PAYMENT_METHODS)}")
    proof_url = str(payment.get("proofUrl") or "").strip()
    if not proof_url:
        raise ValidationError("proofUrl is required")

    out = {"method": method, "proofUrl": proof_url}
    if method == "transfer":
        for key in ("bankName", "accountNumber", "accountName"):
            out[key] = str(payment.get(key) or "").strip()
    elif method == "e_wallet":
        for key in ("ewalletProvider", "ewalletNumber"):
            out[key] = str(payment.get(key) or "").strip()
        if not out["ewalletProvider"]:
            raise ValidationError("ewalletProvider is required for e_wallet payments")
    return out


def submit_step3_payment(store, candidate_id: str, payment_details: dict[str, Any]) -> dict[str, Any]:
    cid = str(candidate_id or "").strip()
    payment = normalize_payment(payment_details)
    check = _editable_check(3)
    now = iso_utc_now()

    def _mutate(reg: dict[str, Any]) -> dict[str, Any]:
        check(reg)
        patch: dict[str, Any] = {f"payment.{k}": v for k, v in payment.items()}
        patch.update(
            {
                "payment.proofUploadedAt": now,
                "payment.verified": False,
                "payment.rejectionReason": DELETE_FIELD,
                "status": PAYMENT_PENDING,
                "updatedAt": now,
            }
        )
        return patch

    updated = store.update_document_with(REGISTRATIONS_COLLECTION, cid, _mutate)
    log.info("step3 submitted candidate=%s method=%s", cid, payment["method"])
    return updated
