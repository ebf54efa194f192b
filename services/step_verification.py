from __future__ import annotations

import logging
from typing import Any, Optional

from docstore import DELETE_FIELD
from services.registration_ids import REGISTRATIONS_COLLECTION
from utils import InvalidTransitionError, NotFoundError, ValidationError, iso_utc_now


log = logging.getLogger("registration")

# Registration status values (persisted lowercase)
DRAFT = "draft"
FORM_SUBMITTED = "form_submitted"
FORM_VERIFIED = "form_verified"
DOCUMENTS_UPLOADED = "documents_uploaded"
DOCUMENTS_VERIFIED = "documents_verified"
PAYMENT_PENDING = "payment_pending"
VERIFIED = "verified"
REJECTED = "rejected"

ALL_STATUSES = (
    DRAFT,
    FORM_SUBMITTED,
    FORM_VERIFIED,
    DOCUMENTS_UPLOADED,
    DOCUMENTS_VERIFIED,
    PAYMENT_PENDING,
    VERIFIED,
    REJECTED,
)
TERMINAL_STATUSES = {VERIFIED, REJECTED}

STEPS = (1, 2, 3)

STEP_KEYS = {1: "step1FormData", 2: "step2Documents", 3: "step3Payment"}

# status once step N has been submitted by the candidate and awaits review
STEP_SUBMITTED_STATUS = {1: FORM_SUBMITTED, 2: DOCUMENTS_UPLOADED, 3: PAYMENT_PENDING}

# status once step N is approved
STEP_VERIFIED_STATUS = {1: FORM_VERIFIED, 2: DOCUMENTS_VERIFIED, 3: VERIFIED}

# status while step N is open for (re)submission: step N-1 verified, step N not submitted
STEP_BASE_STATUS = {1: DRAFT, 2: FORM_VERIFIED, 3: DOCUMENTS_VERIFIED}

_AWAITING_REVIEW = {v: k for k, v in STEP_SUBMITTED_STATUS.items()}


def empty_step_verifications() -> dict[str, dict[str, Any]]:
    return {key: {"verified": False} for key in STEP_KEYS.values()}


def _step(step: Any) -> int:
    try:
        n = int(step)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid step: {step!r}")
    if n not in STEPS:
        raise ValidationError(f"Invalid step: {step!r}")
    return n


def are_all_steps_verified(registration: Optional[dict[str, Any]]) -> bool:
    sv = (registration or {}).get("stepVerifications") or {}
    return all(bool((sv.get(key) or {}).get("verified")) for key in STEP_KEYS.values())


def step_awaiting_review(registration: dict[str, Any]) -> Optional[int]:
    return _AWAITING_REVIEW.get(str(registration.get("status") or ""))


def _verification_record(admin_id: str, at: str, *, verified: bool, notes: Optional[str], reason: Optional[str]) -> dict:
    rec: dict[str, Any] = {"verified": bool(verified), "verifiedBy": str(admin_id), "verifiedAt": at}
    if notes:
        rec["notes"] = str(notes)
    if reason:
        rec["rejectionReason"] = str(reason)
    return rec


def approval_patch(step: int, admin_id: str, at: str, notes: Optional[str] = None) -> dict[str, Any]:
    """Fields written when step N is approved. Status and step record always move together."""
    step = _step(step)
    patch: dict[str, Any] = {
        f"stepVerifications.{STEP_KEYS[step]}": _verification_record(admin_id, at, verified=True, notes=notes, reason=None),
        "status": STEP_VERIFIED_STATUS[step],
        "canEdit": step != 3,
        "updatedAt": at,
    }
    if step == 1:
        patch["verification"] = {"verified": True, "verifiedBy": str(admin_id), "verifiedAt": at}
    elif step == 2:
        patch.update(
            {
                "documents.verified": True,
                "documents.verifiedBy": str(admin_id),
                "documents.verifiedAt": at,
                "documents.rejectionReason": DELETE_FIELD,
            }
        )
    else:
        patch.update(
            {
                "payment.verified": True,
                "payment.verifiedBy": str(admin_id),
                "payment.verifiedAt": at,
                "payment.rejectionReason": DELETE_FIELD,
                "verification": {"verified": True, "verifiedBy": str(admin_id), "verifiedAt": at},
            }
        )
    return patch


def rejection_patch(step: int, admin_id: str, at: str, reason: Optional[str], notes: Optional[str] = None) -> dict[str, Any]:
    """
    Roll back to the state where step N is open again.

    Submitted artifacts (document and proof URLs) are kept; `rejectionReason` tells the
    candidate what to fix and the next submission overwrites them.
    """
    step = _step(step)
    reason = str(reason or "").strip() or None
    patch: dict[str, Any] = {
        f"stepVerifications.{STEP_KEYS[step]}": _verification_record(admin_id, at, verified=False, notes=notes, reason=reason),
        "status": STEP_BASE_STATUS[step],
        "canEdit": True,
        "updatedAt": at,
    }
    mirror: dict[str, Any] = {"verified": False, "verifiedBy": str(admin_id), "verifiedAt": at}
    if reason:
        mirror["rejectionReason"] = reason
    if step == 1:
        patch["verification"] = mirror
    elif step == 2:
        patch.update({f"documents.{k}": v for k, v in mirror.items()})
    else:
        patch.update({f"payment.{k}": v for k, v in mirror.items()})
    return patch


def check_approvable(registration: dict[str, Any], step: int) -> None:
    status = str(registration.get("status") or "")
    expected = STEP_SUBMITTED_STATUS[step]
    if status != expected:
        raise InvalidTransitionError(
            f"Cannot approve step {step} of {registration.get('id')}: status is {status}, expected {expected}"
        )


def check_rejectable(registration: dict[str, Any], step: int) -> None:
    status = str(registration.get("status") or "")
    allowed = {STEP_SUBMITTED_STATUS[step], STEP_VERIFIED_STATUS[step]} - TERMINAL_STATUSES
    if status not in allowed:
        raise InvalidTransitionError(
            f"Cannot reject step {step} of {registration.get('id')}: status is {status}"
        )


def verify_step(
    store,
    registration_id: str,
    step: int,
    admin_id: str,
    approve: bool,
    notes: Optional[str] = None,
    rejection_reason: Optional[str] = None,
) -> dict[str, Any]:
    """
    Approve or reject one registration step as a single-document atomic update.

    Approving step N moves `status` from SUBMITTED(N) to VERIFIED(N); approving step 3 also
    locks the record (`canEdit=false`). Rejecting step N returns `status` to the state in
    which step N can be resubmitted and re-opens editing.
    """
    step = _step(step)
    admin_id = str(admin_id or "").strip()
    if not admin_id:
        raise ValidationError("Missing admin id")
    at = iso_utc_now()

    def _mutate(reg: dict[str, Any]) -> dict[str, Any]:
        if approve:
            check_approvable(reg, step)
            return approval_patch(step, admin_id, at, notes)
        check_rejectable(reg, step)
        return rejection_patch(step, admin_id, at, rejection_reason, notes)

    updated = store.update_document_with(REGISTRATIONS_COLLECTION, str(registration_id or ""), _mutate)
    log.info(
        "verify_step id=%s step=%s approve=%s by=%s status=%s",
        registration_id,
        step,
        bool(approve),
        admin_id,
        updated.get("status"),
    )
    return updated


def verify_registration(store, registration_id: str, admin_id: str, notes: Optional[str] = None) -> dict[str, Any]:
    """Mark all three steps verified at once and lock the record."""
    admin_id = str(admin_id or "").strip()
    if not admin_id:
        raise ValidationError("Missing admin id")
    at = iso_utc_now()

    def _mutate(reg: dict[str, Any]) -> dict[str, Any]:
        status = str(reg.get("status") or "")
        if status in TERMINAL_STATUSES or status == DRAFT:
            raise InvalidTransitionError(f"Cannot verify {reg.get('id')} from status {status}")
        return verify_all_patch(admin_id, at, notes)

    updated = store.update_document_with(REGISTRATIONS_COLLECTION, str(registration_id or ""), _mutate)
    log.info("verify_registration id=%s by=%s", registration_id, admin_id)
    return updated


def verify_all_patch(admin_id: str, at: str, notes: Optional[str] = None) -> dict[str, Any]:
    patch: dict[str, Any] = {}
    for step in STEPS:
        patch.update(approval_patch(step, admin_id, at, notes))
    patch["status"] = VERIFIED
    patch["canEdit"] = False
    return patch


def reject_registration(store, registration_id: str, admin_id: str, reason: str) -> dict[str, Any]:
    """Deny the whole application. Terminal: the candidate can no longer edit."""
    admin_id = str(admin_id or "").strip()
    reason = str(reason or "").strip()
    if not admin_id:
        raise ValidationError("Missing admin id")
    if not reason:
        raise ValidationError("Rejection reason is required")
    at = iso_utc_now()

    def _mutate(reg: dict[str, Any]) -> dict[str, Any]:
        if str(reg.get("status") or "") == REJECTED:
            raise InvalidTransitionError(f"Registration {reg.get('id')} is already rejected")
        return {
            "status": REJECTED,
            "canEdit": False,
            "verification": {"verified": False, "verifiedBy": admin_id, "verifiedAt": at, "rejectionReason": reason},
            "updatedAt": at,
        }

    updated = store.update_document_with(REGISTRATIONS_COLLECTION, str(registration_id or ""), _mutate)
    log.info("reject_registration id=%s by=%s", registration_id, admin_id)
    return updated


def request_revision(store, registration_id: str, admin_id: str, reason: str, notes: Optional[str] = None) -> dict[str, Any]:
    """Send the step currently awaiting review back to the candidate."""
    reason = str(reason or "").strip()
    if not reason:
        raise ValidationError("Revision reason is required")
    reg = store.get_document(REGISTRATIONS_COLLECTION, str(registration_id or ""))
    if reg is None:
        raise NotFoundError(f"Registration not found: {registration_id}")
    step = step_awaiting_review(reg)
    if step is None:
        raise InvalidTransitionError(f"Registration {registration_id} has no step awaiting review (status {reg.get('status')})")
    return verify_step(store, registration_id, step, admin_id, False, notes=notes, rejection_reason=reason)
