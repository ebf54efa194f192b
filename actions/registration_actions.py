from __future__ import annotations

from typing import Any

from actions.helpers import actor_id, append_audit, require_str
from auth import revoke_user_sessions
from docstore import get_store
from services.bulk_ops import BLACKLIST, BulkOperation, execute_bulk
from services.registration_service import (
    can_edit_step,
    current_step,
    get_registration,
    initialize_registration,
    submit_step1_form_data,
    submit_step2_documents,
    submit_step3_payment,
)
from services.settings_service import require_open_registration
from services.step_verification import (
    STEPS,
    are_all_steps_verified,
    reject_registration,
    request_revision,
    verify_registration,
    verify_step,
)
from utils import ApiError, AuthContext, NotFoundError, normalize_role


def _registration_view(reg: dict[str, Any]) -> dict[str, Any]:
    return {
        "registration": reg,
        "currentStep": current_step(reg),
        "canEditStep": {str(n): can_edit_step(reg, n) for n in STEPS},
        "allStepsVerified": are_all_steps_verified(reg),
    }


def _audit_transition(db, auth, reg: dict[str, Any], action: str, *, remark: str = "", meta=None) -> None:
    append_audit(
        db,
        entityType="REGISTRATION",
        entityId=str(reg.get("id") or ""),
        action=action,
        toState=str(reg.get("status") or ""),
        stageTag="REGISTRATION",
        remark=remark,
        actor=auth,
        meta=meta,
    )


def registration_init(data, auth: AuthContext | None, db, cfg):
    store = get_store()
    settings = require_open_registration(store)
    reg = initialize_registration(
        store,
        auth.userId,
        settings["activePeriod"],
        settings["activeYear"],
        prefix=cfg.REGISTRATION_ID_PREFIX,
    )
    _audit_transition(db, auth, reg, "REGISTRATION_INIT", meta={"registrationId": reg.get("registrationId")})
    return _registration_view(reg)


def registration_get(data, auth: AuthContext | None, db, cfg):
    candidate_id = auth.userId
    if normalize_role(auth.role) == "ADMIN":
        candidate_id = require_str(data, "candidateId")
    reg = get_registration(get_store(), candidate_id)
    if reg is None:
        if normalize_role(auth.role) == "ADMIN":
            raise NotFoundError(f"Registration not found: {candidate_id}")
        return {"registration": None, "currentStep": None, "canEditStep": {}, "allStepsVerified": False}
    return _registration_view(reg)


def registration_submit_form(data, auth: AuthContext | None, db, cfg):
    store = get_store()
    settings = require_open_registration(store)
    reg = submit_step1_form_data(
        store,
        auth.userId,
        (data or {}).get("personalData") or {},
        or_period=settings["activePeriod"],
        or_year=settings["activeYear"],
        prefix=cfg.REGISTRATION_ID_PREFIX,
    )
    _audit_transition(db, auth, reg, "REGISTRATION_SUBMIT_FORM")
    return _registration_view(reg)


def registration_submit_documents(data, auth: AuthContext | None, db, cfg):
    reg = submit_step2_documents(get_store(), auth.userId, (data or {}).get("documents") or {})
    _audit_transition(db, auth, reg, "REGISTRATION_SUBMIT_DOCUMENTS")
    return _registration_view(reg)


def registration_submit_payment(data, auth: AuthContext | None, db, cfg):
    reg = submit_step3_payment(get_store(), auth.userId, (data or {}).get("payment") or {})
    _audit_transition(db, auth, reg, "REGISTRATION_SUBMIT_PAYMENT", meta={"method": (reg.get("payment") or {}).get("method")})
    return _registration_view(reg)


def registration_verify_step(data, auth: AuthContext | None, db, cfg):
    data = data or {}
    approve = data.get("approve")
    if not isinstance(approve, bool):
        raise ApiError("BAD_REQUEST", "approve must be true or false")
    reg = verify_step(
        get_store(),
        require_str(data, "registrationId"),
        data.get("step"),
        actor_id(auth),
        approve,
        notes=data.get("notes"),
        rejection_reason=data.get("rejectionReason"),
    )
    _audit_transition(
        db,
        auth,
        reg,
        "REGISTRATION_VERIFY_STEP",
        remark=str(data.get("rejectionReason") or data.get("notes") or ""),
        meta={"step": data.get("step"), "approve": approve},
    )
    return _registration_view(reg)


def registration_verify_all(data, auth: AuthContext | None, db, cfg):
    reg = verify_registration(get_store(), require_str(data, "registrationId"), actor_id(auth), notes=(data or {}).get("notes"))
    _audit_transition(db, auth, reg, "REGISTRATION_VERIFY_ALL")
    return _registration_view(reg)


def registration_reject(data, auth: AuthContext | None, db, cfg):
    reason = require_str(data, "reason")
    reg = reject_registration(get_store(), require_str(data, "registrationId"), actor_id(auth), reason)
    _audit_transition(db, auth, reg, "REGISTRATION_REJECT", remark=reason)
    return _registration_view(reg)


def registration_request_revision(data, auth: AuthContext | None, db, cfg):
    reason = require_str(data, "reason")
    reg = request_revision(
        get_store(), require_str(data, "registrationId"), actor_id(auth), reason, notes=(data or {}).get("notes")
    )
    _audit_transition(db, auth, reg, "REGISTRATION_REQUEST_REVISION", remark=reason)
    return _registration_view(reg)


def registration_bulk(data, auth: AuthContext | None, db, cfg):
    data = data or {}
    ids = data.get("ids")
    if not isinstance(ids, list):
        raise ApiError("BAD_REQUEST", "ids must be a list")
    op = BulkOperation(
        action=require_str(data, "action"),
        target_ids=ids,
        actor_id=actor_id(auth),
        reason=str(data.get("reason") or ""),
        period=str(data.get("period") or ""),
    )
    result = execute_bulk(get_store(), op, chunk_size=cfg.BULK_CHUNK_SIZE)

    revoked = 0
    if result.action == BLACKLIST:
        for uid in result.succeeded_ids:
            revoked += revoke_user_sessions(db, user_id=uid, revoked_by=actor_id(auth))

    append_audit(
        db,
        entityType="REGISTRATION",
        entityId="BULK",
        action="REGISTRATION_BULK",
        stageTag="REGISTRATION_BULK",
        remark=result.action,
        actor=auth,
        meta={"ids": result.succeeded_ids, "chunks": result.chunks, "revokedSessions": revoked},
    )
    out = result.to_dict()
    out["revokedSessions"] = revoked
    return out
