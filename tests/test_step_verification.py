from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from conftest import ALL_DOCUMENTS, PAYMENT
from services.registration_service import submit_step2_documents, submit_step3_payment
from services.step_verification import (
    are_all_steps_verified,
    reject_registration,
    request_revision,
    verify_registration,
    verify_step,
)
from utils import InvalidTransitionError, NotFoundError, StoreUnavailableError, ValidationError


@pytest.mark.parametrize(
    "start,step,expected",
    [
        ("form_submitted", 1, "form_verified"),
        ("documents_uploaded", 2, "documents_verified"),
        ("payment_pending", 3, "verified"),
    ],
)
def test_approval_moves_exactly_one_step(store, registration_factory, start, step, expected):
    registration_factory("u1", start)
    reg = verify_step(store, "u1", step, "admin1", True, notes="ok")

    assert reg["status"] == expected
    key = {1: "step1FormData", 2: "step2Documents", 3: "step3Payment"}[step]
    assert reg["stepVerifications"][key]["verified"] is True
    assert reg["stepVerifications"][key]["notes"] == "ok"
    assert reg["canEdit"] is (step != 3)


@pytest.mark.parametrize(
    "start,step,rolled_back_to",
    [
        ("form_submitted", 1, "draft"),
        ("form_verified", 1, "draft"),
        ("documents_uploaded", 2, "form_verified"),
        ("documents_verified", 2, "form_verified"),
        ("payment_pending", 3, "documents_verified"),
    ],
)
def test_rejection_reopens_the_step(store, registration_factory, start, step, rolled_back_to):
    registration_factory("u1", start)
    reg = verify_step(store, "u1", step, "admin1", False, rejection_reason="please redo")

    key = {1: "step1FormData", 2: "step2Documents", 3: "step3Payment"}[step]
    assert reg["status"] == rolled_back_to
    assert reg["canEdit"] is True
    assert reg["stepVerifications"][key]["verified"] is False
    assert reg["stepVerifications"][key]["rejectionReason"] == "please redo"


def test_rejected_documents_keep_urls_for_resubmission(store, registration_factory):
    registration_factory("u1", "documents_uploaded")
    reg = verify_step(store, "u1", 2, "admin1", False, rejection_reason="ig screenshot cropped")

    assert reg["documents"]["photoUrl"]
    assert reg["documents"]["verified"] is False
    assert reg["documents"]["rejectionReason"] == "ig screenshot cropped"


@pytest.mark.parametrize(
    "start,step",
    [
        ("draft", 1),
        ("form_verified", 1),
        ("form_submitted", 2),
        ("documents_uploaded", 3),
        ("documents_verified", 3),
    ],
)
def test_approval_from_wrong_status_changes_nothing(store, registration_factory, start, step):
    before = registration_factory("u1", start)
    with pytest.raises(InvalidTransitionError):
        verify_step(store, "u1", step, "admin1", True)
    assert store.get_document("registrations", "u1") == before


def test_rejecting_a_locked_record_fails(store, registration_factory):
    registration_factory("u1", "payment_pending")
    verify_step(store, "u1", 3, "admin1", True)
    with pytest.raises(InvalidTransitionError):
        verify_step(store, "u1", 3, "admin1", False, rejection_reason="late")
    assert store.get_document("registrations", "u1")["status"] == "verified"


def test_unknown_registration_is_not_created(store):
    with pytest.raises(NotFoundError):
        verify_step(store, "ghost", 1, "admin1", True)
    assert store.get_document("registrations", "ghost") is None


def test_invalid_step_and_admin(store, registration_factory):
    registration_factory("u1", "form_submitted")
    with pytest.raises(ValidationError):
        verify_step(store, "u1", 4, "admin1", True)
    with pytest.raises(ValidationError):
        verify_step(store, "u1", 1, "", True)


def test_verify_registration_marks_every_step(store, registration_factory):
    registration_factory("u1", "documents_uploaded")
    reg = verify_registration(store, "u1", "admin1")

    assert reg["status"] == "verified"
    assert reg["canEdit"] is False
    assert are_all_steps_verified(reg) is True
    assert reg["payment"]["verified"] is True


def test_verify_registration_requires_submitted_data(store, registration_factory):
    registration_factory("u1", "draft")
    with pytest.raises(InvalidTransitionError):
        verify_registration(store, "u1", "admin1")


def test_reject_registration_is_terminal(store, registration_factory):
    registration_factory("u1", "documents_uploaded")
    with pytest.raises(ValidationError):
        reject_registration(store, "u1", "admin1", "")

    reg = reject_registration(store, "u1", "admin1", "fake documents")
    assert reg["status"] == "rejected"
    assert reg["canEdit"] is False
    assert reg["verification"]["rejectionReason"] == "fake documents"

    with pytest.raises(InvalidTransitionError):
        reject_registration(store, "u1", "admin1", "again")
    with pytest.raises(InvalidTransitionError):
        verify_step(store, "u1", 2, "admin1", True)


def test_request_revision_targets_step_awaiting_review(store, registration_factory):
    registration_factory("u1", "documents_uploaded")
    reg = request_revision(store, "u1", "admin1", "photo must show face")
    assert reg["status"] == "form_verified"
    assert reg["stepVerifications"]["step2Documents"]["rejectionReason"] == "photo must show face"

    with pytest.raises(InvalidTransitionError):
        request_revision(store, "u1", "admin1", "nothing to review")
    with pytest.raises(NotFoundError):
        request_revision(store, "ghost", "admin1", "x")


def _fail_commit(session, operation):
    raise OperationalError("COMMIT", {}, Exception("database is locked"))


@pytest.mark.parametrize(
    "start,step,key",
    [
        ("form_submitted", 1, "step1FormData"),
        ("documents_uploaded", 2, "step2Documents"),
        ("payment_pending", 3, "step3Payment"),
    ],
)
def test_failed_approval_leaves_registration_unchanged(store, registration_factory, monkeypatch, start, step, key):
    before = registration_factory("u1", start)

    monkeypatch.setattr(store, "_commit", _fail_commit)
    with pytest.raises(StoreUnavailableError):
        verify_step(store, "u1", step, "admin1", True)
    monkeypatch.undo()

    after = store.get_document("registrations", "u1")
    assert after == before
    assert after["status"] == start
    assert after["stepVerifications"][key]["verified"] is False
    assert after["canEdit"] is True


def test_failed_verify_all_leaves_registration_unchanged(store, registration_factory, monkeypatch):
    before = registration_factory("u1", "payment_pending")

    monkeypatch.setattr(store, "_commit", _fail_commit)
    with pytest.raises(StoreUnavailableError):
        verify_registration(store, "u1", "admin1")
    monkeypatch.undo()

    assert store.get_document("registrations", "u1") == before


def test_resubmission_clears_old_rejection_reason(store, registration_factory):
    registration_factory("u1", "payment_pending")
    reg = verify_step(store, "u1", 3, "admin1", False, rejection_reason="proof unreadable")
    assert reg["payment"]["rejectionReason"] == "proof unreadable"

    reg = submit_step3_payment(store, "u1", dict(PAYMENT))
    assert "rejectionReason" not in reg["payment"]
    assert reg["payment"]["proofUrl"] == PAYMENT["proofUrl"]

    registration_factory("u2", "documents_uploaded")
    reg = verify_step(store, "u2", 2, "admin1", False, rejection_reason="photo must show face")
    assert reg["documents"]["rejectionReason"] == "photo must show face"
    reg = submit_step2_documents(store, "u2", dict(ALL_DOCUMENTS))
    assert reg["status"] == "documents_uploaded"
    assert "rejectionReason" not in reg["documents"]


@pytest.mark.parametrize(
    "start,step,section",
    [("documents_uploaded", 2, "documents"), ("payment_pending", 3, "payment")],
)
def test_approval_clears_stale_rejection_reason(store, registration_factory, start, step, section):
    registration_factory("u1", start)
    store.update_document("registrations", "u1", {f"{section}.rejectionReason": "left over"})

    reg = verify_step(store, "u1", step, "admin1", True)
    assert reg[section]["verified"] is True
    assert "rejectionReason" not in reg[section]
