from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from docstore import DELETE_FIELD, WriteOp
from utils import InvalidTransitionError, NotFoundError, StoreUnavailableError, ValidationError


def test_set_get_and_merge(store):
    store.set_document("users", "u1", {"email": "a@x.id", "profile": {"nim": "1", "major": "TE"}})
    store.set_document("users", "u1", {"profile": {"major": "TI"}, "isActive": True}, merge=True)

    doc = store.get_document("users", "u1")
    assert doc["id"] == "u1"
    assert doc["email"] == "a@x.id"
    assert doc["profile"] == {"nim": "1", "major": "TI"}
    assert doc["isActive"] is True

    store.set_document("users", "u1", {"email": "b@x.id"})
    assert store.get_document("users", "u1") == {"id": "u1", "email": "b@x.id"}


def test_update_dotted_paths_and_delete_field(store):
    store.set_document("registrations", "r1", {"payment": {"method": "cash", "verified": False}, "note": "x"})
    store.update_document("registrations", "r1", {"payment.verified": True, "payment.verifiedBy": "admin1", "note": DELETE_FIELD})

    doc = store.get_document("registrations", "r1")
    assert doc["payment"] == {"method": "cash", "verified": True, "verifiedBy": "admin1"}
    assert "note" not in doc


def test_update_missing_document_fails(store):
    with pytest.raises(NotFoundError):
        store.update_document("registrations", "nope", {"status": "verified"})
    assert store.get_document("registrations", "nope") is None


def test_create_document_is_insert_only(store):
    assert store.create_document("users", "u1", {"role": "CAANG"}) is True
    assert store.create_document("users", "u1", {"role": "ADMIN"}) is False
    assert store.get_document("users", "u1")["role"] == "CAANG"


def test_query_filters_order_and_limit(store):
    store.set_document("logs", "a", {"team": "krai", "day": "2025-01-03", "tags": ["x"]})
    store.set_document("logs", "b", {"team": "krai", "day": "2025-01-01", "tags": []})
    store.set_document("logs", "c", {"team": "krsti", "day": "2025-01-02", "tags": ["x"]})
    store.set_document("logs", "d", {"team": "krai"})

    ids = [d["id"] for d in store.query_documents("logs", [("team", "==", "krai")], order_by="day", descending=True)]
    assert ids == ["a", "b", "d"]

    ids = [d["id"] for d in store.query_documents("logs", [("tags", "array_contains", "x")], order_by="day")]
    assert ids == ["c", "a"]

    assert len(store.query_documents("logs", limit=2)) == 2

    with pytest.raises(ValidationError):
        store.query_documents("logs", [("team", "~", "krai")])


def test_batch_write_is_all_or_nothing(store):
    store.set_document("registrations", "r1", {"status": "payment_pending"})
    store.set_document("registrations", "r2", {"status": "draft"})

    def _must_be_pending(doc):
        if doc["status"] != "payment_pending":
            raise InvalidTransitionError("not pending")

    with pytest.raises(InvalidTransitionError):
        store.batch_write(
            [
                WriteOp("update", "registrations", "r1", {"status": "verified"}, precondition=_must_be_pending),
                WriteOp("update", "registrations", "r2", {"status": "verified"}, precondition=_must_be_pending),
            ]
        )

    assert store.get_document("registrations", "r1")["status"] == "payment_pending"
    assert store.get_document("registrations", "r2")["status"] == "draft"


def test_batch_write_size_limit(store):
    store.max_batch_ops = 2
    ops = [WriteOp("set", "c", str(i), {"n": i}) for i in range(3)]
    with pytest.raises(ValidationError):
        store.batch_write(ops)
    assert store.query_documents("c") == []


def test_commit_failure_is_reported_as_store_unavailable(store, monkeypatch):
    def _fail(session, operation):
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(store, "_commit", _fail)
    with pytest.raises(StoreUnavailableError) as exc:
        store.set_document("users", "u1", {"email": "a@x.id"})
    assert "users/u1" in exc.value.message

    monkeypatch.undo()
    assert store.get_document("users", "u1") is None


def test_subscribe_notifies_until_unsubscribed(store):
    store.set_document("research_logbooks", "l1", {"title": "a"})
    seen = []

    sub = store.subscribe("research_logbooks", "l1", seen.append)
    assert store.listener_count("research_logbooks", "l1") == 1

    store.update_document("research_logbooks", "l1", {"title": "b"})
    store.set_document("research_logbooks", "l2", {"title": "other"})
    sub.unsubscribe()
    store.update_document("research_logbooks", "l1", {"title": "c"})

    assert [d["title"] for d in seen] == ["b"]
    assert store.listener_count("research_logbooks", "l1") == 0
    assert sub.active is False


def test_subscription_context_manager_releases_on_error(store):
    store.set_document("research_logbooks", "l1", {"title": "a"})
    with pytest.raises(RuntimeError):
        with store.subscribe("research_logbooks", "l1", lambda doc: None):
            assert store.listener_count("research_logbooks", "l1") == 1
            raise RuntimeError("editor crashed")
    assert store.listener_count("research_logbooks", "l1") == 0


def test_failing_listener_does_not_break_the_write(store):
    store.set_document("research_logbooks", "l1", {"title": "a"})

    def _boom(doc):
        raise ValueError("listener bug")

    with store.subscribe("research_logbooks", "l1", _boom):
        store.update_document("research_logbooks", "l1", {"title": "b"})
    assert store.get_document("research_logbooks", "l1")["title"] == "b"


def test_update_document_with_skips_write_when_mutator_returns_none(store):
    store.set_document("users", "u1", {"n": 1})
    seen = []
    with store.subscribe("users", "u1", seen.append):
        doc = store.update_document_with("users", "u1", lambda d: None)
    assert doc["n"] == 1
    assert seen == []
