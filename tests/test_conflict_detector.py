from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from services.conflict_detector import ConflictDetector, is_newer_than
from services.logbook_editor import LogbookEditSession
from services.logbook_service import LOGBOOK_UPDATABLE_FIELDS, create_logbook, get_logbook_history, update_logbook
from utils import NotFoundError, ValidationError, to_iso_utc


T0 = datetime(2025, 3, 1, 10, 0, 0, tzinfo=timezone.utc)


def _detector(**kwargs):
    return ConflictDetector(to_iso_utc(T0), updatable_fields=LOGBOOK_UPDATABLE_FIELDS, **kwargs)


def _remote(seconds_after_t0: float) -> dict:
    return {"id": "lb1", "title": "remote", "updatedAt": to_iso_utc(T0 + timedelta(seconds=seconds_after_t0))}


def test_remote_update_after_epsilon_flags_conflict():
    det = _detector()
    assert det.observe(_remote(2)) is True
    assert det.has_conflict is True
    assert det.server_doc["title"] == "remote"


def test_remote_update_inside_epsilon_is_ignored():
    det = _detector()
    assert det.observe(_remote(0.1)) is False
    assert det.observe(_remote(1.0)) is False
    assert det.has_conflict is False


def test_remote_update_while_submitting_is_ignored():
    det = _detector()
    with det.submitting():
        assert det.is_submitting is True
        assert det.observe(_remote(5)) is False
    assert det.is_submitting is False
    assert det.has_conflict is False


def test_submitting_flag_clears_on_error():
    det = _detector()
    with pytest.raises(RuntimeError):
        with det.submitting():
            raise RuntimeError("network down")
    assert det.is_submitting is False


def test_epsilon_is_configurable():
    det = _detector(epsilon_seconds=5)
    assert det.observe(_remote(3)) is False
    assert det.observe(_remote(6)) is True


def test_resolve_conflict_rebaselines_to_now():
    later = T0 + timedelta(minutes=5)
    det = _detector(clock=lambda: later)
    det.observe(_remote(10))
    assert det.has_conflict is True

    det.resolve_conflict()
    assert det.has_conflict is False
    assert det.baseline == later
    assert det.observe(_remote(60)) is False


def test_rebaseline_after_own_save():
    det = _detector()
    det.rebaseline(to_iso_utc(T0 + timedelta(seconds=30)))
    assert det.observe(_remote(30.5)) is False
    assert det.observe(_remote(40)) is True


def test_deleted_document_notification_keeps_state():
    det = _detector()
    assert det.observe(None) is False
    assert det.server_doc is None


def test_update_payload_holds_only_dirty_fields():
    det = _detector()
    values = {"title": "New title", "description": "same", "durationHours": None, "nextPlan": "tune PID"}
    dirty = {"title": True, "description": False, "durationHours": True, "nextPlan": True}

    assert det.compute_update_payload(values, dirty) == {"title": "New title", "durationHours": None, "nextPlan": "tune PID"}
    # dirty but absent from the form values
    assert det.compute_update_payload({}, {"title": True}) == {}
    assert det.compute_update_payload(values, {}) == {}

    with pytest.raises(ValidationError):
        det.compute_update_payload({"authorId": "x"}, {"authorId": True})


def test_snapshot():
    snap = _detector().snapshot()
    assert snap == {"baselineTimestamp": T0.isoformat(), "hasConflict": False, "isSubmitting": False}


def test_is_newer_than_handles_missing_values():
    assert is_newer_than(None, T0) is False
    assert is_newer_than(to_iso_utc(T0), None) is False
    assert is_newer_than("not a date", T0) is False


# -- editor session over the document store ---------------------------------


def _logbook(store, **overrides):
    data = {
        "team": "krsbi_h",
        "title": "Kicker calibration",
        "category": "testing",
        "description": "Measured kick distance",
        "activityDate": "2025-03-01",
        "durationHours": 2,
        "collaboratorIds": ["bob"],
    }
    data.update(overrides)
    lb = create_logbook(store, data, author_id="alice", author_name="Alice")
    # pretend the entry was last saved a minute ago
    store.update_document(
        "research_logbooks", lb["id"], {"updatedAt": to_iso_utc(datetime.now(timezone.utc) - timedelta(seconds=60))}
    )
    return lb["id"]


def test_edit_session_saves_dirty_fields(store):
    lb_id = _logbook(store)
    with LogbookEditSession(store, lb_id, actor_id="alice", actor_name="Alice") as session:
        assert session.is_open
        result = session.save({"title": "Kicker calibration v2", "description": "x"}, {"title": True})
        assert result["ok"] is True
        assert result["changed"] is True
        assert result["changes"] == [{"field": "title", "oldValue": "Kicker calibration", "newValue": "Kicker calibration v2"}]
        assert session.has_conflict is False

        # a second save right after our own write is not a conflict
        again = session.save({"nextPlan": "test on field"}, {"nextPlan": True})
        assert again["changed"] is True
        assert session.has_conflict is False

    assert session.is_open is False
    assert store.listener_count("research_logbooks", lb_id) == 0


def test_edit_session_blocks_save_after_remote_change(store):
    lb_id = _logbook(store)
    with LogbookEditSession(store, lb_id, actor_id="alice") as session:
        update_logbook(store, lb_id, {"description": "Bob rewrote this"}, actor_id="bob", actor_name="Bob")
        assert session.has_conflict is True

        blocked = session.save({"title": "Mine"}, {"title": True})
        assert blocked["ok"] is False
        assert blocked["conflict"] is True
        assert blocked["serverData"]["description"] == "Bob rewrote this"
        assert store.get_document("research_logbooks", lb_id)["title"] == "Kicker calibration"

        session.resolve_conflict()
        assert session.has_conflict is False
        saved = session.save({"title": "Mine"}, {"title": True})
        assert saved["ok"] is True

    doc = store.get_document("research_logbooks", lb_id)
    assert doc["title"] == "Mine"
    assert doc["description"] == "Bob rewrote this"
    assert [h["action"] for h in get_logbook_history(store, lb_id)].count("update") == 2


def test_edit_session_releases_subscription_on_error(store):
    lb_id = _logbook(store)
    with pytest.raises(ValidationError):
        with LogbookEditSession(store, lb_id, actor_id="alice") as session:
            session.save({"authorId": "mallory"}, {"authorId": True})
    assert store.listener_count("research_logbooks", lb_id) == 0


def test_edit_session_requires_existing_logbook(store):
    with pytest.raises(NotFoundError):
        LogbookEditSession(store, "missing", actor_id="alice").open()


def test_save_on_closed_session_fails(store):
    lb_id = _logbook(store)
    session = LogbookEditSession(store, lb_id, actor_id="alice")
    with pytest.raises(RuntimeError):
        session.save({"title": "x"}, {"title": True})


def test_empty_save_writes_nothing(store):
    lb_id = _logbook(store)
    before = len(get_logbook_history(store, lb_id))
    with LogbookEditSession(store, lb_id, actor_id="alice") as session:
        result = session.save({"title": "whatever"}, {"title": False})
    assert result["changed"] is False
    assert len(get_logbook_history(store, lb_id)) == before


def test_edit_session_clears_optional_field(store):
    lb_id = _logbook(store)
    with LogbookEditSession(store, lb_id, actor_id="alice") as session:
        result = session.save({"durationHours": None}, {"durationHours": True})
    assert result["changed"] is True
    assert result["changes"] == [{"field": "durationHours", "oldValue": 2.0, "newValue": None}]
    assert store.get_document("research_logbooks", lb_id).get("durationHours") is None


def test_reopen_replaces_subscription(store):
    lb_id = _logbook(store)
    session = LogbookEditSession(store, lb_id, actor_id="alice")
    session.open()
    first = session.detector
    session.open()
    assert store.listener_count("research_logbooks", lb_id) == 1

    update_logbook(store, lb_id, {"description": "Bob rewrote this"}, actor_id="bob", actor_name="Bob")
    assert session.has_conflict is True
    assert first.has_conflict is False

    session.close()
    assert store.listener_count("research_logbooks", lb_id) == 0
