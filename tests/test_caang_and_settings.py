from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import open_settings_payload
from services.caang_service import (
    blacklist_caang,
    calculate_caang_stats,
    get_caang_detail,
    list_caangs,
    unblacklist_caang,
)
from services.settings_service import (
    get_recruitment_settings,
    is_registration_open,
    require_open_registration,
    update_recruitment_settings,
)
from services.step_verification import verify_step
from utils import ApiError, InvalidTransitionError, ValidationError


def _user(store, uid, email, role="CAANG", created="2025-01-01T00:00:00.000Z"):
    store.set_document(
        "users",
        uid,
        {"email": email, "fullName": uid.title(), "role": role, "isActive": True, "createdAt": created},
        merge=True,
    )


@pytest.fixture
def cohort(store, registration_factory):
    _user(store, "ani", "ani@student.id", created="2025-01-03T00:00:00.000Z")
    _user(store, "budi", "budi@student.id", created="2025-01-02T00:00:00.000Z")
    _user(store, "citra", "citra@student.id", created="2025-01-01T00:00:00.000Z")
    _user(store, "dewi", "dewi@student.id")
    _user(store, "admin1", "admin@robotik.id", role="ADMIN")

    registration_factory("ani", "payment_pending")
    verify_step(store, "ani", 3, "admin1", True)
    registration_factory("budi", "documents_uploaded")
    registration_factory("citra", "form_submitted", or_period="22")
    return store


def test_list_joins_registrations(cohort):
    items = list_caangs(cohort)
    assert [i["user"]["id"] for i in items] == ["ani", "budi", "citra", "dewi"]
    assert items[-1]["registration"] is None
    assert all(i["user"]["role"] == "CAANG" for i in items)


def test_list_filters(cohort):
    assert [i["user"]["id"] for i in list_caangs(cohort, status="documents_uploaded")] == ["budi"]
    assert [i["user"]["id"] for i in list_caangs(cohort, or_period="22")] == ["citra"]
    assert [i["user"]["id"] for i in list_caangs(cohort, search="CAANG-OR21-2025-002")] == ["budi"]
    assert [i["user"]["id"] for i in list_caangs(cohort, search="1301220001")] == ["ani", "budi", "citra"]


def test_stats(cohort):
    blacklist_caang(cohort, "budi", reason="plagiarism", actor_id="admin1")
    stats = calculate_caang_stats(list_caangs(cohort))
    assert stats == {"total": 4, "pendingVerification": 1, "verified": 1, "blacklisted": 1}


def test_blacklist_and_lift(cohort):
    user = blacklist_caang(cohort, "citra", reason="fake ktm", actor_id="admin1", period="OR22")
    assert user["isActive"] is False
    assert user["blacklistInfo"]["period"] == "OR22"
    assert [i["user"]["id"] for i in list_caangs(cohort, blacklisted=True)] == ["citra"]

    lifted = unblacklist_caang(cohort, "citra", actor_id="admin1")
    assert lifted["isActive"] is True
    assert lifted["blacklistInfo"]["isBlacklisted"] is False
    assert lifted["blacklistInfo"]["reason"] == "fake ktm"
    assert lifted["blacklistInfo"]["liftedBy"] == "admin1"

    with pytest.raises(InvalidTransitionError):
        unblacklist_caang(cohort, "citra", actor_id="admin1")


def test_detail(cohort):
    detail = get_caang_detail(cohort, "budi")
    assert detail["registration"]["status"] == "documents_uploaded"
    assert get_caang_detail(cohort, "nobody") is None


def test_settings_round_trip_and_cache(store):
    assert get_recruitment_settings(store) is None

    saved = update_recruitment_settings(store, open_settings_payload(announcementMessage="Welcome"), actor_id="admin1")
    assert saved["updatedBy"] == "admin1"

    settings = get_recruitment_settings(store)
    assert settings["activePeriod"] == "21"
    assert settings["announcementMessage"] == "Welcome"
    assert is_registration_open(settings) is True
    assert require_open_registration(store)["activeYear"] == "2025"

    update_recruitment_settings(store, open_settings_payload(isRegistrationOpen=False), actor_id="admin1")
    assert get_recruitment_settings(store)["isRegistrationOpen"] is False
    with pytest.raises(ApiError) as exc:
        require_open_registration(store)
    assert exc.value.code == "FORBIDDEN"


def test_registration_window(store):
    now = datetime.now(timezone.utc)
    closed = open_settings_payload(
        schedule={"openDate": (now + timedelta(days=1)).isoformat(), "closeDate": (now + timedelta(days=5)).isoformat()}
    )
    update_recruitment_settings(store, closed, actor_id="admin1")
    assert is_registration_open(get_recruitment_settings(store)) is False
    assert is_registration_open(get_recruitment_settings(store), now=now + timedelta(days=2)) is True


def test_settings_validation(store):
    with pytest.raises(ValidationError):
        update_recruitment_settings(store, open_settings_payload(contactPerson=[{"name": "Sari", "whatsapp": "0812"}]), actor_id="a")
    with pytest.raises(ValidationError):
        update_recruitment_settings(store, open_settings_payload(activePeriod=""), actor_id="a")
    with pytest.raises(ValidationError):
        update_recruitment_settings(store, open_settings_payload(schedule={"openDate": "soon"}), actor_id="a")
    with pytest.raises(ValidationError):
        update_recruitment_settings(store, open_settings_payload(externalLinks={"faqUrl": "ftp://x"}), actor_id="a")
    assert get_recruitment_settings(store) is None
