from __future__ import annotations

import io
import json
from datetime import datetime, timedelta, timezone

from conftest import ALL_DOCUMENTS, PAYMENT, PERSONAL_DATA, open_settings_payload
from auth import user_id_for_email
from docstore import get_store
from utils import to_iso_utc


def _api(client, payload: dict):
    return client.post("/api", data=json.dumps(payload), content_type="text/plain")


def _login(client, email: str) -> dict:
    resp = _api(client, {"action": "LOGIN_EXCHANGE", "data": {"idToken": f"TEST:{email}"}})
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()["data"]


def _seed_user(email: str, role: str) -> str:
    uid = user_id_for_email(email)
    get_store().set_document("users", uid, {"email": email, "fullName": email.split("@")[0], "role": role, "isActive": True})
    return uid


def _call(client, token: str, action: str, data=None):
    return _api(client, {"action": action, "token": token, "data": data or {}})


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def test_health(app_client):
    _app, client = app_client
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ok"] is True
    assert body["data"]["status"] == "ok"
    assert resp.headers["X-Request-ID"]


def test_unknown_action_and_bad_body(app_client):
    _app, client = app_client
    resp = client.post("/api", data="not json", content_type="text/plain")
    assert resp.status_code == 400
    assert resp.get_json()["error"]["code"] == "BAD_REQUEST"

    me = _login(client, "budi@student.id")
    resp = _call(client, me["sessionToken"], "DROP_TABLES")
    assert resp.status_code == 400


def test_login_provisions_candidate(app_client):
    _app, client = app_client
    out = _login(client, "Budi@Student.id")
    assert out["me"]["role"] == "CAANG"
    assert out["me"]["email"] == "budi@student.id"
    assert out["me"]["userId"] == user_id_for_email("budi@student.id")

    resp = _call(client, out["sessionToken"], "GET_ME")
    assert resp.status_code == 200
    assert resp.get_json()["data"]["me"]["userId"] == out["me"]["userId"]

    resp = _call(client, "ST-bogus", "GET_ME")
    assert resp.status_code == 401


def test_registration_flow_over_http(app_client):
    _app, client = app_client
    _seed_user("admin@robotik.id", "ADMIN")
    admin = _login(client, "admin@robotik.id")["sessionToken"]
    cand = _login(client, "budi@student.id")
    token = cand["sessionToken"]
    cid = cand["me"]["userId"]

    resp = _call(client, token, "REGISTRATION_INIT")
    assert resp.status_code == 403

    resp = _call(client, admin, "SETTINGS_UPSERT", open_settings_payload())
    assert resp.status_code == 200
    assert resp.get_json()["data"]["registrationOpen"] is True

    resp = _call(client, token, "REGISTRATION_INIT")
    view = resp.get_json()["data"]
    assert view["registration"]["status"] == "draft"
    assert view["registration"]["registrationId"] == "CAANG-OR21-2025-001"
    assert view["canEditStep"] == {"1": True, "2": False, "3": False}

    resp = _call(client, token, "REGISTRATION_SUBMIT_FORM", {"personalData": PERSONAL_DATA})
    assert resp.get_json()["data"]["registration"]["status"] == "form_submitted"

    resp = _call(client, token, "REGISTRATION_VERIFY_STEP", {"registrationId": cid, "step": 1, "approve": True})
    assert resp.status_code == 403
    assert resp.get_json()["error"]["code"] == "FORBIDDEN"

    resp = client.post(f"/api/registrations/{cid}/steps/1/verify", json={"approve": True}, headers=_bearer(admin))
    assert resp.status_code == 200
    assert resp.get_json()["data"]["registration"]["status"] == "form_verified"

    resp = _call(client, token, "REGISTRATION_SUBMIT_DOCUMENTS", {"documents": ALL_DOCUMENTS})
    assert resp.get_json()["data"]["registration"]["status"] == "documents_uploaded"

    # approving step 3 before payment is a state error, not a crash
    resp = _call(client, admin, "REGISTRATION_VERIFY_STEP", {"registrationId": cid, "step": 3, "approve": True})
    assert resp.status_code == 409
    assert resp.get_json()["error"]["code"] == "CONFLICT"

    resp = _call(client, admin, "REGISTRATION_VERIFY_STEP", {"registrationId": cid, "step": 2, "approve": True})
    assert resp.get_json()["data"]["registration"]["status"] == "documents_verified"

    resp = _call(client, token, "REGISTRATION_SUBMIT_PAYMENT", {"payment": PAYMENT})
    assert resp.get_json()["data"]["registration"]["status"] == "payment_pending"

    resp = client.post("/api/registrations/bulk", json={"action": "verify_payment", "ids": [cid]}, headers=_bearer(admin))
    assert resp.status_code == 200
    assert resp.get_json()["data"]["succeededIds"] == [cid]

    resp = client.get("/api/registrations/me", headers=_bearer(token))
    view = resp.get_json()["data"]
    assert view["registration"]["status"] == "verified"
    assert view["allStepsVerified"] is True
    assert view["canEditStep"] == {"1": False, "2": False, "3": False}

    resp = client.get(f"/api/registrations/{cid}", headers=_bearer(admin))
    assert resp.get_json()["data"]["registration"]["id"] == cid

    resp = _call(client, admin, "CAANG_STATS")
    assert resp.get_json()["data"] == {"total": 1, "pendingVerification": 0, "verified": 1, "blacklisted": 0}


def test_missing_registration_is_404_for_admin(app_client):
    _app, client = app_client
    _seed_user("admin@robotik.id", "ADMIN")
    admin = _login(client, "admin@robotik.id")["sessionToken"]

    resp = _call(client, admin, "REGISTRATION_VERIFY_STEP", {"registrationId": "nobody", "step": 1, "approve": True})
    assert resp.status_code == 404
    assert get_store().get_document("registrations", "nobody") is None


def test_blacklist_revokes_sessions(app_client):
    _app, client = app_client
    _seed_user("admin@robotik.id", "ADMIN")
    admin = _login(client, "admin@robotik.id")["sessionToken"]
    cand = _login(client, "cheater@student.id")

    resp = _call(client, admin, "CAANG_BLACKLIST", {"userId": cand["me"]["userId"], "reason": "joki"})
    assert resp.status_code == 200
    assert resp.get_json()["data"]["revokedSessions"] == 1

    assert _call(client, cand["sessionToken"], "GET_ME").status_code == 401
    resp = _api(client, {"action": "LOGIN_EXCHANGE", "data": {"idToken": "TEST:cheater@student.id"}})
    assert resp.status_code == 403

    resp = _call(client, admin, "CAANG_LIST", {"blacklisted": True})
    assert resp.get_json()["data"]["total"] == 1

    assert _call(client, admin, "CAANG_UNBLACKLIST", {"userId": cand["me"]["userId"]}).status_code == 200
    assert _login(client, "cheater@student.id")["me"]["isActive"] is True


def test_upload_and_download(app_client):
    _app, client = app_client
    _seed_user("admin@robotik.id", "ADMIN")
    owner = _login(client, "budi@student.id")["sessionToken"]
    other = _login(client, "sari@student.id")["sessionToken"]
    admin = _login(client, "admin@robotik.id")["sessionToken"]
    png = b"\x89PNG\r\n\x1a\n" + b"0" * 64

    resp = client.post(
        "/api/uploads",
        data={"kind": "photo", "file": (io.BytesIO(png), "my photo.png", "image/png")},
        content_type="multipart/form-data",
        headers=_bearer(owner),
    )
    assert resp.status_code == 200, resp.get_json()
    url = resp.get_json()["data"]["url"]
    assert url.startswith("/files/")
    assert url.endswith("_my_photo.png")

    resp = client.get(url, headers=_bearer(owner))
    assert resp.status_code == 200
    assert resp.data == png

    assert client.get(url, headers=_bearer(other)).status_code == 403
    assert client.get(f"{url}?token={admin}").status_code == 200
    assert client.get(url).status_code == 401

    resp = client.post(
        "/api/uploads",
        data={"kind": "photo", "file": (io.BytesIO(b"MZ..."), "tool.exe", "application/x-msdownload")},
        content_type="multipart/form-data",
        headers=_bearer(owner),
    )
    assert resp.status_code == 400


def test_logbook_conflict_over_http(app_client):
    _app, client = app_client
    _seed_user("alice@robotik.id", "MEMBER")
    bob_id = _seed_user("bob@robotik.id", "MEMBER")
    alice = _login(client, "alice@robotik.id")["sessionToken"]
    bob = _login(client, "bob@robotik.id")["sessionToken"]

    resp = _call(
        client,
        alice,
        "LOGBOOK_CREATE",
        {
            "team": "krsri",
            "title": "Leg servo tuning",
            "category": "programming",
            "description": "Tuned gait",
            "activityDate": "2025-05-01",
            "collaboratorIds": [bob_id],
        },
    )
    assert resp.status_code == 200, resp.get_json()
    lb = resp.get_json()["data"]["logbook"]

    base = to_iso_utc(datetime.now(timezone.utc) - timedelta(seconds=30))
    get_store().update_document("research_logbooks", lb["id"], {"updatedAt": base})

    resp = client.patch(f"/api/logbooks/{lb['id']}", json={"changes": {"nextPlan": "stairs"}}, headers=_bearer(bob))
    assert resp.get_json()["data"]["changed"] is True

    resp = _call(client, alice, "LOGBOOK_UPDATE", {"logbookId": lb["id"], "changes": {"title": "Mine"}, "baseUpdatedAt": base})
    out = resp.get_json()["data"]
    assert out["conflict"] is True
    assert out["serverData"]["nextPlan"] == "stairs"

    resp = _call(
        client, alice, "LOGBOOK_UPDATE", {"logbookId": lb["id"], "changes": {"title": "Mine"}, "baseUpdatedAt": base, "force": True}
    )
    assert resp.get_json()["data"]["logbook"]["title"] == "Mine"

    resp = _call(client, bob, "LOGBOOK_HISTORY", {"logbookId": lb["id"]})
    assert sorted(h["action"] for h in resp.get_json()["data"]["items"]) == ["create", "update", "update"]

    resp = client.get("/api/logbooks", query_string={"team": "krsri"}, headers=_bearer(bob))
    assert resp.get_json()["data"]["total"] == 1
