from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

import db as db_module
from cache_layer import cache_clear
from docstore import init_store
from services.registration_service import (
    initialize_registration,
    submit_step1_form_data,
    submit_step2_documents,
    submit_step3_payment,
)
from services.settings_service import update_recruitment_settings
from services.step_verification import verify_step
from utils import to_iso_utc


PERSONAL_DATA = {
    "fullName": "Budi Santoso",
    "nickname": "Budi",
    "nim": "1301220001",
    "phone": "081234567890",
    "gender": "male",
    "birthPlace": "Bandung",
    "birthDate": "2004-05-17",
    "major": "Teknik Elektro",
    "department": "FTE",
    "entryYear": "2023",
    "motivation": "Ingin membangun robot KRSBI",
}

ALL_DOCUMENTS = {
    "photoUrl": "https://files.example/photo.jpg",
    "igRobotikFollowUrl": "https://files.example/ig-robotik.png",
    "igMrcFollowUrl": "https://files.example/ig-mrc.png",
    "youtubeSubscribeUrl": "https://files.example/yt.png",
}

PAYMENT = {
    "method": "transfer",
    "proofUrl": "https://files.example/proof.jpg",
    "bankName": "BNI",
    "accountNumber": "1234567890",
    "accountName": "Budi Santoso",
}


@pytest.fixture(autouse=True)
def _fresh_cache():
    cache_clear()
    yield
    cache_clear()


@pytest.fixture
def store(tmp_path):
    engine = db_module.init_engine(f"sqlite:///{tmp_path / 'store.db'}")
    import models  # noqa: F401

    db_module.Base.metadata.create_all(bind=engine)
    yield init_store(db_module.SessionLocal)
    engine.dispose()


@pytest.fixture
def registration_factory(store):
    """Drive a candidate's registration up to the given status."""

    def _make(candidate_id: str, upto: str = "draft", *, or_period: str = "21", or_year: str = "2025"):
        reg = initialize_registration(store, candidate_id, or_period, or_year)
        if upto == "draft":
            return reg
        reg = submit_step1_form_data(store, candidate_id, dict(PERSONAL_DATA))
        if upto == "form_submitted":
            return reg
        reg = verify_step(store, candidate_id, 1, "admin1", True)
        if upto == "form_verified":
            return reg
        reg = submit_step2_documents(store, candidate_id, dict(ALL_DOCUMENTS))
        if upto == "documents_uploaded":
            return reg
        reg = verify_step(store, candidate_id, 2, "admin1", True)
        if upto == "documents_verified":
            return reg
        reg = submit_step3_payment(store, candidate_id, dict(PAYMENT))
        if upto == "payment_pending":
            return reg
        raise ValueError(f"unsupported target status: {upto}")

    return _make


def open_settings_payload(**overrides):
    now = datetime.now(timezone.utc)
    body = {
        "activePeriod": "21",
        "activeYear": "2025",
        "registrationFee": 50000,
        "schedule": {"openDate": to_iso_utc(now - timedelta(days=1)), "closeDate": to_iso_utc(now + timedelta(days=7))},
        "contactPerson": [{"name": "Sari", "whatsapp": "+6281234567890"}],
        "bankAccounts": [{"bankName": "BNI", "accountNumber": "0011223344", "accountHolder": "UKM Robotik"}],
        "eWallets": [],
        "externalLinks": {},
        "isRegistrationOpen": True,
    }
    body.update(overrides)
    return body


@pytest.fixture
def open_settings(store):
    return update_recruitment_settings(store, open_settings_payload(), actor_id="admin1")


@pytest.fixture
def app_client(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'app.db'}")
    monkeypatch.setenv("AUTH_ALLOW_TEST_TOKENS", "1")
    monkeypatch.setenv("FILE_STORAGE_MODE", "local")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("RATE_LIMIT_GLOBAL", "10000/60")
    monkeypatch.setenv("RATE_LIMIT_DEFAULT", "10000/60")
    monkeypatch.setenv("RATE_LIMIT_LOGIN", "10000/60")

    from app import create_app

    app = create_app()
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield app, client
    db_module.engine.dispose()


@pytest.fixture
def settings_payload():
    return open_settings_payload
