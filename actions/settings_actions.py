from __future__ import annotations

from actions.helpers import actor_id, append_audit
from docstore import get_store
from services.settings_service import (
    SETTINGS_DOC_ID,
    get_recruitment_settings,
    is_registration_open,
    update_recruitment_settings,
)
from utils import AuthContext


def settings_get(data, auth: AuthContext | None, db, cfg):
    settings = get_recruitment_settings(get_store())
    return {"settings": settings, "registrationOpen": is_registration_open(settings)}


def settings_upsert(data, auth: AuthContext | None, db, cfg):
    saved = update_recruitment_settings(get_store(), data or {}, actor_id=actor_id(auth))
    append_audit(
        db,
        entityType="SETTINGS",
        entityId=SETTINGS_DOC_ID,
        action="SETTINGS_UPSERT",
        stageTag="SETTINGS",
        actor=auth,
        meta={"activePeriod": saved.get("activePeriod"), "activeYear": saved.get("activeYear")},
    )
    return {"settings": saved, "registrationOpen": is_registration_open(saved)}
