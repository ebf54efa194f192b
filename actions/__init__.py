from __future__ import annotations

from typing import Any, Callable

from actions.auth_actions import get_me, login_exchange
from actions.caang_actions import caang_blacklist, caang_list, caang_stats, caang_unblacklist
from actions.logbook_actions import (
    logbook_comment_add,
    logbook_create,
    logbook_delete,
    logbook_get,
    logbook_history,
    logbook_invite,
    logbook_list,
    logbook_permanent_delete,
    logbook_restore,
    logbook_stats,
    logbook_update,
)
from actions.registration_actions import (
    registration_bulk,
    registration_get,
    registration_init,
    registration_reject,
    registration_request_revision,
    registration_submit_documents,
    registration_submit_form,
    registration_submit_payment,
    registration_verify_all,
    registration_verify_step,
)
from actions.settings_actions import settings_get, settings_upsert
from utils import ApiError, AuthContext


Handler = Callable[[Any, "AuthContext | None", Any, Any], Any]


ACTIONS: dict[str, Handler] = {
    "LOGIN_EXCHANGE": login_exchange,
    "GET_ME": get_me,
    "SETTINGS_GET": settings_get,
    "SETTINGS_UPSERT": settings_upsert,
    "REGISTRATION_INIT": registration_init,
    "REGISTRATION_GET": registration_get,
    "REGISTRATION_SUBMIT_FORM": registration_submit_form,
    "REGISTRATION_SUBMIT_DOCUMENTS": registration_submit_documents,
    "REGISTRATION_SUBMIT_PAYMENT": registration_submit_payment,
    "REGISTRATION_VERIFY_STEP": registration_verify_step,
    "REGISTRATION_VERIFY_ALL": registration_verify_all,
    "REGISTRATION_REJECT": registration_reject,
    "REGISTRATION_REQUEST_REVISION": registration_request_revision,
    "REGISTRATION_BULK": registration_bulk,
    "CAANG_LIST": caang_list,
    "CAANG_STATS": caang_stats,
    "CAANG_BLACKLIST": caang_blacklist,
    "CAANG_UNBLACKLIST": caang_unblacklist,
    "LOGBOOK_CREATE": logbook_create,
    "LOGBOOK_GET": logbook_get,
    "LOGBOOK_LIST": logbook_list,
    "LOGBOOK_UPDATE": logbook_update,
    "LOGBOOK_HISTORY": logbook_history,
    "LOGBOOK_INVITE": logbook_invite,
    "LOGBOOK_COMMENT_ADD": logbook_comment_add,
    "LOGBOOK_DELETE": logbook_delete,
    "LOGBOOK_RESTORE": logbook_restore,
    "LOGBOOK_PERMANENT_DELETE": logbook_permanent_delete,
    "LOGBOOK_STATS": logbook_stats,
}


def dispatch(action: str, data: Any, auth: AuthContext | None, db, cfg) -> Any:
    handler = ACTIONS.get(str(action or "").upper().strip())
    if handler is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action}")
    if data is not None and not isinstance(data, dict):
        raise ApiError("BAD_REQUEST", "data must be an object")
    return handler(data or {}, auth, db, cfg)
