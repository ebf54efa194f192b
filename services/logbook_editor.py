from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from services.conflict_detector import DEFAULT_EPSILON_SECONDS, ConflictDetector
from services.logbook_service import LOGBOOK_UPDATABLE_FIELDS, LOGBOOKS_COLLECTION, get_logbook, update_logbook
from utils import NotFoundError


log = logging.getLogger("logbook")


class LogbookEditSession:
    """
    One user's open editor on a logbook entry.

    Opening subscribes to the entry and feeds every change into a ConflictDetector; closing
    always unsubscribes. Use as a context manager so the subscription is released on every
    exit path.
    """

    def __init__(
        self,
        store,
        logbook_id: str,
        *,
        actor_id: str,
        actor_name: str = "",
        is_reviewer: bool = False,
        epsilon_seconds: float = DEFAULT_EPSILON_SECONDS,
    ):
        self.store = store
        self.logbook_id = str(logbook_id or "").strip()
        self.actor_id = actor_id
        self.actor_name = actor_name
        self.is_reviewer = is_reviewer
        self.epsilon_seconds = epsilon_seconds
        self.detector: Optional[ConflictDetector] = None
        self.loaded: Optional[dict[str, Any]] = None
        self._subscription = None

    @property
    def is_open(self) -> bool:
        return self._subscription is not None and self._subscription.active

    @property
    def has_conflict(self) -> bool:
        return bool(self.detector and self.detector.has_conflict)

    def open(self) -> "LogbookEditSession":
        # reopening drops the previous listener
        self.close()
        doc = get_logbook(self.store, self.logbook_id)
        if doc is None:
            raise NotFoundError(f"Logbook not found: {self.logbook_id}")
        self.loaded = doc
        self.detector = ConflictDetector(
            doc.get("updatedAt"), updatable_fields=LOGBOOK_UPDATABLE_FIELDS, epsilon_seconds=self.epsilon_seconds
        )
        self._subscription = self.store.subscribe(LOGBOOKS_COLLECTION, self.logbook_id, self.detector.observe)
        return self

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def __enter__(self) -> "LogbookEditSession":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def resolve_conflict(self) -> None:
        if self.detector is not None:
            self.detector.resolve_conflict()

    def save(self, current_values: Mapping[str, Any], dirty_fields: Mapping[str, bool]) -> dict[str, Any]:
        """
        Submit the dirty fields. While a conflict is flagged nothing is written and the
        result carries `conflict: True`; call `resolve_conflict()` to overwrite deliberately.
        """
        if self.detector is None or not self.is_open:
            raise RuntimeError("Edit session is not open")
        if self.detector.has_conflict:
            return {"ok": False, "conflict": True, "changed": False, "serverData": self.detector.server_doc}

        payload = self.detector.compute_update_payload(current_values, dirty_fields)
        if not payload:
            return {"ok": True, "conflict": False, "changed": False, "logbook": self.loaded, "changes": []}

        with self.detector.submitting():
            result = update_logbook(
                self.store,
                self.logbook_id,
                payload,
                actor_id=self.actor_id,
                actor_name=self.actor_name,
                is_reviewer=self.is_reviewer,
                base_updated_at=self.detector.baseline,
                epsilon_seconds=self.epsilon_seconds,
            )
        if result.get("conflict"):
            self.detector.observe(result.get("serverData"))
            return result
        self.loaded = result["logbook"]
        self.detector.rebaseline(self.loaded.get("updatedAt"))
        log.info("logbook editor saved id=%s fields=%s", self.logbook_id, ",".join(sorted(payload)))
        return result
