from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional

from utils import ValidationError, parse_datetime_maybe


log = logging.getLogger("logbook")

DEFAULT_EPSILON_SECONDS = 1.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_newer_than(updated_at: Any, baseline: Any, epsilon_seconds: float = DEFAULT_EPSILON_SECONDS) -> bool:
    """True when `updated_at` is later than `baseline` by more than the epsilon."""
    upd = parse_datetime_maybe(updated_at)
    base = parse_datetime_maybe(baseline)
    if upd is None or base is None:
        return False
    return upd > base + timedelta(seconds=float(epsilon_seconds))


class ConflictDetector:
    """
    Advisory optimistic-concurrency tracker for one open editor.

    The baseline is the record's `updatedAt` when the editor loaded it. A remote update
    newer than baseline + epsilon raises `has_conflict` unless the editor is itself mid-submit.
    The detector never merges or resolves on its own: `resolve_conflict()` must be called.
    """

    def __init__(
        self,
        baseline: Any,
        *,
        updatable_fields: Iterable[str],
        epsilon_seconds: float = DEFAULT_EPSILON_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._clock = clock
        self.epsilon_seconds = float(epsilon_seconds)
        self.updatable_fields = tuple(updatable_fields)
        self.baseline: datetime = parse_datetime_maybe(baseline) or clock()
        self.has_conflict = False
        self.is_submitting = False
        self.server_doc: Optional[dict[str, Any]] = None
        self._lock = threading.Lock()

    def observe(self, doc: Optional[dict[str, Any]]) -> bool:
        """Feed a remote change notification. Returns the current conflict flag."""
        with self._lock:
            if doc is None:
                return self.has_conflict
            self.server_doc = doc
            if self.is_submitting:
                return self.has_conflict
            if is_newer_than(doc.get("updatedAt"), self.baseline, self.epsilon_seconds):
                if not self.has_conflict:
                    log.info("edit conflict id=%s remote=%s baseline=%s", doc.get("id"), doc.get("updatedAt"), self.baseline)
                self.has_conflict = True
            return self.has_conflict

    def begin_submit(self) -> None:
        with self._lock:
            self.is_submitting = True

    def end_submit(self) -> None:
        with self._lock:
            self.is_submitting = False

    @contextmanager
    def submitting(self) -> Iterator["ConflictDetector"]:
        self.begin_submit()
        try:
            yield self
        finally:
            self.end_submit()

    def rebaseline(self, updated_at: Any) -> None:
        """Adopt a newly committed version as the baseline (after a successful save)."""
        with self._lock:
            self.baseline = parse_datetime_maybe(updated_at) or self._clock()

    def resolve_conflict(self) -> None:
        """The user has acknowledged the newer server version. Re-baseline to now and clear the flag."""
        with self._lock:
            self.baseline = self._clock()
            self.has_conflict = False

    def compute_update_payload(self, current_values: Mapping[str, Any], dirty_fields: Mapping[str, bool]) -> dict[str, Any]:
        """Patch holding only the fields the user touched. Unknown field names are rejected."""
        unknown = sorted(k for k, dirty in (dirty_fields or {}).items() if dirty and k not in self.updatable_fields)
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(unknown)}")
        payload: dict[str, Any] = {}
        for key in self.updatable_fields:
            if not (dirty_fields or {}).get(key):
                continue
            if key in (current_values or {}):
                payload[key] = current_values[key]
        return payload

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "baselineTimestamp": self.baseline.isoformat(),
                "hasConflict": self.has_conflict,
                "isSubmitting": self.is_submitting,
            }
