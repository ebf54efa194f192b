from __future__ import annotations

import copy
import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError

from models import StoreDocument
from utils import NotFoundError, StoreUnavailableError, ValidationError, iso_utc_now


log = logging.getLogger("docstore")

MAX_BATCH_OPS = 500


class _DeleteField:
    def __repr__(self) -> str:
        return "DELETE_FIELD"

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


DELETE_FIELD = _DeleteField()

_FILTER_OPS = {"==", "!=", "<", "<=", ">", ">=", "in", "not_in", "array_contains"}


@dataclass
class WriteOp:
    kind: str  # set | update | delete
    collection: str
    doc_id: str
    data: dict[str, Any] = field(default_factory=dict)
    merge: bool = False
    # called with the current document inside the transaction; raising aborts the batch
    precondition: Optional[Callable[[Optional[dict[str, Any]]], None]] = None


def get_path(doc: Optional[dict[str, Any]], path: str, default: Any = None) -> Any:
    cur: Any = doc
    for part in str(path or "").split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


def _set_path(doc: dict[str, Any], path: str, value: Any) -> None:
    parts = str(path).split(".")
    cur = doc
    for part in parts[:-1]:
        nxt = cur.get(part)
        if not isinstance(nxt, dict):
            if value is DELETE_FIELD:
                return
            nxt = {}
            cur[part] = nxt
        cur = nxt
    if value is DELETE_FIELD:
        cur.pop(parts[-1], None)
    else:
        cur[parts[-1]] = copy.deepcopy(value)


def _deep_merge(base: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    for key, value in incoming.items():
        if value is DELETE_FIELD:
            base.pop(key, None)
        elif isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = _strip_sentinels(copy.deepcopy(value))
    return base


def _strip_sentinels(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_sentinels(v) for k, v in value.items() if v is not DELETE_FIELD}
    return value


def apply_patch(doc: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Apply an update patch whose keys may be dotted field paths."""
    out = copy.deepcopy(doc)
    for key, value in (patch or {}).items():
        _set_path(out, key, _strip_sentinels(value) if value is not DELETE_FIELD else value)
    return out


def _matches(doc: dict[str, Any], field_path: str, op: str, value: Any) -> bool:
    actual = get_path(doc, field_path)
    if op == "==":
        return actual == value
    if op == "!=":
        return actual != value
    if op == "in":
        return actual in (value or [])
    if op == "not_in":
        return actual not in (value or [])
    if op == "array_contains":
        return isinstance(actual, list) and value in actual
    if actual is None:
        return False
    try:
        if op == "<":
            return actual < value
        if op == "<=":
            return actual <= value
        if op == ">":
            return actual > value
        if op == ">=":
            return actual >= value
    except TypeError:
        return False
    return False


class Subscription:
    """Handle returned by `DocumentStore.subscribe`. Usable as a context manager."""

    def __init__(self, store: "DocumentStore", key: tuple[str, str], listener_id: int):
        self._store = store
        self._key = key
        self._listener_id = listener_id
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._store._remove_listener(self._key, self._listener_id)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class DocumentStore:
    """
    Document-collection interface over the `store_documents` table.

    Every public write runs in its own transaction. `batch_write` commits all of its
    operations in one transaction or none of them.
    """

    def __init__(self, session_factory, *, max_batch_ops: int = MAX_BATCH_OPS):
        self._session_factory = session_factory
        self.max_batch_ops = int(max_batch_ops)
        self._listeners: dict[tuple[str, str], dict[int, Callable[[Optional[dict[str, Any]]], None]]] = {}
        self._listeners_lock = threading.Lock()
        self._next_listener_id = 0

    # -- transactions -------------------------------------------------------

    def _commit(self, session, operation: str) -> None:
        session.commit()

    @contextmanager
    def transaction(self, operation: str, collection: str = "", doc_id: str = "") -> Iterator[Any]:
        """Yield a SQLAlchemy session; commit on exit, wrap driver errors as StoreUnavailableError."""
        session = self._session_factory()
        try:
            yield session
            self._commit(session, operation)
        except DBAPIError as e:
            session.rollback()
            target = f"{collection}/{doc_id}" if doc_id else collection
            log.exception("store operation=%s target=%s failed", operation, target)
            raise StoreUnavailableError(f"Store unavailable during {operation} on {target or 'store'}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _load_row(session, collection: str, doc_id: str, *, for_update: bool = False) -> Optional[StoreDocument]:
        q = select(StoreDocument).where(StoreDocument.collection == collection).where(StoreDocument.docId == doc_id)
        if for_update:
            q = q.with_for_update()
        return session.execute(q).scalar_one_or_none()

    @staticmethod
    def _row_body(row: StoreDocument) -> dict[str, Any]:
        try:
            body = json.loads(row.bodyJson or "{}")
        except json.JSONDecodeError:
            log.warning("corrupt document body collection=%s id=%s", row.collection, row.docId)
            body = {}
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _as_doc(doc_id: str, body: dict[str, Any]) -> dict[str, Any]:
        out = dict(body)
        out["id"] = doc_id
        return out

    @staticmethod
    def _clean_body(data: dict[str, Any]) -> dict[str, Any]:
        body = _strip_sentinels(copy.deepcopy(dict(data or {})))
        body.pop("id", None)
        return body

    def _write_row(self, session, collection: str, doc_id: str, body: dict[str, Any], row: Optional[StoreDocument]):
        now = iso_utc_now()
        blob = json.dumps(body, ensure_ascii=False, separators=(",", ":"))
        if row is None:
            row = StoreDocument(collection=collection, docId=doc_id, bodyJson=blob, version=1, createdAt=now, updatedAt=now)
            session.add(row)
        else:
            row.bodyJson = blob
            row.version = int(row.version or 0) + 1
            row.updatedAt = now
        return row

    def _apply_op(self, session, op: WriteOp) -> tuple[str, str, Optional[dict[str, Any]]]:
        collection = _require_name(op.collection, "collection")
        doc_id = _require_name(op.doc_id, "document id")
        kind = str(op.kind or "").lower().strip()

        row = self._load_row(session, collection, doc_id, for_update=True)
        if op.precondition is not None:
            op.precondition(self._as_doc(doc_id, self._row_body(row)) if row is not None else None)

        if kind == "delete":
            if row is not None:
                session.delete(row)
            return collection, doc_id, None

        if kind == "set":
            if op.merge and row is not None:
                body = _deep_merge(self._row_body(row), dict(op.data or {}))
            else:
                body = self._clean_body(op.data)
            body.pop("id", None)
            self._write_row(session, collection, doc_id, body, row)
            return collection, doc_id, self._as_doc(doc_id, body)

        if kind == "update":
            if row is None:
                raise NotFoundError(f"No document to update: {collection}/{doc_id}")
            body = apply_patch(self._row_body(row), dict(op.data or {}))
            body.pop("id", None)
            self._write_row(session, collection, doc_id, body, row)
            return collection, doc_id, self._as_doc(doc_id, body)

        raise ValidationError(f"Unknown write op: {op.kind}")

    # -- reads --------------------------------------------------------------

    def get_document(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        with self.transaction("get", collection, doc_id) as session:
            row = self._load_row(session, collection, str(doc_id or ""))
            if row is None:
                return None
            return self._as_doc(row.docId, self._row_body(row))

    def query_documents(
        self,
        collection: str,
        filters: Optional[list[tuple[str, str, Any]]] = None,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        checks = []
        for f in filters or []:
            field_path, op, value = f
            if op not in _FILTER_OPS:
                raise ValidationError(f"Unsupported filter operator: {op}")
            checks.append((field_path, op, value))

        with self.transaction("query", collection) as session:
            rows = session.execute(select(StoreDocument).where(StoreDocument.collection == collection)).scalars().all()
            docs = [self._as_doc(r.docId, self._row_body(r)) for r in rows]

        docs = [d for d in docs if all(_matches(d, fp, op, v) for fp, op, v in checks)]
        if order_by:
            present = [d for d in docs if get_path(d, order_by) is not None]
            missing = [d for d in docs if get_path(d, order_by) is None]
            present.sort(key=lambda d: get_path(d, order_by), reverse=descending)
            docs = present + missing
        if limit is not None and int(limit) >= 0:
            docs = docs[: int(limit)]
        return docs

    # -- writes -------------------------------------------------------------

    def set_document(self, collection: str, doc_id: str, data: dict[str, Any], *, merge: bool = False) -> dict[str, Any]:
        with self.transaction("set", collection, doc_id) as session:
            change = self._apply_op(session, WriteOp("set", collection, doc_id, data, merge))
        self._notify([change])
        return change[2] or {}

    def create_document(self, collection: str, doc_id: str, data: dict[str, Any]) -> bool:
        """Insert only. Returns False when the document already exists."""
        with self.transaction("create", collection, doc_id) as session:
            if self._load_row(session, collection, doc_id, for_update=True) is not None:
                return False
            change = self._apply_op(session, WriteOp("set", collection, doc_id, data))
        self._notify([change])
        return True

    def update_document(self, collection: str, doc_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        with self.transaction("update", collection, doc_id) as session:
            change = self._apply_op(session, WriteOp("update", collection, doc_id, patch))
        self._notify([change])
        return change[2] or {}

    def update_document_with(
        self,
        collection: str,
        doc_id: str,
        mutator: Callable[[dict[str, Any]], Optional[dict[str, Any]]],
    ) -> dict[str, Any]:
        """
        Read-modify-write of one document under a row lock.

        `mutator(doc)` returns the update patch (dotted paths allowed) or None to skip the
        write. Exceptions raised by the mutator abort the transaction.
        """
        with self.transaction("update", collection, doc_id) as session:
            row = self._load_row(session, collection, doc_id, for_update=True)
            if row is None:
                raise NotFoundError(f"No document to update: {collection}/{doc_id}")
            current = self._as_doc(doc_id, self._row_body(row))
            patch = mutator(copy.deepcopy(current))
            if not patch:
                return current
            change = self._apply_op(session, WriteOp("update", collection, doc_id, patch))
        self._notify([change])
        return change[2] or {}

    def delete_document(self, collection: str, doc_id: str) -> None:
        with self.transaction("delete", collection, doc_id) as session:
            change = self._apply_op(session, WriteOp("delete", collection, doc_id))
        self._notify([change])

    def batch_write(self, ops: list[WriteOp]) -> None:
        ops = list(ops or [])
        if not ops:
            return
        if len(ops) > self.max_batch_ops:
            raise ValidationError(f"Batch exceeds {self.max_batch_ops} operations")
        collections = ",".join(sorted({op.collection for op in ops}))
        changes = []
        with self.transaction("batch_write", collections) as session:
            for op in ops:
                changes.append(self._apply_op(session, op))
                session.flush()
        self._notify(changes)

    # -- subscriptions ------------------------------------------------------

    def subscribe(
        self, collection: str, doc_id: str, on_change: Callable[[Optional[dict[str, Any]]], None]
    ) -> Subscription:
        key = (str(collection), str(doc_id))
        with self._listeners_lock:
            self._next_listener_id += 1
            listener_id = self._next_listener_id
            self._listeners.setdefault(key, {})[listener_id] = on_change
        return Subscription(self, key, listener_id)

    def _remove_listener(self, key: tuple[str, str], listener_id: int) -> None:
        with self._listeners_lock:
            bucket = self._listeners.get(key)
            if not bucket:
                return
            bucket.pop(listener_id, None)
            if not bucket:
                self._listeners.pop(key, None)

    def listener_count(self, collection: str, doc_id: str) -> int:
        with self._listeners_lock:
            return len(self._listeners.get((str(collection), str(doc_id)), {}))

    def _notify(self, changes: list[tuple[str, str, Optional[dict[str, Any]]]]) -> None:
        for collection, doc_id, doc in changes:
            with self._listeners_lock:
                callbacks = list(self._listeners.get((collection, doc_id), {}).values())
            for cb in callbacks:
                try:
                    cb(copy.deepcopy(doc) if doc is not None else None)
                except Exception:
                    log.exception("listener failed collection=%s id=%s", collection, doc_id)


def _require_name(value: Any, what: str) -> str:
    s = str(value or "").strip()
    if not s or "/" in s:
        raise ValidationError(f"Invalid {what}: {value!r}")
    return s


_store: Optional[DocumentStore] = None


def init_store(session_factory, *, max_batch_ops: int = MAX_BATCH_OPS) -> DocumentStore:
    global _store
    _store = DocumentStore(session_factory, max_batch_ops=max_batch_ops)
    return _store


def get_store() -> DocumentStore:
    if _store is None:
        raise RuntimeError("Document store not initialized")
    return _store
