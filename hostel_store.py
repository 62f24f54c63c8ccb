"""
Entity Store backends for the hostel core.

The managers in ``hostel_system`` talk to persistence only through the
``BaseStore`` protocol defined here. Records are plain dicts (documents) keyed
by collection name; every document carries its identifier under ``"id"``.

Two backends are provided:
- ``InMemoryStore``: default, thread-safe, used by tests and the demo
- ``MongoStore``: MongoDB-backed store using PyMongo

Both offer atomic single-document read-modify-write through the ``expect``
argument of ``update``/``delete``; neither offers multi-document transactions.
"""

from __future__ import annotations

import copy
import logging
import queue
import threading
import uuid
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError

from hostel_errors import Conflict, NotFound, StoreUnavailable, ValidationError

logger = logging.getLogger(__name__)

# Collections
ROOMS = "rooms"
USERS = "users"
ROOM_REQUESTS = "room_requests"
FEES = "fees"
COMPLAINTS = "complaints"
NOTIFICATIONS = "notifications"

COLLECTIONS = (ROOMS, USERS, ROOM_REQUESTS, FEES, COMPLAINTS, NOTIFICATIONS)

# Fields that must be unique within a collection
UNIQUE_FIELDS: Dict[str, Tuple[str, ...]] = {
    ROOMS: ("number",),
    USERS: ("email",),
}

Predicate = Tuple[str, str, Any]
OrderBy = Sequence[Tuple[str, int]]

SUPPORTED_OPS = ("==", "in")


def _check_predicates(predicates: Optional[Sequence[Predicate]]) -> List[Predicate]:
    preds = list(predicates or [])
    for field_name, op, _ in preds:
        if op not in SUPPORTED_OPS:
            raise ValidationError(f"Unsupported query operator {op!r} on {field_name}", reason="bad_query")
    return preds


def matches(doc: dict, predicates: Sequence[Predicate]) -> bool:
    """Return True if ``doc`` satisfies every (field, op, value) predicate."""
    for field_name, op, value in predicates:
        actual = doc.get(field_name)
        if op == "==":
            if actual != value:
                return False
        elif op == "in":
            if actual not in value:
                return False
    return True


# -----------------------------
# Protocol
# -----------------------------


@runtime_checkable
class BaseStore(Protocol):
    def get(self, collection: str, doc_id: str) -> Optional[dict]: ...
    def query(
        self,
        collection: str,
        predicates: Optional[Sequence[Predicate]] = None,
        order_by: Optional[OrderBy] = None,
    ) -> List[dict]: ...
    def create(self, collection: str, fields: dict) -> str: ...
    def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict,
        expect: Optional[Sequence[Predicate]] = None,
    ) -> bool: ...
    def delete(self, collection: str, doc_id: str, expect: Optional[Sequence[Predicate]] = None) -> bool: ...
    def watch(self, collection: str, predicates: Optional[Sequence[Predicate]] = None) -> Iterator[List[dict]]: ...


# -----------------------------
# In-memory backend
# -----------------------------


def _sort_docs(docs: List[dict], order_by: Optional[OrderBy]) -> List[dict]:
    # Stable sorts applied from the last key to the first give a multi-key ordering.
    for field_name, direction in reversed(list(order_by or [])):
        docs.sort(
            key=lambda d: (d.get(field_name) is None, d.get(field_name) if d.get(field_name) is not None else 0),
            reverse=direction == DESCENDING,
        )
    return docs


class InMemoryStore:
    """Default in-memory store; documents are copied in and out so callers never share state."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._data: Dict[str, Dict[str, dict]] = {c: {} for c in COLLECTIONS}
        self._watchers: List[Tuple[str, List[Predicate], "queue.Queue[List[dict]]"]] = []

    def _collection(self, collection: str) -> Dict[str, dict]:
        try:
            return self._data[collection]
        except KeyError:
            raise ValidationError(f"Unknown collection: {collection}", reason="bad_collection") from None

    def _check_unique(self, collection: str, doc: dict, doc_id: Optional[str] = None) -> None:
        for field_name in UNIQUE_FIELDS.get(collection, ()):
            value = doc.get(field_name)
            if value is None:
                continue
            for other_id, other in self._data[collection].items():
                if other_id != doc_id and other.get(field_name) == value:
                    raise Conflict(f"Duplicate {field_name} in {collection}: {value}", reason=f"duplicate_{field_name}")

    def _notify(self, collection: str) -> None:
        # Each watcher holds at most the latest snapshot; an unread older one is replaced.
        for watched, predicates, q in self._watchers:
            if watched == collection:
                try:
                    q.get_nowait()
                except queue.Empty:
                    pass
                q.put_nowait(self._snapshot(collection, predicates))

    def _snapshot(self, collection: str, predicates: Sequence[Predicate]) -> List[dict]:
        return [copy.deepcopy(d) for d in self._data[collection].values() if matches(d, predicates)]

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def query(
        self,
        collection: str,
        predicates: Optional[Sequence[Predicate]] = None,
        order_by: Optional[OrderBy] = None,
    ) -> List[dict]:
        preds = _check_predicates(predicates)
        with self._lock:
            self._collection(collection)
            docs = self._snapshot(collection, preds)
        return _sort_docs(docs, order_by)

    def create(self, collection: str, fields: dict) -> str:
        with self._lock:
            docs = self._collection(collection)
            doc = copy.deepcopy(fields)
            doc_id = doc.get("id") or uuid.uuid4().hex
            if doc_id in docs:
                raise Conflict(f"Duplicate id in {collection}: {doc_id}", reason="duplicate_id")
            doc["id"] = doc_id
            self._check_unique(collection, doc)
            docs[doc_id] = doc
            self._notify(collection)
            return doc_id

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict,
        expect: Optional[Sequence[Predicate]] = None,
    ) -> bool:
        preds = _check_predicates(expect)
        with self._lock:
            docs = self._collection(collection)
            current = docs.get(doc_id)
            if current is None:
                raise NotFound(f"Unknown {collection} record: {doc_id}")
            if not matches(current, preds):
                return False
            updated = dict(current)
            updated.update(copy.deepcopy(fields))
            updated["id"] = doc_id
            self._check_unique(collection, updated, doc_id)
            docs[doc_id] = updated
            self._notify(collection)
            return True

    def delete(self, collection: str, doc_id: str, expect: Optional[Sequence[Predicate]] = None) -> bool:
        preds = _check_predicates(expect)
        with self._lock:
            docs = self._collection(collection)
            current = docs.get(doc_id)
            if current is None:
                raise NotFound(f"Unknown {collection} record: {doc_id}")
            if not matches(current, preds):
                return False
            del docs[doc_id]
            self._notify(collection)
            return True

    def watch(self, collection: str, predicates: Optional[Sequence[Predicate]] = None) -> Iterator[List[dict]]:
        """Yield the matching documents now and again after every write to ``collection``.

        The subscription is dropped when the generator is closed.
        """
        preds = _check_predicates(predicates)
        q: "queue.Queue[List[dict]]" = queue.Queue(maxsize=1)
        with self._lock:
            self._collection(collection)
            entry = (collection, preds, q)
            self._watchers.append(entry)
            q.put(self._snapshot(collection, preds))
        try:
            while True:
                yield q.get()
        finally:
            with self._lock:
                self._watchers.remove(entry)


# -----------------------------
# MongoDB backend
# -----------------------------


class MongoStore:
    """MongoDB-backed store using PyMongo.

    Documents are stored with the record id as ``_id``. Collections:
    - rooms: unique ``number``
    - users: unique ``email``; indexed by ``roomId``
    - room_requests: indexed by (``userId``, ``status``)
    - fees: indexed by (``studentId``, ``status``)
    - complaints: indexed by (``status``, ``priority``)
    - notifications: indexed by (``target``, ``read``)

    ``watch`` relies on change streams, which need a replica set or Atlas cluster.
    """

    def __init__(self, uri: str, db_name: str = "hostel_system", collection_prefix: str = "") -> None:
        self.client = MongoClient(uri)
        self.db = self.client[db_name]
        self._collections: Dict[str, Collection] = {
            name: self.db[f"{collection_prefix}{name}"] for name in COLLECTIONS
        }
        self._ensure_indexes()

    def _ensure_indexes(self) -> None:
        with self._errors("create indexes"):
            for name, unique_fields in UNIQUE_FIELDS.items():
                for field_name in unique_fields:
                    self._collections[name].create_index(field_name, unique=True)
            self._collections[USERS].create_index("roomId")
            self._collections[ROOM_REQUESTS].create_index([("userId", ASCENDING), ("status", ASCENDING)])
            self._collections[FEES].create_index([("studentId", ASCENDING), ("status", ASCENDING)])
            self._collections[COMPLAINTS].create_index([("status", ASCENDING), ("priority", ASCENDING)])
            self._collections[NOTIFICATIONS].create_index([("target", ASCENDING), ("read", ASCENDING)])

    def _errors(self, action: str) -> "_MongoErrors":
        return _MongoErrors(action)

    def _coll(self, collection: str) -> Collection:
        try:
            return self._collections[collection]
        except KeyError:
            raise ValidationError(f"Unknown collection: {collection}", reason="bad_collection") from None

    # Helpers for serialization
    @staticmethod
    def _filter(predicates: Sequence[Predicate]) -> dict:
        flt: dict = {}
        for field_name, op, value in predicates:
            key = "_id" if field_name == "id" else field_name
            flt[key] = value if op == "==" else {"$in": list(value)}
        return flt

    @staticmethod
    def _from_mongo(doc: Optional[dict]) -> Optional[dict]:
        if doc is None:
            return None
        out = dict(doc)
        out["id"] = out.pop("_id")
        return out

    @staticmethod
    def _sort(order_by: Optional[OrderBy]) -> Optional[List[Tuple[str, int]]]:
        if not order_by:
            return None
        return [("_id" if f == "id" else f, DESCENDING if d == DESCENDING else ASCENDING) for f, d in order_by]

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._errors(f"get {collection}/{doc_id}"):
            return self._from_mongo(self._coll(collection).find_one({"_id": doc_id}))

    def query(
        self,
        collection: str,
        predicates: Optional[Sequence[Predicate]] = None,
        order_by: Optional[OrderBy] = None,
    ) -> List[dict]:
        flt = self._filter(_check_predicates(predicates))
        with self._errors(f"query {collection}"):
            cursor = self._coll(collection).find(flt, sort=self._sort(order_by))
            return [self._from_mongo(d) for d in cursor]

    def create(self, collection: str, fields: dict) -> str:
        doc = dict(fields)
        doc["_id"] = doc.pop("id", None) or uuid.uuid4().hex
        try:
            with self._errors(f"create {collection}"):
                self._coll(collection).insert_one(doc)
        except DuplicateKeyError as e:
            raise Conflict(f"Duplicate record in {collection}", reason=_duplicate_reason(collection, e)) from e
        return doc["_id"]

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict,
        expect: Optional[Sequence[Predicate]] = None,
    ) -> bool:
        flt = {"_id": doc_id, **self._filter(_check_predicates(expect))}
        values = {k: v for k, v in fields.items() if k != "id"}
        try:
            with self._errors(f"update {collection}/{doc_id}"):
                result = self._coll(collection).update_one(flt, {"$set": values})
                if result.matched_count:
                    return True
                if self._coll(collection).count_documents({"_id": doc_id}, limit=1) == 0:
                    raise NotFound(f"Unknown {collection} record: {doc_id}")
                return False
        except DuplicateKeyError as e:
            raise Conflict(f"Duplicate record in {collection}", reason=_duplicate_reason(collection, e)) from e

    def delete(self, collection: str, doc_id: str, expect: Optional[Sequence[Predicate]] = None) -> bool:
        flt = {"_id": doc_id, **self._filter(_check_predicates(expect))}
        with self._errors(f"delete {collection}/{doc_id}"):
            result = self._coll(collection).delete_one(flt)
            if result.deleted_count:
                return True
            if self._coll(collection).count_documents({"_id": doc_id}, limit=1) == 0:
                raise NotFound(f"Unknown {collection} record: {doc_id}")
            return False

    def watch(self, collection: str, predicates: Optional[Sequence[Predicate]] = None) -> Iterator[List[dict]]:
        preds = _check_predicates(predicates)
        yield self.query(collection, preds)
        with self._errors(f"watch {collection}"):
            with self._coll(collection).watch() as stream:
                for _change in stream:
                    yield self.query(collection, preds)


class _MongoErrors:
    """Context manager turning driver failures into ``StoreUnavailable``."""

    def __init__(self, action: str) -> None:
        self.action = action

    def __enter__(self) -> "_MongoErrors":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is None or not isinstance(exc, PyMongoError) or isinstance(exc, DuplicateKeyError):
            return False
        logger.error("MongoDB failure during %s: %s", self.action, exc)
        raise StoreUnavailable(f"Store unavailable during {self.action}") from exc


def _duplicate_reason(collection: str, err: DuplicateKeyError) -> str:
    details = err.details or {}
    keys = list((details.get("keyValue") or {}).keys())
    if keys:
        return f"duplicate_{keys[0]}"
    fields = UNIQUE_FIELDS.get(collection, ())
    return f"duplicate_{fields[0]}" if fields else "duplicate_id"
