"""
Document stores for the marketplace collections.

Collections: user, order, chat, message, notification, report.

Both stores speak the same small Mongo-flavoured dialect so the services
never know which one is underneath. Documents go in and come out as plain
dicts keyed by the client-facing ``id``; the Mongo adapter maps ``_id``
on the way through.
"""
from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import ConflictError, UpstreamUnavailable

logger = logging.getLogger(__name__)

Doc = Dict[str, Any]
Sort = List[Tuple[str, int]]

# (collection, keys, unique)
INDEXES = [
    ("user", [("email", ASCENDING)], True),
    ("user", [("role", ASCENDING)], False),
    ("order", [("status", ASCENDING), ("createdAt", DESCENDING)], False),
    ("chat", [("pairKey", ASCENDING)], True),
    ("chat", [("participants", ASCENDING), ("updatedAt", DESCENDING)], False),
    ("message", [("chatId", ASCENDING), ("timestamp", ASCENDING)], False),
    ("notification", [("userId", ASCENDING), ("createdAt", DESCENDING)], False),
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(ObjectId())


class Store(Protocol):
    def insert(self, collection: str, doc: Doc) -> Doc:
        ...

    def get(self, collection: str, doc_id: str) -> Optional[Doc]:
        ...

    def find_one(self, collection: str, filter_dict: Doc) -> Optional[Doc]:
        ...

    def find(self, collection: str, filter_dict: Optional[Doc] = None, sort: Optional[Sort] = None, limit: Optional[int] = None) -> List[Doc]:
        ...

    def count(self, collection: str, filter_dict: Optional[Doc] = None) -> int:
        ...

    def update(self, collection: str, doc_id: str, set: Optional[Doc] = None, inc: Optional[Doc] = None,
               push: Optional[Doc] = None, pull: Optional[Doc] = None, expected: Optional[Doc] = None) -> Optional[Doc]:
        ...

    def update_many(self, collection: str, filter_dict: Doc, set: Doc) -> int:
        ...

    def find_or_insert(self, collection: str, filter_dict: Doc, doc: Doc) -> Tuple[Doc, bool]:
        ...

    def delete(self, collection: str, doc_id: str) -> bool:
        ...

    def delete_many(self, collection: str, filter_dict: Doc) -> int:
        ...

    def ensure_indexes(self) -> None:
        ...

    def ping(self) -> bool:
        ...

    def collection_names(self) -> List[str]:
        ...


# ------------------ In-memory ------------------

_MISSING = object()


def _get_path(doc: Doc, path: str):
    cur: Any = doc
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return _MISSING
        cur = cur[part]
    return cur


def _set_path(doc: Doc, path: str, value) -> None:
    parts = path.split(".")
    cur = doc
    for part in parts[:-1]:
        if not isinstance(cur.get(part), dict):
            cur[part] = {}
        cur = cur[part]
    cur[parts[-1]] = value


def _equals(actual, expected) -> bool:
    if actual is _MISSING:
        return expected is None
    if isinstance(actual, list) and not isinstance(expected, list):
        return expected in actual
    return actual == expected


def _match_value(actual, cond) -> bool:
    if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
        for op, arg in cond.items():
            if op == "$ne":
                if _equals(actual, arg):
                    return False
            elif op == "$in":
                if not any(_equals(actual, a) for a in arg):
                    return False
            elif op == "$all":
                if not isinstance(actual, list) or not all(a in actual for a in arg):
                    return False
            elif op == "$lt":
                if actual is _MISSING or actual is None or not actual < arg:
                    return False
            elif op == "$exists":
                if (actual is not _MISSING) != bool(arg):
                    return False
            else:
                raise ValueError(f"Unsupported filter operator {op}")
        return True
    return _equals(actual, cond)


def matches(doc: Doc, filter_dict: Optional[Doc]) -> bool:
    return all(_match_value(_get_path(doc, k), v) for k, v in (filter_dict or {}).items())


def _sort_docs(docs: List[Doc], sort: Optional[Sort]) -> List[Doc]:
    for field, direction in reversed(sort or []):
        def key(d, field=field):
            v = _get_path(d, field)
            return (0,) if v is _MISSING or v is None else (1, v)
        docs.sort(key=key, reverse=direction == DESCENDING)
    return docs


class MemoryStore:
    """Dict-backed store guarded by one re-entrant lock."""

    def __init__(self):
        self.lock = threading.RLock()
        self._collections: Dict[str, Dict[str, Doc]] = {}
        self._unique: Dict[str, List[str]] = {}

    def _coll(self, name: str) -> Dict[str, Doc]:
        return self._collections.setdefault(name, {})

    def _check_unique(self, collection: str, doc: Doc, skip_id: Optional[str] = None) -> None:
        for field in self._unique.get(collection, []):
            value = doc.get(field)
            if value is None:
                continue
            for other in self._coll(collection).values():
                if other["id"] != skip_id and other.get(field) == value:
                    raise ConflictError(f"Duplicate value for {field}")

    def ensure_indexes(self) -> None:
        with self.lock:
            for collection, keys, unique in INDEXES:
                if unique:
                    self._unique.setdefault(collection, []).append(keys[0][0])

    def insert(self, collection: str, doc: Doc) -> Doc:
        with self.lock:
            data = copy.deepcopy(doc)
            data["id"] = data.get("id") or new_id()
            ts = utcnow()
            data.setdefault("createdAt", ts)
            data["updatedAt"] = ts
            self._check_unique(collection, data)
            self._coll(collection)[data["id"]] = data
            return copy.deepcopy(data)

    def get(self, collection: str, doc_id: str) -> Optional[Doc]:
        with self.lock:
            doc = self._coll(collection).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def find_one(self, collection: str, filter_dict: Doc) -> Optional[Doc]:
        found = self.find(collection, filter_dict, limit=1)
        return found[0] if found else None

    def find(self, collection: str, filter_dict: Optional[Doc] = None, sort: Optional[Sort] = None, limit: Optional[int] = None) -> List[Doc]:
        with self.lock:
            docs = [d for d in self._coll(collection).values() if matches(d, filter_dict)]
            docs = _sort_docs(docs, sort)
            if limit:
                docs = docs[:limit]
            return copy.deepcopy(docs)

    def count(self, collection: str, filter_dict: Optional[Doc] = None) -> int:
        with self.lock:
            return sum(1 for d in self._coll(collection).values() if matches(d, filter_dict))

    def _apply(self, doc: Doc, set: Optional[Doc], inc: Optional[Doc], push: Optional[Doc],
               pull: Optional[Doc] = None) -> None:
        for path, value in (set or {}).items():
            _set_path(doc, path, copy.deepcopy(value))
        for path, value in (inc or {}).items():
            cur = _get_path(doc, path)
            _set_path(doc, path, (0 if cur is _MISSING or cur is None else cur) + value)
        for path, value in (push or {}).items():
            cur = _get_path(doc, path)
            _set_path(doc, path, ([] if cur is _MISSING or cur is None else list(cur)) + [copy.deepcopy(value)])
        for path, value in (pull or {}).items():
            cur = _get_path(doc, path)
            if isinstance(cur, list):
                _set_path(doc, path, [v for v in cur if v != value])
        doc["updatedAt"] = utcnow()

    def update(self, collection: str, doc_id: str, set: Optional[Doc] = None, inc: Optional[Doc] = None,
               push: Optional[Doc] = None, pull: Optional[Doc] = None, expected: Optional[Doc] = None) -> Optional[Doc]:
        with self.lock:
            current = self._coll(collection).get(doc_id)
            if current is None or not matches(current, expected):
                return None
            updated = copy.deepcopy(current)
            self._apply(updated, set, inc, push, pull)
            self._check_unique(collection, updated, skip_id=doc_id)
            self._coll(collection)[doc_id] = updated
            return copy.deepcopy(updated)

    def update_many(self, collection: str, filter_dict: Doc, set: Doc) -> int:
        with self.lock:
            hits = [d for d in self._coll(collection).values() if matches(d, filter_dict)]
            for doc in hits:
                self._apply(doc, set, None, None)
            return len(hits)

    def find_or_insert(self, collection: str, filter_dict: Doc, doc: Doc) -> Tuple[Doc, bool]:
        with self.lock:
            existing = self.find_one(collection, filter_dict)
            if existing is not None:
                return existing, False
            return self.insert(collection, doc), True

    def delete(self, collection: str, doc_id: str) -> bool:
        with self.lock:
            return self._coll(collection).pop(doc_id, None) is not None

    def delete_many(self, collection: str, filter_dict: Doc) -> int:
        with self.lock:
            coll = self._coll(collection)
            doomed = [k for k, d in coll.items() if matches(d, filter_dict)]
            for k in doomed:
                del coll[k]
            return len(doomed)

    def ping(self) -> bool:
        return True

    def collection_names(self) -> List[str]:
        with self.lock:
            return sorted(self._collections)


# ------------------ MongoDB ------------------

def _oid(doc_id: str) -> Optional[ObjectId]:
    try:
        return ObjectId(doc_id)
    except Exception:
        return None


def _out(doc: Optional[Doc]) -> Optional[Doc]:
    if not doc:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


class MongoStore:
    """pymongo-backed store; every write is a single-document operation."""

    def __init__(self, db):
        self.db = db

    @contextmanager
    def _guard(self):
        try:
            yield
        except DuplicateKeyError as e:
            raise ConflictError("Duplicate value") from e
        except PyMongoError as e:
            logger.error(f"Database error: {e}")
            raise UpstreamUnavailable() from e

    def _filter(self, filter_dict: Optional[Doc]) -> Doc:
        q = dict(filter_dict or {})
        if "id" in q:
            value = q.pop("id")
            if isinstance(value, dict) and "$in" in value:
                q["_id"] = {"$in": [o for o in (_oid(v) for v in value["$in"]) if o]}
            else:
                q["_id"] = _oid(value)
        return q

    def ensure_indexes(self) -> None:
        with self._guard():
            for collection, keys, unique in INDEXES:
                self.db[collection].create_index(keys, unique=unique, sparse=unique)

    def insert(self, collection: str, doc: Doc) -> Doc:
        data = dict(doc)
        data.pop("id", None)
        ts = utcnow()
        data.setdefault("createdAt", ts)
        data["updatedAt"] = ts
        with self._guard():
            result = self.db[collection].insert_one(data)
        data["_id"] = result.inserted_id
        return _out(data)

    def get(self, collection: str, doc_id: str) -> Optional[Doc]:
        oid = _oid(doc_id)
        if oid is None:
            return None
        with self._guard():
            return _out(self.db[collection].find_one({"_id": oid}))

    def find_one(self, collection: str, filter_dict: Doc) -> Optional[Doc]:
        with self._guard():
            return _out(self.db[collection].find_one(self._filter(filter_dict)))

    def find(self, collection: str, filter_dict: Optional[Doc] = None, sort: Optional[Sort] = None, limit: Optional[int] = None) -> List[Doc]:
        with self._guard():
            cursor = self.db[collection].find(self._filter(filter_dict))
            if sort:
                cursor = cursor.sort(sort + [("_id", sort[-1][1])])
            if limit:
                cursor = cursor.limit(limit)
            return [_out(d) for d in cursor]

    def count(self, collection: str, filter_dict: Optional[Doc] = None) -> int:
        with self._guard():
            return self.db[collection].count_documents(self._filter(filter_dict))

    def update(self, collection: str, doc_id: str, set: Optional[Doc] = None, inc: Optional[Doc] = None,
               push: Optional[Doc] = None, pull: Optional[Doc] = None, expected: Optional[Doc] = None) -> Optional[Doc]:
        oid = _oid(doc_id)
        if oid is None:
            return None
        ops: Doc = {"$set": {**(set or {}), "updatedAt": utcnow()}}
        if inc:
            ops["$inc"] = inc
        if push:
            ops["$push"] = push
        if pull:
            ops["$pull"] = pull
        with self._guard():
            doc = self.db[collection].find_one_and_update(
                {**(expected or {}), "_id": oid}, ops, return_document=ReturnDocument.AFTER
            )
        return _out(doc)

    def update_many(self, collection: str, filter_dict: Doc, set: Doc) -> int:
        with self._guard():
            result = self.db[collection].update_many(self._filter(filter_dict), {"$set": {**set, "updatedAt": utcnow()}})
        return result.modified_count

    def find_or_insert(self, collection: str, filter_dict: Doc, doc: Doc) -> Tuple[Doc, bool]:
        existing = self.find_one(collection, filter_dict)
        if existing is not None:
            return existing, False
        try:
            return self.insert(collection, doc), True
        except ConflictError:
            # lost the race against a concurrent insert of the same key
            return self.find_one(collection, filter_dict), False

    def delete(self, collection: str, doc_id: str) -> bool:
        oid = _oid(doc_id)
        if oid is None:
            return False
        with self._guard():
            return self.db[collection].delete_one({"_id": oid}).deleted_count == 1

    def delete_many(self, collection: str, filter_dict: Doc) -> int:
        with self._guard():
            return self.db[collection].delete_many(self._filter(filter_dict)).deleted_count

    def ping(self) -> bool:
        try:
            self.db.client.admin.command("ping")
            return True
        except PyMongoError:
            return False

    def collection_names(self) -> List[str]:
        with self._guard():
            return self.db.list_collection_names()
