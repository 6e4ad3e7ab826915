"""
In-memory stand-in for the Motor collections used by the notification services.

Supports the subset of the query/update language the services use:
equality (dotted paths), $exists, $lte, $lt, $gte, $ne, $or in filters;
$set, $setOnInsert, $inc, $unset, $push in updates; upserts; projections;
find().sort().limit().to_list(); find_one_and_update with sort/return_document.
"""
import copy
import itertools
from types import SimpleNamespace

from pymongo import ReturnDocument

_MISSING = object()
_ids = itertools.count(1)


def _get(doc, path):
    current = doc
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current:
            return _MISSING
        current = current[key]
    return current


def _set(doc, path, value):
    keys = path.split(".")
    current = doc
    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value


def _unset(doc, path):
    keys = path.split(".")
    current = doc
    for key in keys[:-1]:
        current = current.get(key)
        if not isinstance(current, dict):
            return
    current.pop(keys[-1], None)


def _match_condition(value, condition):
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            if op == "$exists":
                if (value is not _MISSING) != bool(arg):
                    return False
            elif op == "$ne":
                if value is not _MISSING and value == arg:
                    return False
            elif op == "$lte":
                if value is _MISSING or value is None or not value <= arg:
                    return False
            elif op == "$lt":
                if value is _MISSING or value is None or not value < arg:
                    return False
            elif op == "$gte":
                if value is _MISSING or value is None or not value >= arg:
                    return False
            elif op == "$in":
                if value is _MISSING or value not in arg:
                    return False
            else:
                raise NotImplementedError(op)
        return True
    if value is _MISSING:
        return condition is None
    return value == condition


def matches(doc, query):
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
            continue
        if not _match_condition(_get(doc, key), condition):
            return False
    return True


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    include = {k for k, v in projection.items() if v and k != "_id"}
    if include:
        out = {k: doc[k] for k in include if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            out["_id"] = doc["_id"]
        return out
    for key, value in projection.items():
        if not value:
            doc.pop(key, None)
    return doc


def _apply_update(doc, update, inserting):
    for path, value in update.get("$set", {}).items():
        _set(doc, path, copy.deepcopy(value))
    if inserting:
        for path, value in update.get("$setOnInsert", {}).items():
            _set(doc, path, copy.deepcopy(value))
    for path, amount in update.get("$inc", {}).items():
        current = _get(doc, path)
        _set(doc, path, (0 if current is _MISSING else current) + amount)
    for path in update.get("$unset", {}):
        _unset(doc, path)
    for path, value in update.get("$push", {}).items():
        current = _get(doc, path)
        items = [] if current is _MISSING else list(current)
        items.append(copy.deepcopy(value))
        _set(doc, path, items)


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs
        self._limit = None

    def sort(self, key, direction=1):
        def sort_key(d):
            v = d.get(key)
            return (v is None, v)
        self._docs = sorted(self._docs, key=sort_key, reverse=direction == -1)
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def to_list(self, length=None):
        limit = self._limit if self._limit else length
        return self._docs[:limit] if limit else list(self._docs)


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []

    def _find(self, query):
        return [d for d in self.docs if matches(d, query)]

    async def find_one(self, query=None, projection=None):
        found = self._find(query)
        return _project(found[0], projection) if found else None

    def find(self, query=None, projection=None):
        return FakeCursor([_project(d, projection) for d in self._find(query)])

    async def insert_one(self, doc):
        doc.setdefault("_id", next(_ids))
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    def _upsert_doc(self, query, update):
        doc = {"_id": next(_ids)}
        for key, value in (query or {}).items():
            if not key.startswith("$") and not isinstance(value, dict):
                _set(doc, key, copy.deepcopy(value))
        _apply_update(doc, update, inserting=True)
        self.docs.append(doc)
        return doc

    async def update_one(self, query, update, upsert=False):
        found = self._find(query)
        if found:
            _apply_update(found[0], update, inserting=False)
            return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            doc = self._upsert_doc(query, update)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc["_id"])
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def find_one_and_update(self, query, update, projection=None, sort=None, upsert=False,
                                  return_document=ReturnDocument.BEFORE):
        found = self._find(query)
        for key, direction in reversed(sort or []):
            found.sort(key=lambda d: (d.get(key) is None, d.get(key)), reverse=direction == -1)
        if not found:
            if upsert:
                doc = self._upsert_doc(query, update)
                return _project(doc, projection) if return_document == ReturnDocument.AFTER else None
            return None
        doc = found[0]
        before = _project(doc, projection)
        _apply_update(doc, update, inserting=False)
        return _project(doc, projection) if return_document == ReturnDocument.AFTER else before


class FakeDB:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]
