"""
In-Memory Document Store

Drop-in stand-in for the subset of the Motor database/collection API the
pipeline uses. Data lives in process memory and is lost on restart.

Suitable for:
- Testing
- Single-process development without a MongoDB replica set

Not suitable for:
- Multi-instance deployments (claim exclusivity only holds in one process)
- Long-term persistence

Supported query operators: equality (dotted paths, array membership), $eq,
$ne, $in, $nin, $gt, $gte, $lt, $lte, $exists, $and, $or, $nor.
Supported update operators: $set, $setOnInsert, $unset, $inc, $push (with
$each), $addToSet, $pull.

Transactions use an undo journal: every document touched inside
`transaction()` is snapshotted on first write and restored if the block
raises. Writes are applied immediately, so other coroutines can observe
uncommitted state.
"""
import copy
import datetime as dt
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from pymongo.results import DeleteResult, InsertManyResult, InsertOneResult, UpdateResult


# ============================================
# PATH HELPERS
# ============================================

def _resolve(doc: Any, path: str) -> List[Any]:
    """Return every value reachable at `path`, descending into arrays."""
    values = [doc]
    for part in path.split("."):
        found = []
        for value in values:
            if isinstance(value, dict):
                if part in value:
                    found.append(value[part])
            elif isinstance(value, list):
                if part.isdigit():
                    index = int(part)
                    if index < len(value):
                        found.append(value[index])
                else:
                    for element in value:
                        if isinstance(element, dict) and part in element:
                            found.append(element[part])
        values = found
    return values


def _expand(values: Iterable[Any]) -> Iterable[Any]:
    for value in values:
        yield value
        if isinstance(value, list):
            yield from value


def _get_one(doc: Dict[str, Any], path: str, default: Any = None) -> Any:
    target: Any = doc
    for part in path.split("."):
        if not isinstance(target, dict) or part not in target:
            return default
        target = target[part]
    return target


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = {}
            target[part] = child
        target = child
    target[parts[-1]] = value


def _unset_path(doc: Dict[str, Any], path: str) -> None:
    parts = path.split(".")
    target: Any = doc
    for part in parts[:-1]:
        if not isinstance(target, dict) or part not in target:
            return
        target = target[part]
    if isinstance(target, dict):
        target.pop(parts[-1], None)


# ============================================
# QUERY MATCHING
# ============================================

def _equals(values: List[Any], target: Any) -> bool:
    if target is None:
        return not values or any(v is None for v in values)
    return any(v == target for v in _expand(values))


def _compare(values: List[Any], target: Any, op: str) -> bool:
    for value in _expand(values):
        if value is None or isinstance(value, list):
            continue
        try:
            if op == "$gt" and value > target:
                return True
            if op == "$gte" and value >= target:
                return True
            if op == "$lt" and value < target:
                return True
            if op == "$lte" and value <= target:
                return True
        except TypeError:
            continue
    return False


def _is_operator_dict(value: Any) -> bool:
    return isinstance(value, dict) and bool(value) and all(k.startswith("$") for k in value)


def _matches_condition(values: List[Any], condition: Any) -> bool:
    if not _is_operator_dict(condition):
        return _equals(values, condition)

    for op, arg in condition.items():
        if op == "$eq":
            ok = _equals(values, arg)
        elif op == "$ne":
            ok = not _equals(values, arg)
        elif op == "$in":
            ok = any(_equals(values, candidate) for candidate in arg)
        elif op == "$nin":
            ok = not any(_equals(values, candidate) for candidate in arg)
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            ok = _compare(values, arg, op)
        elif op == "$exists":
            ok = bool(values) == bool(arg)
        else:
            raise NotImplementedError(f"Query operator {op} is not supported in memory")
        if not ok:
            return False
    return True


def matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    """True if `doc` satisfies the MongoDB-style `query`."""
    for key, condition in (query or {}).items():
        if key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif key == "$nor":
            if any(matches(doc, sub) for sub in condition):
                return False
        elif not _matches_condition(_resolve(doc, key), condition):
            return False
    return True


# ============================================
# UPDATES
# ============================================

def _seed_from_query(query: Dict[str, Any]) -> Dict[str, Any]:
    """Build the base document for an upsert from the query's equality terms."""
    seed: Dict[str, Any] = {}
    for key, condition in query.items():
        if key == "$and":
            for sub in condition:
                seed.update(_seed_from_query(sub))
        elif key.startswith("$"):
            continue
        elif _is_operator_dict(condition):
            if "$eq" in condition:
                _set_path(seed, key, copy.deepcopy(condition["$eq"]))
        else:
            _set_path(seed, key, copy.deepcopy(condition))
    return seed


def apply_update(doc: Dict[str, Any], update: Dict[str, Any], is_insert: bool) -> None:
    """Apply update operators to `doc` in place."""
    if not update or not all(k.startswith("$") for k in update):
        raise ValueError("update only works with $ operators")

    for op, fields in update.items():
        if op == "$set":
            for path, value in fields.items():
                _set_path(doc, path, copy.deepcopy(value))
        elif op == "$setOnInsert":
            if is_insert:
                for path, value in fields.items():
                    _set_path(doc, path, copy.deepcopy(value))
        elif op == "$unset":
            for path in fields:
                _unset_path(doc, path)
        elif op == "$inc":
            for path, amount in fields.items():
                _set_path(doc, path, (_get_one(doc, path) or 0) + amount)
        elif op in ("$push", "$addToSet"):
            for path, value in fields.items():
                current = list(_get_one(doc, path) or [])
                items = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
                for item in items:
                    if op == "$addToSet" and item in current:
                        continue
                    current.append(copy.deepcopy(item))
                _set_path(doc, path, current)
        elif op == "$pull":
            for path, condition in fields.items():
                current = list(_get_one(doc, path) or [])
                if isinstance(condition, dict):
                    kept = [el for el in current if not (isinstance(el, dict) and matches(el, condition))]
                else:
                    kept = [el for el in current if el != condition]
                _set_path(doc, path, kept)
        else:
            raise NotImplementedError(f"Update operator {op} is not supported in memory")


# ============================================
# SORTING & PROJECTION
# ============================================

def _type_rank(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        return 6
    if isinstance(value, (int, float)):
        return 1
    if isinstance(value, str):
        return 2
    if isinstance(value, dict):
        return 3
    if isinstance(value, list):
        return 4
    if isinstance(value, ObjectId):
        return 5
    if isinstance(value, dt.datetime):
        return 7
    return 8


def _normalize_sort(sort: Any, direction: Optional[int] = None) -> List[Tuple[str, int]]:
    if not sort:
        return []
    if isinstance(sort, str):
        return [(sort, direction or 1)]
    return [(field, order) for field, order in sort]


def _sort_docs(docs: List[Dict[str, Any]], sort: List[Tuple[str, int]]) -> List[Dict[str, Any]]:
    ordered = list(docs)
    for field, order in reversed(sort):
        def key(doc, field=field):
            value = _get_one(doc, field)
            return (_type_rank(value), value if value is not None else 0)
        ordered.sort(key=key, reverse=order < 0)
    return ordered


def _project(doc: Dict[str, Any], projection: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not projection:
        return doc
    include = {k for k, v in projection.items() if v and k != "_id"}
    if include:
        result = {k: doc[k] for k in include if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            result["_id"] = doc["_id"]
        return result
    return {k: v for k, v in doc.items() if k not in projection}


# ============================================
# SESSION / TRANSACTION
# ============================================

class InMemorySession:
    """Undo journal for one transaction."""

    def __init__(self):
        self._journal: Dict[Tuple[str, Any], Tuple["InMemoryCollection", Any, Optional[Dict[str, Any]]]] = {}
        self.aborted = False

    def record(self, collection: "InMemoryCollection", doc_id: Any, previous: Optional[Dict[str, Any]]) -> None:
        key = (collection.name, doc_id)
        if key not in self._journal:
            self._journal[key] = (collection, doc_id, copy.deepcopy(previous))

    def abort(self) -> None:
        for collection, doc_id, previous in reversed(list(self._journal.values())):
            collection._restore(doc_id, previous)
        self._journal.clear()
        self.aborted = True


# ============================================
# CURSOR / COLLECTION / DATABASE
# ============================================

class InMemoryCursor:
    """Lazy cursor supporting the chained sort/skip/limit calls Motor offers."""

    def __init__(self, collection: "InMemoryCollection", query: Optional[Dict[str, Any]], projection=None):
        self._collection = collection
        self._query = query or {}
        self._projection = projection
        self._sort: List[Tuple[str, int]] = []
        self._skip = 0
        self._limit = 0

    def sort(self, key_or_list: Any, direction: Optional[int] = None) -> "InMemoryCursor":
        self._sort = _normalize_sort(key_or_list, direction)
        return self

    def skip(self, count: int) -> "InMemoryCursor":
        self._skip = count
        return self

    def limit(self, count: int) -> "InMemoryCursor":
        self._limit = count
        return self

    def _materialize(self) -> List[Dict[str, Any]]:
        docs = self._collection._select(self._query, self._sort)
        docs = docs[self._skip:]
        if self._limit:
            docs = docs[:self._limit]
        return [_project(copy.deepcopy(doc), self._projection) for doc in docs]

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        docs = self._materialize()
        return docs if length is None else docs[:length]

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for doc in self._materialize():
            yield doc


class InMemoryCollection:
    """A single collection of documents keyed by `_id`."""

    def __init__(self, database: "InMemoryDatabase", name: str):
        self.database = database
        self.name = name
        self._docs: Dict[Any, Dict[str, Any]] = {}
        self._indexes: Dict[str, Dict[str, Any]] = {}

    # ---------- internals ----------

    def _select(self, query: Optional[Dict[str, Any]], sort: Optional[List[Tuple[str, int]]] = None) -> List[Dict[str, Any]]:
        docs = [doc for doc in self._docs.values() if matches(doc, query)]
        if sort:
            docs = _sort_docs(docs, sort)
        return docs

    def _restore(self, doc_id: Any, previous: Optional[Dict[str, Any]]) -> None:
        if previous is None:
            self._docs.pop(doc_id, None)
        else:
            self._docs[doc_id] = previous

    def _journal(self, session: Any, doc_id: Any) -> None:
        if isinstance(session, InMemorySession):
            session.record(self, doc_id, self._docs.get(doc_id))

    def _check_unique(self, doc: Dict[str, Any]) -> None:
        for name, spec in self._indexes.items():
            if not spec["unique"]:
                continue
            key = tuple(_get_one(doc, field) for field in spec["fields"])
            if spec["sparse"] and all(v is None for v in key):
                continue
            for other_id, other in self._docs.items():
                if other_id == doc["_id"]:
                    continue
                if tuple(_get_one(other, field) for field in spec["fields"]) == key:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} index: {name} dup key: {key}"
                    )

    def _write(self, doc: Dict[str, Any], session: Any) -> None:
        self._check_unique(doc)
        self._journal(session, doc["_id"])
        self._docs[doc["_id"]] = doc

    def _upsert_new(self, query: Dict[str, Any], update: Dict[str, Any], session: Any) -> Dict[str, Any]:
        doc = _seed_from_query(query)
        apply_update(doc, update, is_insert=True)
        doc.setdefault("_id", ObjectId())
        if doc["_id"] in self._docs:
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: _id_")
        self._write(doc, session)
        return doc

    # ---------- reads ----------

    async def find_one(self, filter: Optional[Dict[str, Any]] = None, projection=None, *, sort=None, session=None, **kwargs):
        docs = self._select(filter, _normalize_sort(sort))
        if not docs:
            return None
        return _project(copy.deepcopy(docs[0]), projection)

    def find(self, filter: Optional[Dict[str, Any]] = None, projection=None, *, sort=None, skip: int = 0, limit: int = 0, session=None, **kwargs) -> InMemoryCursor:
        cursor = InMemoryCursor(self, filter, projection)
        if sort:
            cursor.sort(sort)
        return cursor.skip(skip).limit(limit)

    async def count_documents(self, filter: Optional[Dict[str, Any]] = None, session=None, **kwargs) -> int:
        return len(self._select(filter))

    async def distinct(self, key: str, filter: Optional[Dict[str, Any]] = None, session=None) -> List[Any]:
        values: List[Any] = []
        for doc in self._select(filter):
            for value in _expand(_resolve(doc, key)):
                if not isinstance(value, list) and value not in values:
                    values.append(value)
        return values

    # ---------- writes ----------

    async def insert_one(self, document: Dict[str, Any], session=None, **kwargs) -> InsertOneResult:
        if "_id" not in document:
            document["_id"] = ObjectId()
        if document["_id"] in self._docs:
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: _id_")
        self._write(copy.deepcopy(document), session)
        return InsertOneResult(document["_id"], True)

    async def insert_many(self, documents: List[Dict[str, Any]], ordered: bool = True, session=None, **kwargs) -> InsertManyResult:
        inserted = []
        for document in documents:
            result = await self.insert_one(document, session=session)
            inserted.append(result.inserted_id)
        return InsertManyResult(inserted, True)

    async def update_one(self, filter: Dict[str, Any], update: Dict[str, Any], upsert: bool = False, session=None, **kwargs) -> UpdateResult:
        docs = self._select(filter)
        if docs:
            current = docs[0]
            updated = copy.deepcopy(current)
            apply_update(updated, update, is_insert=False)
            modified = int(updated != current)
            if modified:
                self._write(updated, session)
            return UpdateResult({"n": 1, "nModified": modified, "updatedExisting": True, "ok": 1.0}, True)

        if upsert:
            doc = self._upsert_new(filter, update, session)
            return UpdateResult({"n": 1, "nModified": 0, "upserted": doc["_id"], "updatedExisting": False, "ok": 1.0}, True)

        return UpdateResult({"n": 0, "nModified": 0, "updatedExisting": False, "ok": 1.0}, True)

    async def update_many(self, filter: Dict[str, Any], update: Dict[str, Any], upsert: bool = False, session=None, **kwargs) -> UpdateResult:
        docs = self._select(filter)
        if not docs and upsert:
            doc = self._upsert_new(filter, update, session)
            return UpdateResult({"n": 1, "nModified": 0, "upserted": doc["_id"], "ok": 1.0}, True)

        modified = 0
        for current in docs:
            updated = copy.deepcopy(current)
            apply_update(updated, update, is_insert=False)
            if updated != current:
                self._write(updated, session)
                modified += 1
        return UpdateResult({"n": len(docs), "nModified": modified, "ok": 1.0}, True)

    async def find_one_and_update(
        self,
        filter: Dict[str, Any],
        update: Dict[str, Any],
        projection=None,
        sort=None,
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
        session=None,
        **kwargs,
    ) -> Optional[Dict[str, Any]]:
        docs = self._select(filter, _normalize_sort(sort))
        if docs:
            before = docs[0]
            after = copy.deepcopy(before)
            apply_update(after, update, is_insert=False)
            self._write(after, session)
            chosen = after if return_document == ReturnDocument.AFTER else before
            return _project(copy.deepcopy(chosen), projection)

        if upsert:
            doc = self._upsert_new(filter, update, session)
            if return_document == ReturnDocument.AFTER:
                return _project(copy.deepcopy(doc), projection)
        return None

    async def delete_one(self, filter: Dict[str, Any], session=None, **kwargs) -> DeleteResult:
        docs = self._select(filter)
        if not docs:
            return DeleteResult({"n": 0, "ok": 1.0}, True)
        self._journal(session, docs[0]["_id"])
        self._docs.pop(docs[0]["_id"], None)
        return DeleteResult({"n": 1, "ok": 1.0}, True)

    async def delete_many(self, filter: Dict[str, Any], session=None, **kwargs) -> DeleteResult:
        docs = self._select(filter)
        for doc in docs:
            self._journal(session, doc["_id"])
            self._docs.pop(doc["_id"], None)
        return DeleteResult({"n": len(docs), "ok": 1.0}, True)

    # ---------- indexes ----------

    async def create_index(self, keys: Any, unique: bool = False, name: Optional[str] = None, sparse: bool = False, **kwargs) -> str:
        fields = [field for field, _ in _normalize_sort(keys)]
        name = name or "_".join(f"{field}_1" for field in fields)
        self._indexes[name] = {"fields": fields, "unique": unique, "sparse": sparse}
        return name

    async def index_information(self) -> Dict[str, Dict[str, Any]]:
        info = {"_id_": {"key": [("_id", 1)]}}
        for name, spec in self._indexes.items():
            info[name] = {"key": [(field, 1) for field in spec["fields"]], "unique": spec["unique"]}
        return info


class InMemoryDatabase:
    """Collection container mirroring `AsyncIOMotorDatabase` attribute/item access."""

    def __init__(self, name: str = "crm_sync"):
        self.name = name
        self._collections: Dict[str, InMemoryCollection] = {}

    def __getitem__(self, name: str) -> InMemoryCollection:
        if name not in self._collections:
            self._collections[name] = InMemoryCollection(self, name)
        return self._collections[name]

    def __getattr__(self, name: str) -> InMemoryCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def get_collection(self, name: str) -> InMemoryCollection:
        return self[name]

    async def list_collection_names(self) -> List[str]:
        return [name for name, coll in self._collections.items() if coll._docs]

    async def command(self, command: Any, *args, **kwargs) -> Dict[str, Any]:
        return {"ok": 1.0}

    @asynccontextmanager
    async def transaction(self):
        """Yield a session whose writes are undone if the block raises."""
        session = InMemorySession()
        try:
            yield session
        except BaseException:
            session.abort()
            raise
