import copy
import datetime
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from bson import Decimal128, ObjectId
from bson.errors import InvalidDocument
from pymongo import ASCENDING, MongoClient
from pymongo.errors import ConnectionFailure, PyMongoError

from mapper_errors import StoreOperationFailed, StoreUnavailable
from mapper_settings import MapperSettings

logger = logging.getLogger(__name__)

SortSpec = List[Tuple[str, int]]


class StoreCursor:
    """Forward-only iterator over query results that owns the underlying store cursor."""

    def __init__(self, documents: Iterator[Dict[str, Any]], on_close: Optional[Callable[[], None]] = None):
        self._documents = documents
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self):
        return self

    def __next__(self) -> Dict[str, Any]:
        if self._closed:
            raise StopIteration
        return next(self._documents)

    def close(self):
        if self._closed:
            return
        self._closed = True
        if self._on_close:
            self._on_close()


class Collection(ABC):
    """
    The driver surface the mapper talks to: point lookups, cursor queries,
    inserts and atomic updates against a single collection.

    `options` arguments are the dicts produced by query_options.split_options.
    """
    name: str = ""

    @staticmethod
    def _as_filter(filter_or_id: Any) -> Dict[str, Any]:
        if isinstance(filter_or_id, Mapping):
            return dict(filter_or_id)
        return {"_id": filter_or_id}

    @abstractmethod
    def find_one(self, filter_or_id: Any, options: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def find(self, query_filter: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> StoreCursor:
        pass

    @abstractmethod
    def insert(self, document: Dict[str, Any]) -> Any:
        """Inserts one document and returns its identifier."""
        pass

    @abstractmethod
    def update(self, query_filter: Dict[str, Any], update: Dict[str, Any]) -> int:
        """Applies an operator document to the first match. Returns the number of matched documents."""
        pass

    @abstractmethod
    def count(self, query_filter: Dict[str, Any]) -> int:
        pass

    @abstractmethod
    def drop(self):
        pass

    @abstractmethod
    def close(self):
        pass


def normalize_sort(sort: Any) -> Optional[SortSpec]:
    """Accepts "field", ("field", dir), [("a", 1), ("b", -1)] or {"a": 1} and returns (field, dir) pairs."""
    if not sort:
        return None
    if isinstance(sort, str):
        return [(sort, ASCENDING)]
    if isinstance(sort, Mapping):
        return [(k, int(v)) for k, v in sort.items()]
    if isinstance(sort, (list, tuple)):
        if len(sort) == 2 and isinstance(sort[0], str) and isinstance(sort[1], int):
            return [(sort[0], sort[1])]
        pairs = []
        for item in sort:
            if isinstance(item, str):
                pairs.append((item, ASCENDING))
            else:
                key, direction = item
                pairs.append((key, int(direction)))
        return pairs
    raise ValueError(f"Unsupported sort specification: {sort!r}")


# --- In-memory backend ---

_MISSING = object()


def _lookup(doc: Any, path: str, index_arrays: bool = True) -> Any:
    current = doc
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif index_arrays and isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal, Decimal128)) and not isinstance(value, bool)


# What $inc accepts: a raw Decimal is not a BSON type
def _is_bson_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal128)) and not isinstance(value, bool)


def _comparable(value: Any) -> Any:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    return value


def _equals(value: Any, expected: Any) -> bool:
    if value is _MISSING:
        return expected is None
    if _comparable(value) == _comparable(expected):
        return True
    if isinstance(value, list) and not isinstance(expected, list):
        return any(_comparable(item) == _comparable(expected) for item in value)
    return False


def _compare(value: Any, arg: Any, op: Callable[[Any, Any], bool]) -> bool:
    candidates = value if isinstance(value, list) else [value]
    for candidate in candidates:
        if candidate is _MISSING or candidate is None:
            continue
        try:
            if op(_comparable(candidate), _comparable(arg)):
                return True
        except TypeError:
            continue
    return False


_COMPARISONS: Dict[str, Callable[[Any, Any], bool]] = {
    "$gt": lambda a, b: a > b,
    "$gte": lambda a, b: a >= b,
    "$lt": lambda a, b: a < b,
    "$lte": lambda a, b: a <= b,
}


def _apply_operator(value: Any, op: str, arg: Any) -> bool:
    if op == "$eq":
        return _equals(value, arg)
    if op == "$ne":
        return not _equals(value, arg)
    if op in _COMPARISONS:
        return _compare(value, arg, _COMPARISONS[op])
    if op == "$in":
        return any(_equals(value, a) for a in arg)
    if op == "$nin":
        return not any(_equals(value, a) for a in arg)
    if op == "$exists":
        return (value is not _MISSING) == bool(arg)
    raise StoreOperationFailed(f"unknown operator: {op}")


def _field_matches(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        return all(_apply_operator(value, op, arg) for op, arg in condition.items())
    return _equals(value, condition)


def _matches(doc: Dict[str, Any], query: Mapping[str, Any]) -> bool:
    for key, condition in query.items():
        if key == "$and":
            if not all(_matches(doc, clause) for clause in condition):
                return False
        elif key == "$or":
            if not any(_matches(doc, clause) for clause in condition):
                return False
        elif key.startswith("$"):
            raise StoreOperationFailed(f"unknown top level operator: {key}")
        elif not _field_matches(_lookup(doc, key), condition):
            return False
    return True


# Cross-type ordering, roughly following BSON comparison order
def _sort_key(value: Any) -> Tuple[int, Any]:
    if value is _MISSING or value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (7, value)
    if _is_number(value):
        return (1, _comparable(value))
    if isinstance(value, str):
        return (2, value)
    if isinstance(value, dict):
        return (3, str(value))
    if isinstance(value, list):
        return (4, str(value))
    if isinstance(value, bytes):
        return (5, value)
    if isinstance(value, ObjectId):
        return (6, value)
    if isinstance(value, datetime.datetime):
        return (8, value.replace(tzinfo=None))
    return (9, str(value))


def _set_path(doc: Dict[str, Any], path: str, value: Any):
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        if part not in current:
            current[part] = {}
        current = current[part]
        if not isinstance(current, dict):
            raise StoreOperationFailed(f"Cannot create field '{parts[-1]}' in element {{{part}: {current!r}}}")
    current[parts[-1]] = value


def _unset_path(doc: Dict[str, Any], path: str):
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.get(part) if isinstance(current, dict) else None
        if not isinstance(current, dict):
            return
    current.pop(parts[-1], None)


def _project(doc: Dict[str, Any], fields: Union[List[str], Dict[str, Any], None]) -> Dict[str, Any]:
    if not fields:
        return doc
    spec = dict(fields) if isinstance(fields, Mapping) else {f: 1 for f in fields}
    keep_id = bool(spec.pop("_id", 1))
    # {"_id": 1} alone selects only the identifier, {"_id": 0} alone drops it
    include = any(spec.values()) if spec else keep_id
    if include:
        projected: Dict[str, Any] = {}
        for path in (k for k, v in spec.items() if v):
            # Projections do not index into arrays
            value = _lookup(doc, path, index_arrays=False)
            if value is not _MISSING:
                _set_path(projected, path, value)
    else:
        projected = doc
        for path in spec:
            _unset_path(projected, path)
    if keep_id and "_id" in doc:
        projected["_id"] = doc["_id"]
    elif not keep_id:
        projected.pop("_id", None)
    return projected


class InMemoryCollection(Collection):
    """Dict-backed collection with the query and update semantics the mapper relies on."""

    def __init__(self, name: str = "records"):
        self.name = name
        # _id -> document, in insertion order
        self._documents: Dict[Any, Dict[str, Any]] = {}

    def _select(self, query_filter: Mapping[str, Any], options: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        options = options or {}
        matches = [doc for doc in self._documents.values() if _matches(doc, query_filter)]
        for key, direction in reversed(normalize_sort(options.get("sort")) or []):
            matches.sort(key=lambda d: _sort_key(_lookup(d, key)), reverse=direction < 0)
        skip = options.get("skip") or 0
        limit = abs(options.get("limit") or 0)
        matches = matches[skip:skip + limit] if limit else matches[skip:]
        return [_project(copy.deepcopy(doc), options.get("fields")) for doc in matches]

    def find_one(self, filter_or_id: Any, options: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        options = dict(options or {}, limit=1)
        results = self._select(self._as_filter(filter_or_id), options)
        return results[0] if results else None

    def find(self, query_filter: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> StoreCursor:
        logger.debug(f"find on {self.name}: {query_filter} {options or {}}")
        return StoreCursor(iter(self._select(query_filter or {}, options)))

    def insert(self, document: Dict[str, Any]) -> Any:
        doc = copy.deepcopy(document)
        record_id = doc.setdefault("_id", ObjectId())
        if record_id in self._documents:
            raise StoreOperationFailed(f"duplicate key error: _id {record_id!r}")
        self._documents[record_id] = doc
        logger.debug(f"insert into {self.name}: _id={record_id}")
        return record_id

    def update(self, query_filter: Dict[str, Any], update: Dict[str, Any]) -> int:
        if not update or not all(k.startswith("$") for k in update):
            raise StoreOperationFailed("update document must contain only atomic operators")
        record_id = query_filter.get("_id", _MISSING)
        if len(query_filter) == 1 and record_id is not _MISSING and not isinstance(record_id, (dict, list)):
            target = self._documents.get(record_id)
        else:
            target = next((doc for doc in self._documents.values() if _matches(doc, query_filter)), None)
        if target is None:
            return 0
        # Operators apply to a copy so a failing operator leaves the document untouched
        updated = copy.deepcopy(target)
        for op, fields in update.items():
            for path, value in fields.items():
                if path == "_id" or path.startswith("_id."):
                    raise StoreOperationFailed("Performing an update on the path '_id' would modify the immutable field '_id'")
                self._apply_update(updated, op, path, copy.deepcopy(value))
        self._documents[updated["_id"]] = updated
        logger.debug(f"update on {self.name}: {query_filter} {update}")
        return 1

    @staticmethod
    def _apply_update(doc: Dict[str, Any], op: str, path: str, value: Any):
        current = _lookup(doc, path)
        if op == "$set":
            _set_path(doc, path, value)
        elif op == "$unset":
            _unset_path(doc, path)
        elif op == "$push":
            if current is _MISSING:
                _set_path(doc, path, [value])
            elif isinstance(current, list):
                current.append(value)
            else:
                raise StoreOperationFailed(
                    f"The field '{path}' must be an array but is of type {type(current).__name__}"
                )
        elif op == "$inc":
            if not _is_bson_number(value):
                raise StoreOperationFailed(f"Cannot increment with non-numeric argument: {{{path}: {value!r}}}")
            if current is _MISSING:
                _set_path(doc, path, value)
            elif not _is_bson_number(current):
                raise StoreOperationFailed(
                    f"Cannot apply $inc to a value of non-numeric type {type(current).__name__} at '{path}'"
                )
            elif isinstance(current, Decimal128) or isinstance(value, Decimal128):
                _set_path(doc, path, Decimal128(Decimal(str(_comparable(current))) + Decimal(str(_comparable(value)))))
            else:
                _set_path(doc, path, current + value)
        else:
            raise StoreOperationFailed(f"Unknown modifier: {op}")

    def count(self, query_filter: Dict[str, Any]) -> int:
        return sum(1 for doc in self._documents.values() if _matches(doc, query_filter or {}))

    def drop(self):
        self._documents.clear()

    def close(self):
        pass


# --- MongoDB backend ---

@contextmanager
def _translated_errors(operation: str):
    try:
        yield
    except ConnectionFailure as e:
        raise StoreUnavailable(f"{operation} failed: {e}") from e
    except (PyMongoError, InvalidDocument) as e:
        raise StoreOperationFailed(f"{operation} failed: {e}") from e


def _find_kwargs(options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {}
    if not options:
        return kwargs
    fields = options.get("fields")
    if fields:
        kwargs["projection"] = dict(fields) if isinstance(fields, Mapping) else list(fields)
    for key in ("skip", "limit", "hint"):
        if options.get(key) is not None:
            kwargs[key] = options[key]
    sort = normalize_sort(options.get("sort"))
    if sort:
        kwargs["sort"] = sort
    if "timeout" in options:
        kwargs["no_cursor_timeout"] = not options["timeout"]
    if "snapshot" in options:
        logger.warning("The snapshot option is not supported by MongoDB 4.0+ servers and is ignored")
    return kwargs


class MongoCollection(Collection):
    def __init__(self, client: MongoClient, database_name: str, collection_name: str, owns_client: bool = False):
        self.client = client
        self.db = self.client[database_name]
        self.name = collection_name
        self.collection = self.db[collection_name]
        self._owns_client = owns_client

    @classmethod
    def from_settings(cls, settings: MapperSettings) -> "MongoCollection":
        client: MongoClient = MongoClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=settings.server_selection_timeout_ms,
        )
        return cls(client, settings.database_name, settings.collection_name, owns_client=True)

    def find_one(self, filter_or_id: Any, options: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        query_filter = self._as_filter(filter_or_id)
        logger.debug(f"find_one on {self.name}: {query_filter} {options or {}}")
        with _translated_errors("find_one"):
            return self.collection.find_one(query_filter, **_find_kwargs(options))

    def _iterate(self, cursor) -> Iterator[Dict[str, Any]]:
        with _translated_errors("find"):
            for doc in cursor:
                yield doc

    def find(self, query_filter: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> StoreCursor:
        logger.debug(f"find on {self.name}: {query_filter} {options or {}}")
        with _translated_errors("find"):
            cursor = self.collection.find(query_filter or {}, **_find_kwargs(options))
        return StoreCursor(self._iterate(cursor), on_close=cursor.close)

    def insert(self, document: Dict[str, Any]) -> Any:
        with _translated_errors("insert"):
            # insert_one writes _id back into its argument
            record_id = self.collection.insert_one(dict(document)).inserted_id
        logger.debug(f"insert into {self.name}: _id={record_id}")
        return record_id

    def update(self, query_filter: Dict[str, Any], update: Dict[str, Any]) -> int:
        logger.debug(f"update on {self.name}: {query_filter} {update}")
        with _translated_errors("update"):
            return self.collection.update_one(query_filter, update).matched_count

    def count(self, query_filter: Dict[str, Any]) -> int:
        with _translated_errors("count"):
            return self.collection.count_documents(query_filter or {})

    def drop(self):
        with _translated_errors("drop"):
            self.collection.drop()

    def close(self):
        if self._owns_client:
            self.client.close()


def get_collection(store_type: str = "memory", **kwargs) -> Collection:
    if store_type == "memory":
        return InMemoryCollection(**kwargs)
    elif store_type == "mongo":
        settings = kwargs.pop("settings", None) or MapperSettings.from_env()
        overrides = {k: kwargs.pop(k) for k in ("database_name", "collection_name") if k in kwargs}
        if overrides:
            settings = settings.model_copy(update=overrides)
        client = kwargs.pop("client", None)
        if kwargs:
            raise TypeError(f"Unexpected arguments for a mongo collection: {', '.join(sorted(kwargs))}")
        if client is None:
            collection = MongoCollection.from_settings(settings)
        else:
            collection = MongoCollection(client, settings.database_name, settings.collection_name)
        logger.info(f"Using MongoDB collection {settings.database_name}.{collection.name}")
        return collection
    else:
        raise ValueError(f"Unknown store type: {store_type}")
