"""
Records backed by documents in a collection.

A Record holds nothing but the collection it lives in and the identifier of
its document. Every field read is a point lookup and every write is an atomic
update operator against that one document:

    notes = InMemoryCollection()
    note = Record(notes)            # inserts {} and binds to its _id
    note.set("color", "red")        # {"$set": {"color": "red"}}
    note.color                      # point lookup projecting "color"
    note.push("tags", "a", "b")     # one $push per value
    note.inc("views")               # {"$inc": {"views": 1}}

Finder locates existing documents and hands back records bound to them.
"""
import logging
from typing import Any, Dict, Generic, Mapping, Optional, Type, TypeVar

from collection_store import Collection, StoreCursor
from mapper_errors import RecordNotFound
from query_options import split_options
from value_wrapper import unwrap, wrap

logger = logging.getLogger(__name__)

_MISSING = object()


def _field_value(document: Dict[str, Any], path: str) -> Any:
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


class Record:
    """
    In-memory handle for one stored document.

    Attributes the class does not define are read from and written to the
    document: `record.title` is `record.get("title")` and `record.title = x`
    is `record.set("title", x)`. Names starting with an underscore, and
    anything defined on the class, stay ordinary Python attributes.
    """
    __slots__ = ("_collection", "_record_id")

    def __init__(self, collection: Collection, *, _record_id: Any = None, **fields: Any):
        object.__setattr__(self, "_collection", collection)
        if _record_id is not None and fields:
            raise TypeError("Initial field values cannot be given when binding to an existing record")
        # Wrapped before the insert so an unsupported value leaves nothing behind
        initial = {name: wrap(v) for name, v in fields.items()}
        if _record_id is None:
            _record_id = collection.insert({})
            logger.debug(f"Created {type(self).__name__} {_record_id} in {collection.name}")
        object.__setattr__(self, "_record_id", _record_id)
        if initial:
            self._apply({"$set": initial})

    @property
    def id(self) -> Any:
        return self._record_id

    @property
    def collection(self) -> Collection:
        return self._collection

    def get(self, field: str) -> Any:
        """
        Reads one field (dotted paths reach into embedded documents).
        Returns None when the field is absent and raises RecordNotFound when
        the document itself is gone.
        """
        document = self._collection.find_one({"_id": self._record_id}, {"fields": [field]})
        if document is None:
            raise RecordNotFound(self._record_id)
        value = _field_value(document, field)
        return None if value is _MISSING else unwrap(value)

    def to_dict(self) -> Dict[str, Any]:
        document = self._collection.find_one({"_id": self._record_id})
        if document is None:
            raise RecordNotFound(self._record_id)
        return {k: unwrap(v) for k, v in document.items()}

    def set(self, field_or_mapping: Any, value: Any = _MISSING):
        """
        Sets fields with a single $set. Takes either a field and a value or a
        mapping of fields to values; record.set("a", 1) and record.a = 1 are
        the same operation.
        """
        if value is _MISSING:
            if not isinstance(field_or_mapping, Mapping):
                raise TypeError("set() takes a field and a value, or a mapping of fields to values")
            fields = dict(field_or_mapping)
        else:
            fields = {field_or_mapping: value}
        if not fields:
            return
        self._apply({"$set": {name: wrap(v) for name, v in fields.items()}})

    def push(self, field: str, *values: Any):
        """
        Appends each value to an array field, one $push per value in order.
        The field is not checked to be an array; the store decides.
        """
        wrapped = [wrap(v) for v in values]
        for item in wrapped:
            self._apply({"$push": {field: item}})

    def inc(self, field: str, amount: Any = 1):
        # Not checked to be numeric, the store decides
        self._apply({"$inc": {field: wrap(amount)}})

    def unset(self, *fields: str):
        if fields:
            self._apply({"$unset": {f: "" for f in fields}})

    def _apply(self, update: Dict[str, Any]):
        matched = self._collection.update({"_id": self._record_id}, update)
        if not matched:
            logger.debug(f"Update matched nothing for {type(self).__name__} {self._record_id}")
            raise RecordNotFound(self._record_id)

    def __getattr__(self, name: str) -> Any:
        # Only reached when normal lookup fails
        if name.startswith("_"):
            raise AttributeError(name)
        return self.get(name)

    def __setattr__(self, name: str, value: Any):
        if name.startswith("_") or hasattr(type(self), name):
            object.__setattr__(self, name, value)
        else:
            self.set(name, value)

    def __delattr__(self, name: str):
        if name.startswith("_") or hasattr(type(self), name):
            object.__delattr__(self, name)
        else:
            self.unset(name)

    def __eq__(self, other: Any) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self._record_id == other._record_id

    def __hash__(self) -> int:
        return hash((type(self), self._record_id))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} _id={self._record_id}>"


R = TypeVar("R", bound=Record)


class RecordCursor(Generic[R]):
    """
    Lazy, single-pass iterator of records over an open store cursor.

    The store cursor is released when iteration is exhausted, on close(), when
    a `with` block exits, or when the iterator is garbage collected.
    """

    def __init__(self, finder: "Finder[R]", cursor: StoreCursor):
        self._finder = finder
        self._cursor = cursor

    @property
    def closed(self) -> bool:
        return self._cursor.closed

    def __iter__(self):
        return self

    def __next__(self) -> R:
        try:
            document = next(self._cursor)
        except StopIteration:
            self.close()
            raise
        return self._finder._bind(document["_id"])

    def close(self):
        self._cursor.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __del__(self):
        cursor = getattr(self, "_cursor", None)
        if cursor is not None:
            cursor.close()


class Finder(Generic[R]):
    """Looks up stored documents and returns records bound to them."""

    def __init__(self, collection: Collection, record_type: Type[R] = Record):  # type: ignore[assignment]
        self.collection = collection
        self.record_type = record_type

    def _bind(self, record_id: Any) -> R:
        return self.record_type(self.collection, _record_id=record_id)

    def find(self, record_id: Any) -> Optional[R]:
        """Returns the record for `record_id`, or None if no such document exists."""
        if self.collection.find_one({"_id": record_id}, {"fields": ["_id"]}) is None:
            return None
        return self._bind(record_id)

    @staticmethod
    def _split(conditions: Optional[Mapping[str, Any]]):
        # Records re-read their own fields, the finder only needs identifiers
        query_filter, options = split_options(conditions)
        options["fields"] = ["_id"]
        return query_filter, options

    def first(self, conditions: Optional[Mapping[str, Any]] = None) -> Optional[R]:
        query_filter, options = self._split(conditions)
        document = self.collection.find_one(query_filter, options)
        if document is None:
            return None
        return self.find(document["_id"])

    def all(self, conditions: Optional[Mapping[str, Any]] = None) -> RecordCursor[R]:
        """
        Returns every matching record as a lazy iterator. Option keys such as
        limit, skip and sort are taken out of `conditions` and passed to the
        store. Each call opens a new cursor.
        """
        query_filter, options = self._split(conditions)
        return RecordCursor(self, self.collection.find(query_filter, options))

    def count(self, conditions: Optional[Mapping[str, Any]] = None) -> int:
        query_filter, _ = split_options(conditions)
        return self.collection.count(query_filter)

    def create(self, **fields: Any) -> R:
        return self.record_type(self.collection, **fields)
