from typing import Any


class MapperError(Exception):
    """Base class for everything the mapper raises on its own."""
    pass


class UnsupportedValueKind(MapperError, TypeError):
    """A value cannot be represented in a stored document."""

    def __init__(self, value: Any, reason: str = ""):
        self.value = value
        message = f"Cannot store value of type {type(value).__name__}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class RecordNotFound(MapperError, LookupError):
    """The identifier bound to a record no longer resolves to a document."""

    def __init__(self, record_id: Any):
        self.record_id = record_id
        super().__init__(f"No document with _id {record_id!r}")


class StoreError(MapperError):
    pass


class StoreUnavailable(StoreError):
    """The document store could not be reached."""
    pass


class StoreOperationFailed(StoreError):
    """The document store rejected an operation."""
    pass
