"""Errors raised by the persisted message collection.

Every error carries the name of the collection operation that failed and
the underlying cause, so the caller can log it and decide whether to retry
or report the failure to the connected client.
"""

from typing import Optional


class CollectionError(Exception):
    def __init__(self, operation: str, cause: Optional[BaseException] = None, detail: str = "") -> None:
        self.operation = operation
        self.cause = cause
        self.detail = detail or (str(cause) if cause is not None else "")
        super().__init__(f"{operation} failed: {self.detail}" if self.detail else f"{operation} failed")


class StorageUnavailable(CollectionError):
    """The store could not be opened or its schema could not be ensured."""


class QueryFailed(CollectionError):
    pass


class NotFound(QueryFailed):
    """No row with the requested id."""

    def __init__(self, operation: str, message_id: int) -> None:
        self.message_id = message_id
        super().__init__(operation, detail=f"message {message_id} not found")


class InsertFailed(CollectionError):
    pass


class IdentifierRetrievalFailed(CollectionError):
    pass


class UpdateFailed(CollectionError):
    pass


class DeleteFailed(CollectionError):
    pass
