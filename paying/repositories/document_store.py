"""Document store - persistence for ledger documents.

Two collections are used, one per document family, keyed by ``_id``.
Filters are a small subset of the MongoDB query language:

- ``{"field": value}`` equality (``None`` matches unset fields)
- ``{"field": {"$ne": value}}``
- ``{"field": {"$lt" | "$lte" | "$gt" | "$gte": value}}``
- ``{"field": {"$in": [values]}}``

Updates replace the given fields of a single document atomically.
"""

import copy
import threading
from collections.abc import Iterator
from typing import Any, Optional, Protocol

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from paying.logging_config import get_logger

logger = get_logger(__name__)

Document = dict[str, Any]
Filter = dict[str, Any]
Sort = list[tuple[str, int]]


class DocumentStoreError(Exception):
    """Raised when the underlying store fails."""

    pass


class DuplicateDocumentError(DocumentStoreError):
    """Raised when inserting a document whose ``_id`` already exists."""

    pass


class DocumentStore(Protocol):
    """Storage port used by the ledger repository."""

    def insert_one(self, collection: str, document: Document) -> None:
        ...

    def find_one(self, collection: str, filter: Filter) -> Optional[Document]:
        ...

    def find(
        self, collection: str, filter: Filter, sort: Optional[Sort] = None
    ) -> Iterator[Document]:
        ...

    def update_one(self, collection: str, filter: Filter, changes: Document) -> bool:
        ...

    def clear(self) -> None:
        ...


def _compare(op: str, value: Any, operand: Any) -> bool:
    if op == "$ne":
        return value != operand
    if op == "$in":
        return value in operand
    if op == "$nin":
        return value not in operand

    # Range operators never match unset values
    if value is None or operand is None:
        return False
    if op == "$lt":
        return value < operand
    if op == "$lte":
        return value <= operand
    if op == "$gt":
        return value > operand
    if op == "$gte":
        return value >= operand
    raise DocumentStoreError(f"Unsupported query operator: {op}")


def matches(document: Document, filter: Filter) -> bool:
    """Check whether a document satisfies a filter."""
    for field, condition in filter.items():
        value = document.get(field)
        if isinstance(condition, dict) and condition and all(
            key.startswith("$") for key in condition
        ):
            for op, operand in condition.items():
                if not _compare(op, value, operand):
                    return False
        elif value != condition:
            return False
    return True


def _sort_key(field: str):
    # Unset values sort before everything else, as in MongoDB
    def key(document: Document) -> tuple[int, Any]:
        value = document.get(field)
        return (0, 0) if value is None else (1, value)

    return key


class InMemoryDocumentStore:
    """In-memory document store.

    Thread-safe storage backed by one dict per collection. Documents are
    copied on the way in and out so callers never share state with the store.
    """

    def __init__(self):
        self._collections: dict[str, dict[str, Document]] = {}
        self._lock = threading.RLock()

    def _collection(self, name: str) -> dict[str, Document]:
        return self._collections.setdefault(name, {})

    def insert_one(self, collection: str, document: Document) -> None:
        """Insert a document.

        Raises:
            DuplicateDocumentError: If a document with the same ``_id`` exists
        """
        document_id = document.get("_id")
        if document_id is None:
            raise DocumentStoreError("Document requires an _id")

        with self._lock:
            documents = self._collection(collection)
            if document_id in documents:
                raise DuplicateDocumentError(
                    f"Document '{document_id}' already exists in '{collection}'"
                )
            documents[document_id] = copy.deepcopy(document)

    def find_one(self, collection: str, filter: Filter) -> Optional[Document]:
        with self._lock:
            documents = self._collection(collection)

            # Fast path for lookups by id
            document_id = filter.get("_id")
            if isinstance(document_id, str):
                document = documents.get(document_id)
                if document is not None and matches(document, filter):
                    return copy.deepcopy(document)
                return None

            for document in documents.values():
                if matches(document, filter):
                    return copy.deepcopy(document)
            return None

    def find(
        self, collection: str, filter: Filter, sort: Optional[Sort] = None
    ) -> Iterator[Document]:
        """Find documents matching a filter.

        The result is a snapshot taken under the lock, so the caller may
        update documents while iterating.
        """
        with self._lock:
            found = [
                copy.deepcopy(document)
                for document in self._collection(collection).values()
                if matches(document, filter)
            ]

        # Stable sorts applied from the last key to the first
        for field, direction in reversed(sort or []):
            found.sort(key=_sort_key(field), reverse=direction == DESCENDING)

        return iter(found)

    def update_one(self, collection: str, filter: Filter, changes: Document) -> bool:
        """Set fields on the first document matching the filter.

        Returns:
            True if a document matched, False otherwise
        """
        if "_id" in changes:
            raise DocumentStoreError("Cannot change a document _id")

        with self._lock:
            for document in self._collection(collection).values():
                if matches(document, filter):
                    document.update(copy.deepcopy(changes))
                    return True
            return False

    def count(self, collection: str, filter: Optional[Filter] = None) -> int:
        with self._lock:
            return sum(
                1
                for document in self._collection(collection).values()
                if matches(document, filter or {})
            )

    def clear(self) -> None:
        """Clear all collections (useful for testing)."""
        with self._lock:
            self._collections.clear()


class MongoDocumentStore:
    """MongoDB-backed document store.

    Args:
        client: Connected ``MongoClient``
        database: Database name
    """

    def __init__(self, client: MongoClient, database: str):
        self._client = client
        self._db = client[database]
        self._database = database

    @classmethod
    def from_url(cls, url: str, database: str) -> "MongoDocumentStore":
        """Connect to MongoDB and verify the connection.

        Raises:
            DocumentStoreError: If the server cannot be reached
        """
        try:
            client = MongoClient(url)
            client.admin.command("ping")
        except PyMongoError as e:
            raise DocumentStoreError(f"Failed to connect to MongoDB: {e}") from e

        logger.info("mongodb_connected", database=database)
        return cls(client, database)

    def insert_one(self, collection: str, document: Document) -> None:
        try:
            self._db[collection].insert_one(dict(document))
        except DuplicateKeyError as e:
            raise DuplicateDocumentError(
                f"Document '{document.get('_id')}' already exists in '{collection}'"
            ) from e
        except PyMongoError as e:
            raise DocumentStoreError(f"MongoDB error: {e}") from e

    def find_one(self, collection: str, filter: Filter) -> Optional[Document]:
        try:
            return self._db[collection].find_one(filter)
        except PyMongoError as e:
            raise DocumentStoreError(f"MongoDB error: {e}") from e

    def find(
        self, collection: str, filter: Filter, sort: Optional[Sort] = None
    ) -> Iterator[Document]:
        try:
            cursor = self._db[collection].find(filter)
            if sort:
                cursor = cursor.sort(sort)
            yield from cursor
        except PyMongoError as e:
            raise DocumentStoreError(f"MongoDB error: {e}") from e

    def update_one(self, collection: str, filter: Filter, changes: Document) -> bool:
        try:
            result = self._db[collection].update_one(filter, {"$set": changes})
        except PyMongoError as e:
            raise DocumentStoreError(f"MongoDB error: {e}") from e
        return result.matched_count > 0

    def clear(self) -> None:
        try:
            for name in self._db.list_collection_names():
                self._db[name].delete_many({})
        except PyMongoError as e:
            raise DocumentStoreError(f"MongoDB error: {e}") from e

    def close(self) -> None:
        self._client.close()
        logger.info("mongodb_disconnected", database=self._database)


__all__ = [
    "ASCENDING",
    "DESCENDING",
    "DocumentStore",
    "DocumentStoreError",
    "DuplicateDocumentError",
    "InMemoryDocumentStore",
    "MongoDocumentStore",
    "matches",
]
