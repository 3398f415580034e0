"""Collection capability consumed by the paginator and ranker.

``Collection`` is the minimal interface both components need. The in-memory
implementation backs tests and local development; ``adoptipet.db`` provides
the Postgres implementation.
"""

from __future__ import annotations

import copy
import logging
import uuid
from logging import Logger
from typing import Any, Iterable, Optional, Protocol

from .query import matches, project, run_pipeline, sort_documents

Document = dict[str, Any]

logger = logging.getLogger(__name__)


class Collection(Protocol):
    name: str

    def count(self, query: Optional[dict[str, Any]] = None) -> int: ...

    def find(
        self,
        query: Optional[dict[str, Any]] = None,
        projection: Optional[dict[str, Any]] = None,
        sort: Any = None,
        skip: int = 0,
        limit: int = 0,
    ) -> list[Document]: ...

    def aggregate(self, pipeline: list[dict[str, Any]]) -> list[Document]: ...

    def insert_many(self, documents: Iterable[Document]) -> int: ...


def new_document_id() -> str:
    return uuid.uuid4().hex


class MemoryDatabase:
    """Registry of named in-memory collections sharing one ``$lookup`` namespace."""

    def __init__(self) -> None:
        self._collections: dict[str, MemoryCollection] = {}

    def collection(self, name: str) -> "MemoryCollection":
        if name not in self._collections:
            self._collections[name] = MemoryCollection(name, database=self)
        return self._collections[name]

    def documents(self, name: str) -> list[Document]:
        """Return the stored documents of ``name`` (empty if never created)."""
        existing = self._collections.get(name)
        return existing.documents if existing else []


class MemoryCollection:
    """Documents held in a list, queried with ``adoptipet.query``.

    Insertion order is the natural order returned by ``find`` without a sort.
    """

    def __init__(
        self,
        name: str,
        documents: Optional[Iterable[Document]] = None,
        database: Optional[MemoryDatabase] = None,
    ) -> None:
        self.name = name
        self.database = database
        self.documents: list[Document] = []
        if documents:
            self.insert_many(documents)

    def count(self, query: Optional[dict[str, Any]] = None) -> int:
        return sum(1 for doc in self.documents if matches(doc, query))

    def find(
        self,
        query: Optional[dict[str, Any]] = None,
        projection: Optional[dict[str, Any]] = None,
        sort: Any = None,
        skip: int = 0,
        limit: int = 0,
    ) -> list[Document]:
        """Return matching documents after sort, skip and limit.

        Args:
            query: Filter document; ``None`` matches everything.
            projection: Inclusion or exclusion projection.
            sort: Mapping or list of ``(field, 1|-1)`` pairs.
            skip: Number of leading matches to drop.
            limit: Maximum number of documents; ``0`` means no limit.

        Returns:
            Copies of the matching documents.
        """
        if skip < 0:
            raise ValueError("skip must be non-negative")
        found = [doc for doc in self.documents if matches(doc, query)]
        found = sort_documents(found, sort)
        found = found[skip:]
        if limit:
            found = found[:limit]
        return [project(doc, projection) for doc in found]

    def find_one(self, query: Optional[dict[str, Any]] = None) -> Optional[Document]:
        found = self.find(query, limit=1)
        return found[0] if found else None

    def aggregate(self, pipeline: list[dict[str, Any]]) -> list[Document]:
        return run_pipeline(self.documents, pipeline, resolve=self._resolve)

    def insert_many(
        self, documents: Iterable[Document], logger: Logger | None = None
    ) -> int:
        inserted = 0
        for doc in documents:
            stored = copy.deepcopy(dict(doc))
            stored.setdefault("_id", new_document_id())
            self.documents.append(stored)
            inserted += 1
        if logger:
            logger.info(f"Inserted {inserted} documents into {self.name}.")
        return inserted

    def _resolve(self, name: str, foreign_field: str, keys: list[Any]) -> list[Document]:
        if name == self.name:
            source = self.documents
        elif self.database is None:
            logger.warning(f"$lookup into {name} from detached collection {self.name}.")
            return []
        else:
            source = self.database.documents(name)
        return [doc for doc in source if matches(doc, {foreign_field: {"$in": keys}})]
