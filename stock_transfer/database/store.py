"""
Document store collaborator.

All persisted state lives in four collections of JSON documents. The store
guarantees atomic read-modify-write on a single document and nothing more:
there are no cross-document transactions. Services express every write as a
mutator function that receives a private copy of the current document and
returns the replacement (or None to leave it untouched).

Two implementations are provided: an in-memory store for tests and local
runs, and a SQL store on top of SQLAlchemy async sessions.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stock_transfer.core.exceptions import NotFound
from stock_transfer.core.logging import get_logger
from stock_transfer.database.models.document import DocumentRecord

logger = get_logger(__name__)

Document = dict[str, Any]
Mutator = Callable[[Document], Optional[Document]]


class Collection(str, Enum):
    """Document collections used by the service."""

    ORDERS = "orders"
    REMIT_AUDITS = "remit_audits"
    RECONCILIATION_DOCUMENTS = "reconciliation_documents"
    BACKORDER_QUEUES = "backorder_queues"


def _normalize_filter_value(value: Any) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


class DocumentStore(ABC):
    """Per-document atomic storage of JSON documents."""

    @abstractmethod
    async def get(self, collection: Collection, doc_id: str) -> Optional[Document]:
        """Return a copy of the document, or None if it does not exist."""

    @abstractmethod
    async def create(self, collection: Collection, doc_id: str, data: Document) -> bool:
        """
        Insert the document only if no document with that id exists.

        Returns:
            True if inserted, False if the id was already taken
        """

    @abstractmethod
    async def set(self, collection: Collection, doc_id: str, data: Document) -> None:
        """Create or fully replace the document."""

    @abstractmethod
    async def update(
        self, collection: Collection, doc_id: str, mutator: Mutator
    ) -> Document:
        """
        Atomically apply ``mutator`` to the current document.

        The mutator runs against a private copy while the document is held;
        exceptions it raises abort the update and propagate.

        Returns:
            The document as stored after the update

        Raises:
            NotFound: If the document does not exist
        """

    @abstractmethod
    async def query(self, collection: Collection, **filters: Any) -> list[Document]:
        """Return every document whose top-level fields equal ``filters``."""


class InMemoryDocumentStore(DocumentStore):
    """Process-local store; one lock serializes every write."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Document]] = {}
        self._lock = asyncio.Lock()

    def _collection(self, collection: Collection) -> dict[str, Document]:
        return self._collections.setdefault(Collection(collection).value, {})

    async def get(self, collection: Collection, doc_id: str) -> Optional[Document]:
        document = self._collection(collection).get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def create(self, collection: Collection, doc_id: str, data: Document) -> bool:
        async with self._lock:
            documents = self._collection(collection)
            if doc_id in documents:
                return False
            documents[doc_id] = copy.deepcopy(data)
            return True

    async def set(self, collection: Collection, doc_id: str, data: Document) -> None:
        async with self._lock:
            self._collection(collection)[doc_id] = copy.deepcopy(data)

    async def update(
        self, collection: Collection, doc_id: str, mutator: Mutator
    ) -> Document:
        async with self._lock:
            documents = self._collection(collection)
            if doc_id not in documents:
                raise NotFound(
                    f"Document {doc_id} not found in {Collection(collection).value}",
                    collection=Collection(collection).value,
                    document_id=doc_id,
                )
            result = mutator(copy.deepcopy(documents[doc_id]))
            if result is not None:
                documents[doc_id] = copy.deepcopy(result)
            return copy.deepcopy(documents[doc_id])

    async def query(self, collection: Collection, **filters: Any) -> list[Document]:
        expected = {k: _normalize_filter_value(v) for k, v in filters.items()}
        return [
            copy.deepcopy(document)
            for document in self._collection(collection).values()
            if all(
                field in document and _normalize_filter_value(document[field]) == value
                for field, value in expected.items()
            )
        ]


class SqlDocumentStore(DocumentStore):
    """
    Store backed by the ``documents`` table.

    Updates lock the row with SELECT ... FOR UPDATE inside a transaction, so
    concurrent mutators on the same document run one after the other.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _by_key(collection: Collection, doc_id: str):
        return select(DocumentRecord).where(
            DocumentRecord.collection == Collection(collection).value,
            DocumentRecord.id == doc_id,
        )

    async def get(self, collection: Collection, doc_id: str) -> Optional[Document]:
        async with self._session_factory() as session:
            result = await session.execute(self._by_key(collection, doc_id))
            record = result.scalar_one_or_none()
            return copy.deepcopy(record.data) if record is not None else None

    async def create(self, collection: Collection, doc_id: str, data: Document) -> bool:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        DocumentRecord(
                            collection=Collection(collection).value,
                            id=doc_id,
                            data=copy.deepcopy(data),
                            version=1,
                        )
                    )
        except IntegrityError:
            logger.debug(
                "Document already exists",
                collection=Collection(collection).value,
                document_id=doc_id,
            )
            return False
        return True

    async def set(self, collection: Collection, doc_id: str, data: Document) -> None:
        # Insert if absent, else a locked row update.
        if await self.create(collection, doc_id, data):
            return
        await self.update(collection, doc_id, lambda _current: copy.deepcopy(data))

    async def update(
        self, collection: Collection, doc_id: str, mutator: Mutator
    ) -> Document:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    self._by_key(collection, doc_id).with_for_update()
                )
                record = result.scalar_one_or_none()
                if record is None:
                    raise NotFound(
                        f"Document {doc_id} not found in {Collection(collection).value}",
                        collection=Collection(collection).value,
                        document_id=doc_id,
                    )
                updated = mutator(copy.deepcopy(record.data))
                if updated is None:
                    return copy.deepcopy(record.data)
                record.data = copy.deepcopy(updated)
                record.version += 1
            return updated

    async def query(self, collection: Collection, **filters: Any) -> list[Document]:
        stmt = select(DocumentRecord.data).where(
            DocumentRecord.collection == Collection(collection).value
        )
        for field, value in filters.items():
            stmt = stmt.where(
                DocumentRecord.data[field].as_string() == _normalize_filter_value(value)
            )
        stmt = stmt.order_by(DocumentRecord.created_at, DocumentRecord.id)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [copy.deepcopy(data) for data in result.scalars().all()]
