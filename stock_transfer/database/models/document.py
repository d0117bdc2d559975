"""
Generic document table backing the SQL document store.

Each row holds one JSON document of a named collection. The composite
primary key (collection, id) makes insert-if-absent atomic, and the
version column counts committed writes to the document.
"""

from typing import Any

from sqlalchemy import JSON, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from stock_transfer.database.base import Base, TimestampMixin

DocumentJSON = JSON().with_variant(JSONB(), "postgresql")


class DocumentRecord(Base, TimestampMixin):
    """Persisted JSON document."""

    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="Logical collection name",
    )
    id: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
        comment="Document identifier, unique within the collection",
    )
    data: Mapped[dict[str, Any]] = mapped_column(
        DocumentJSON,
        nullable=False,
        comment="Document body",
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Number of committed writes",
    )

    __table_args__ = (
        Index("ix_documents_collection_updated_at", "collection", "updated_at"),
        {"comment": "JSON documents of the stock transfer collections"},
    )
