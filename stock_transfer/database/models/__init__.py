"""
Database models package initialization.

Models are imported here to ensure they are registered with the Base metadata
for Alembic auto-generation.
"""

from stock_transfer.database.base import Base, TimestampMixin
from stock_transfer.database.models.document import DocumentRecord

__all__ = [
    "Base",
    "TimestampMixin",
    "DocumentRecord",
]
