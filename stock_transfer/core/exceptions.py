"""
Domain errors shared by the transfer services.

Every error carries a human readable message plus structured context that
is logged alongside it and returned by the API error handlers.
"""

from typing import Any, Iterable, Optional


class TransferError(Exception):
    """Base exception for stock transfer operations."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class InvalidTransition(TransferError):
    """Raised when the target status is not a successor of the current one."""

    def __init__(
        self,
        message: str,
        current_status: Any,
        target_status: Any,
        allowed: Optional[Iterable[Any]] = None,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.current_status = current_status
        self.target_status = target_status
        self.allowed = sorted(str(getattr(s, "value", s)) for s in (allowed or ()))


class NotAuthorized(TransferError):
    """Raised when the actor's role or site does not match the action."""


class StaleWrite(TransferError):
    """
    Raised internally when a write would regress an order's status.

    Never surfaced to callers: the write is dropped and logged.
    """


class MissingPrerequisite(TransferError):
    """Raised when an operation needs data or state that does not exist yet."""


class NotFound(TransferError):
    """Raised when a referenced document does not exist."""

    def __init__(self, message: str, collection: str, document_id: str, **context: Any):
        super().__init__(message, collection=collection, document_id=document_id, **context)
        self.collection = collection
        self.document_id = document_id


class OrderValidationError(TransferError):
    """Raised when order input fails business validation."""
