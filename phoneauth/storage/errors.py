from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by credential store backends."""


class ConstraintViolation(StorageError):
    """A unique or foreign-key constraint rejected the write.

    ``field`` names the offending column when the backend can tell which one
    it was, so the API layer can surface it in the error details.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = dict(detail or {})
        if field and "field" not in self.detail:
            self.detail["field"] = field


__all__ = ["StorageError", "ConstraintViolation"]
