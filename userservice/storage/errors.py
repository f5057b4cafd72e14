from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageError(Exception):
    """A store call failed; ``operation`` names the call for error wrapping."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message


class RecordNotFound(StorageError):
    """An update expected to touch exactly one record touched none."""


class RowCountMismatch(StorageError):
    """An update expected to touch exactly one record touched several."""

    def __init__(self, operation: str, rowcount: int):
        super().__init__(operation, f"expected 1 row, affected {rowcount}")
        self.rowcount = rowcount


def expect_single_row(operation: str, rowcount: int, key: str) -> None:
    if rowcount == 0:
        raise RecordNotFound(operation, f"no record for {key}")
    if rowcount != 1:
        raise RowCountMismatch(operation, rowcount)


__all__ = [
    "ConstraintViolation",
    "StorageError",
    "RecordNotFound",
    "RowCountMismatch",
    "expect_single_row",
]
