from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SchemaMissing(RuntimeError):
    """Raised when the database lacks tables the store depends on."""

    def __init__(self, missing: list[str]):
        super().__init__(
            "database schema incomplete; missing tables: " + ", ".join(sorted(missing))
        )
        self.missing = missing


__all__ = ["ConstraintViolation", "SchemaMissing"]
