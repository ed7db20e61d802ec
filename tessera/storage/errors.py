from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base for failures raised by a storage backend."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """A uniqueness or foreign-key rule rejected the write.

    ``detail["field"]`` names the offending column when the backend knows it.
    """

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class StoreUnavailable(StoreError):
    """The backing store could not be reached within its timeouts."""


__all__ = ["StoreError", "ConstraintViolation", "StoreUnavailable"]
