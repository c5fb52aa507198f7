from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or reference check failed inside a store.

    Stores put the offending column in ``detail["field"]`` when they can tell
    (``email``, ``phone``, ``identity``, ``role``, ``slug``, ``tenant_id``).
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = ["ConstraintViolation"]
