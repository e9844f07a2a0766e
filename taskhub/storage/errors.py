from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness, FK or ownership invariant is violated.

    ``detail["constraint"]`` names the rule so services can translate it.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def constraint(self) -> Optional[str]:
        return self.detail.get("constraint")


LAST_OWNER = "last_owner"
EMAIL_UNIQUE = "email_unique"
FOREIGN_KEY = "foreign_key"


__all__ = ["ConstraintViolation", "LAST_OWNER", "EMAIL_UNIQUE", "FOREIGN_KEY"]
