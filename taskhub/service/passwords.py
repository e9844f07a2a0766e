from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from taskhub.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
_SPECIAL_RE = re.compile(r"[^A-Za-z0-9]")


@dataclass
class PasswordStrength:
    valid: bool
    errors: List[str] = field(default_factory=list)


class PasswordHasher:
    """argon2id hashing plus the password strength policy."""

    def __init__(self, *, require_special: bool = True) -> None:
        self._hasher = Argon2Hasher(type=Type.ID)
        self.require_special = require_special

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: Optional[str]) -> bool:
        """Return whether ``password`` matches; never raises for bad input."""
        if not password_hash or password is None:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    def strength(
        self, password: str, *, require_special: Optional[bool] = None
    ) -> PasswordStrength:
        strict = self.require_special if require_special is None else require_special
        errors: List[str] = []
        if len(password) < MIN_PASSWORD_LENGTH:
            errors.append(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
        if len(password) > MAX_PASSWORD_LENGTH:
            errors.append(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
        if not any(ch.isupper() for ch in password):
            errors.append("password must contain an uppercase letter")
        if not any(ch.islower() for ch in password):
            errors.append("password must contain a lowercase letter")
        if not any(ch.isdigit() for ch in password):
            errors.append("password must contain a digit")
        if strict and not _SPECIAL_RE.search(password):
            errors.append("password must contain a special character")
        return PasswordStrength(valid=not errors, errors=errors)
