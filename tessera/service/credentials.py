from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tessera.config import Settings
from tessera.logging import get_logger
from tessera.service.errors import WeakInputError

logger = get_logger(__name__)

ARGON2_ALGO = "argon2id"
BCRYPT_ALGO = "bcrypt"

SPECIAL_CHARACTERS = frozenset('!@#$%^&*(),.?":{}|<>')
COMMON_PATTERNS = ("password", "123456", "qwerty", "admin")


@dataclass
class PasswordStrength:
    is_valid: bool
    score: int
    errors: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)


class CredentialStore:
    """Password hashing, verification and strength policy.

    New hashes are always argon2id. bcrypt hashes from before the migration
    still verify, and ``needs_rehash`` reports them so callers can upgrade
    on the next successful login.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 1,
        hash_len: int = 32,
        bcrypt_rounds: int = 12,
        min_length: int = 8,
        require_uppercase: bool = True,
        require_lowercase: bool = True,
        require_digit: bool = True,
        require_special: bool = True,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_len,
            type=Type.ID,
        )
        self.bcrypt_rounds = bcrypt_rounds
        self.min_length = min_length
        self.require_uppercase = require_uppercase
        self.require_lowercase = require_lowercase
        self.require_digit = require_digit
        self.require_special = require_special
        # Verified against when the account does not exist, so both paths pay one hash
        self._dummy_hash = self._hasher.hash("tessera_timing_dummy")

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialStore":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            hash_len=settings.argon2_hash_len,
            bcrypt_rounds=settings.bcrypt_rounds,
            min_length=settings.password_min_length,
            require_uppercase=settings.password_require_uppercase,
            require_lowercase=settings.password_require_lowercase,
            require_digit=settings.password_require_digit,
            require_special=settings.password_require_special,
        )

    def hash(self, password: str) -> Tuple[str, str]:
        if not password:
            raise WeakInputError()
        return self._hasher.hash(password), ARGON2_ALGO

    def hash_legacy(self, password: str) -> Tuple[str, str]:
        """bcrypt hash, used only to seed accounts imported from older systems."""
        if not password:
            raise WeakInputError()
        digest = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=self.bcrypt_rounds))
        return digest.decode("utf-8"), BCRYPT_ALGO

    def verify(self, password: str, password_hash: str, algo: str) -> bool:
        if not password or not password_hash:
            return False
        if algo == ARGON2_ALGO:
            try:
                return self._hasher.verify(password_hash, password)
            except VerifyMismatchError:
                return False
            except (InvalidHash, VerificationError):
                logger.warning("password_hash_invalid", algo=algo)
                return False
        if algo == BCRYPT_ALGO:
            try:
                return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
            except ValueError:
                logger.warning("password_hash_invalid", algo=algo)
                return False
        logger.warning("password_algo_unsupported", algo=algo)
        return False

    def needs_rehash(self, password_hash: str, algo: str) -> bool:
        if algo != ARGON2_ALGO:
            return True
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    def dummy_verify(self, password: str) -> None:
        self.verify(password or "-", self._dummy_hash, ARGON2_ALGO)

    def validate_strength(self, password: str) -> PasswordStrength:
        password = password or ""
        errors: List[str] = []
        suggestions: List[str] = []
        score = 0

        if len(password) < self.min_length:
            errors.append(f"Password must be at least {self.min_length} characters long")
        elif len(password) >= 12:
            score += 2
        else:
            score += 1

        checks = (
            (
                any(c.isupper() for c in password),
                1,
                self.require_uppercase,
                "Password must contain an uppercase letter",
                "Add uppercase letters",
            ),
            (
                any(c.islower() for c in password),
                1,
                self.require_lowercase,
                "Password must contain a lowercase letter",
                "Add lowercase letters",
            ),
            (
                any(c.isdigit() for c in password),
                1,
                self.require_digit,
                "Password must contain a number",
                "Add numbers",
            ),
            (
                any(c in SPECIAL_CHARACTERS for c in password),
                2,
                self.require_special,
                "Password must contain a special character",
                "Add special characters",
            ),
        )
        for present, weight, required, error, suggestion in checks:
            if present:
                score += weight
                continue
            suggestions.append(suggestion)
            if required:
                errors.append(error)

        lowered = password.lower()
        if any(pattern in lowered for pattern in COMMON_PATTERNS):
            errors.append("Password contains common patterns")
            suggestions.append("Avoid common words and sequences")
            score = max(0, score - 2)

        return PasswordStrength(
            is_valid=not errors, score=score, errors=errors, suggestions=suggestions
        )
