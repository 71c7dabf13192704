from __future__ import annotations

import asyncio
import re
import secrets
import string
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError as Argon2HashingError
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from eventauth.config import Settings
from eventauth.logging import get_logger
from eventauth.service.errors import HashingError, InvalidHashFormatError

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_COMMON_PASSWORDS = frozenset(
    {
        "password",
        "password1",
        "passw0rd",
        "12345678",
        "123456789",
        "qwerty123",
        "letmein",
        "welcome1",
        "admin123",
        "iloveyou",
    }
)


class PasswordService:
    """argon2id hashing with a configurable work factor.

    ``hash``/``verify``/``needs_rehash`` are CPU bound; the ``*_async``
    variants push them onto a worker thread so request handlers stay
    responsive.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._hasher = PasswordHasher(
            time_cost=settings.hash_time_cost,
            memory_cost=settings.hash_memory_cost,
            parallelism=settings.hash_parallelism,
            type=Type.ID,
        )

    @property
    def algo(self) -> str:
        return PASSWORD_ALGO

    def hash(self, password: str) -> str:
        try:
            return self._hasher.hash(password)
        except Argon2HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise HashingError("failed to hash password") from exc

    def verify(self, password: str, password_hash: str) -> bool:
        """Return True when ``password`` matches; False on mismatch.

        Raises :class:`InvalidHashFormatError` when the stored hash cannot be
        parsed, since that is a data problem rather than a wrong password.
        """
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except InvalidHash as exc:
            logger.error("password_hash_malformed", error=str(exc))
            raise InvalidHashFormatError("stored password hash is malformed") from exc
        except VerificationError:
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except (InvalidHash, ValueError):
            # unparsable hashes get replaced on the next successful login
            return True

    async def hash_async(self, password: str) -> str:
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(self, password: str, password_hash: str) -> bool:
        return await asyncio.to_thread(self.verify, password, password_hash)

    async def needs_rehash_async(self, password_hash: str) -> bool:
        return await asyncio.to_thread(self.needs_rehash, password_hash)


def validate_password_format(password: Optional[str]) -> List[str]:
    """Return human readable policy violations; empty means acceptable."""
    if not password:
        return ["Password is required"]
    errors: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must be at most {MAX_PASSWORD_LENGTH} characters long")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one digit")
    if "\x00" in password:
        errors.append("Password must not contain NUL characters")
    return errors


def check_password_strength(password: str) -> dict:
    """Score a password from 0 to 100 with suggestions for improving it."""
    score = 0
    feedback: List[str] = []

    length = len(password)
    if length >= 8:
        score += 20
    else:
        feedback.append("Use at least 8 characters")
    if length >= 12:
        score += 10
    if length >= 16:
        score += 10

    classes = [
        (r"[a-z]", "Add lowercase letters"),
        (r"[A-Z]", "Add uppercase letters"),
        (r"\d", "Add numbers"),
        (r"[^A-Za-z0-9]", "Add special characters"),
    ]
    for pattern, hint in classes:
        if re.search(pattern, password):
            score += 15
        else:
            feedback.append(hint)

    if re.search(r"(.)\1{2,}", password):
        score -= 10
        feedback.append("Avoid repeated characters")
    if password.lower() in _COMMON_PASSWORDS:
        score = min(score, 10)
        feedback.append("Avoid common passwords")

    score = max(0, min(100, score))
    if score >= 80:
        strength = "strong"
    elif score >= 50:
        strength = "medium"
    else:
        strength = "weak"
    return {"score": score, "strength": strength, "feedback": feedback}


def generate_secure_password(length: int = 16) -> str:
    """Random password that always satisfies :func:`validate_password_format`."""
    if length < MIN_PASSWORD_LENGTH:
        raise ValueError(f"length must be at least {MIN_PASSWORD_LENGTH}")
    symbols = "!@#$%^&*-_=+"
    alphabet = string.ascii_letters + string.digits + symbols
    required = [
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.digits),
        secrets.choice(symbols),
    ]
    rest = [secrets.choice(alphabet) for _ in range(length - len(required))]
    chars = required + rest
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)
