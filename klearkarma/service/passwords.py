from __future__ import annotations

import hashlib
import hmac
import os
from typing import Dict, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from klearkarma.config import PasswordAlgo
from klearkarma.logging import get_logger

logger = get_logger(__name__)

PBKDF2_DEFAULT_ITERATIONS = 100_000
PBKDF2_MIN_SALT_BYTES = 16


class Pbkdf2Hasher:
    """PBKDF2-HMAC-SHA256 stored as ``iterations:saltHex:hashHex``.

    The iteration count travels with the hash, so records written under an
    older default stay verifiable after the default is raised.
    """

    algo = PasswordAlgo.PBKDF2_SHA256.value

    def __init__(
        self,
        iterations: int = PBKDF2_DEFAULT_ITERATIONS,
        *,
        salt_bytes: int = 32,
        key_bytes: int = 32,
    ) -> None:
        if iterations < PBKDF2_DEFAULT_ITERATIONS:
            raise ValueError(f"iterations must be >= {PBKDF2_DEFAULT_ITERATIONS}")
        if salt_bytes < PBKDF2_MIN_SALT_BYTES:
            raise ValueError(f"salt must be >= {PBKDF2_MIN_SALT_BYTES} bytes")
        self.iterations = iterations
        self.salt_bytes = salt_bytes
        self.key_bytes = key_bytes

    def hash(self, password: str) -> str:
        salt = os.urandom(self.salt_bytes)
        derived = hashlib.pbkdf2_hmac(
            "sha256", password.encode("utf-8"), salt, self.iterations, self.key_bytes
        )
        return f"{self.iterations}:{salt.hex()}:{derived.hex()}"

    @staticmethod
    def _parse(stored: str) -> Tuple[int, bytes, bytes]:
        iterations_raw, salt_hex, hash_hex = stored.split(":")
        iterations = int(iterations_raw)
        if iterations <= 0:
            raise ValueError("iterations must be positive")
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(hash_hex)
        if not salt or not expected:
            raise ValueError("empty salt or hash")
        return iterations, salt, expected

    def verify(self, password: str, stored: str) -> bool:
        """True only on an exact match; False for mismatch or any malformed input."""
        try:
            iterations, salt, expected = self._parse(stored)
            derived = hashlib.pbkdf2_hmac(
                "sha256", password.encode("utf-8"), salt, iterations, len(expected)
            )
        except (AttributeError, TypeError, ValueError, UnicodeEncodeError):
            return False
        return hmac.compare_digest(derived, expected)

    def needs_rehash(self, stored: str) -> bool:
        try:
            iterations, _, _ = self._parse(stored)
        except (AttributeError, TypeError, ValueError):
            return True
        return iterations < self.iterations


class Argon2Hasher:
    """argon2id via argon2-cffi, PHC string format."""

    algo = PasswordAlgo.ARGON2ID.value

    def __init__(self) -> None:
        self._hasher = PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, stored: str) -> bool:
        try:
            return self._hasher.verify(stored, password)
        except (InvalidHash, VerifyMismatchError, VerificationError, TypeError):
            return False

    def needs_rehash(self, stored: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored)
        except (InvalidHash, TypeError, ValueError):
            return True


class CredentialHasher:
    """Hash new passwords with the configured algorithm, verify by stored tag."""

    def __init__(
        self,
        algo: PasswordAlgo | str = PasswordAlgo.PBKDF2_SHA256,
        *,
        pbkdf2_iterations: int = PBKDF2_DEFAULT_ITERATIONS,
    ) -> None:
        self.algo = PasswordAlgo(algo).value
        self._hashers: Dict[str, Pbkdf2Hasher | Argon2Hasher] = {
            PasswordAlgo.PBKDF2_SHA256.value: Pbkdf2Hasher(pbkdf2_iterations),
            PasswordAlgo.ARGON2ID.value: Argon2Hasher(),
        }

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hashers[self.algo].hash(password), self.algo

    def verify(self, password: str, stored: str, algo: str) -> bool:
        hasher = self._hashers.get(algo)
        if hasher is None:
            logger.warning("password_algo_unknown", algo=algo)
            return False
        return hasher.verify(password, stored)

    def needs_rehash(self, stored: str, algo: str) -> bool:
        if algo != self.algo:
            return True
        return self._hashers[algo].needs_rehash(stored)


__all__ = ["Argon2Hasher", "CredentialHasher", "Pbkdf2Hasher"]
