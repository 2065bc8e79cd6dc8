from __future__ import annotations

from typing import Any, Dict, List, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreError(Exception):
    """Backend failure while talking to the key-value store."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreTimeoutError(StoreError):
    """A single backend call exceeded its deadline. Not retried."""


class FanOutError(StoreError):
    """One logical write or delete left some index keys unwritten."""

    def __init__(self, record_type: str, failed_keys: List[str], errors: List[BaseException]):
        super().__init__(
            f"fan-out {record_type} failed for {len(failed_keys)} key(s)",
            detail={"record_type": record_type, "failed_keys": failed_keys},
        )
        self.record_type = record_type
        self.failed_keys = failed_keys
        self.errors = errors


class RecordCorruptedError(StoreError):
    """Stored JSON did not validate against the record model."""


class InvalidKeyError(ValueError):
    """A value cannot be used as a key component: empty or containing the separator."""

    def __init__(self, value: str):
        super().__init__(f"invalid key component: {value!r}")
        self.value = value


__all__ = [
    "ConstraintViolation",
    "StoreError",
    "StoreTimeoutError",
    "FanOutError",
    "RecordCorruptedError",
    "InvalidKeyError",
]
