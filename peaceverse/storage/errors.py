from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConstraintViolation(StorageError):
    """A write collided with a unique key (email, user id)."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.detail = dict(detail or {})


class StorageUnavailable(StorageError):
    """The user store or the session store could not be reached.

    Surfaces as a retryable 503; callers must not treat it as an auth failure.
    """

    def __init__(self, message: str, *, backend: str = "unknown") -> None:
        super().__init__(message)
        self.backend = backend
