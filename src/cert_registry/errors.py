from __future__ import annotations

from typing import Any, Optional


class CertRegistryError(Exception):
    """Base class for errors raised by the compliance engine."""


class ValidationError(CertRegistryError):
    """A single row or record is invalid; skip it and keep going."""

    def __init__(self, message: str, *, field: Optional[str] = None, value: Any = None) -> None:
        super().__init__(message)
        self.field = field
        self.value = value


class ReferenceResolutionError(CertRegistryError):
    """A foreign key (position, certificate type) cannot be resolved or auto-created."""

    def __init__(self, message: str, *, collection: Optional[str] = None, key: Any = None) -> None:
        super().__init__(message)
        self.collection = collection
        self.key = key


class RepositoryError(CertRegistryError):
    """Underlying storage failed; fatal for the current operation."""


class DuplicateKeyError(RepositoryError):
    """A natural-key insert collided with an existing record."""

    def __init__(self, collection: str, natural_key: str) -> None:
        super().__init__(f"duplicate natural key in {collection}: {natural_key!r}")
        self.collection = collection
        self.natural_key = natural_key


class InvariantViolation(UserWarning):
    """Emitted (never raised) when a stored employee breaks the position invariants."""


__all__ = [
    "CertRegistryError",
    "ValidationError",
    "ReferenceResolutionError",
    "RepositoryError",
    "DuplicateKeyError",
    "InvariantViolation",
]
