"""Error types shared by the core and adapters."""

from __future__ import annotations

from typing import Iterable


class CivicwatchError(Exception):
    """Base class for all civicwatch errors."""


class ConfigurationError(CivicwatchError):
    """Required startup configuration is missing or invalid."""

    def __init__(self, message: str, missing_keys: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.missing_keys = list(missing_keys)


class TransientStorageError(CivicwatchError):
    """A storage operation failed in a way that may succeed on retry."""


class SlugCollisionError(CivicwatchError):
    """No free message slug could be drawn within the allowed attempts."""


class DocumentValidationError(CivicwatchError):
    """A source document is missing required content."""
