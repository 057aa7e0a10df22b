"""Helpers for working with civicwatch message identifiers.

Message ids are 8-character base62 slugs used both as the storage key and
as the URL path segment (``/m/aB3xYz12``). 62**8 is roughly 218 trillion.
"""

from __future__ import annotations

import re
import secrets
from typing import Callable

SLUG_CHARS = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
SLUG_LENGTH = 8

_SLUG_RE = re.compile(rf"[0-9A-Za-z]{{{SLUG_LENGTH}}}")

SlugFactory = Callable[[], str]


def generate_slug() -> str:
    """Draw a random slug from the base62 alphabet."""

    return "".join(secrets.choice(SLUG_CHARS) for _ in range(SLUG_LENGTH))


def is_valid_slug(value: object) -> bool:
    """Format check only: length and character set, not uniqueness."""

    if not isinstance(value, str):
        return False
    return _SLUG_RE.fullmatch(value) is not None
