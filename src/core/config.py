"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class RetryConfig:
    """Bounded exponential backoff for transient storage failures."""

    attempts: int = 3
    base_delay: float = 0.5


@dataclass(frozen=True)
class IngestConfig:
    """Settings for turning source documents into messages."""

    precision: int = 6
    max_age_days: int = 90
    slug_attempts: int = 10
    retry: RetryConfig = field(default_factory=RetryConfig)


@dataclass(frozen=True)
class NotificationConfig:
    """Notification formatting settings consumed by delivery adapters."""

    app_url: str
    preview_chars: int = 100
