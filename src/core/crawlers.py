"""Explicit crawler registry keyed by source type."""

from __future__ import annotations

from typing import Iterable, Optional

from core.errors import ConfigurationError
from core.ports import CrawlerPort


class CrawlerRegistry:
    def __init__(self) -> None:
        self._crawlers: dict[str, CrawlerPort] = {}

    def register(self, source_type: str, crawler: CrawlerPort) -> None:
        if not source_type:
            raise ConfigurationError("Crawler source_type must be a non-empty string")
        if source_type in self._crawlers:
            raise ConfigurationError(f"Crawler already registered: {source_type}")
        self._crawlers[source_type] = crawler

    def names(self) -> list[str]:
        return sorted(self._crawlers)

    def get(self, source_type: str) -> CrawlerPort:
        try:
            return self._crawlers[source_type]
        except KeyError:
            raise ConfigurationError(
                f"Unknown source: {source_type} (available: {', '.join(self.names()) or 'none'})"
            ) from None

    def select(self, sources: Optional[Iterable[str]] = None) -> list[tuple[str, CrawlerPort]]:
        """Return (name, crawler) pairs in run order; all crawlers when ``sources`` is None."""

        names = self.names() if sources is None else list(sources)
        return [(name, self.get(name)) for name in names]

    def __contains__(self, source_type: object) -> bool:
        return source_type in self._crawlers

    def __len__(self) -> int:
        return len(self._crawlers)
