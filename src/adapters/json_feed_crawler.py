"""Generic crawler for sources that publish a JSON feed of notices.

The feed is either a list of items or an object with an ``items`` list. Each
item carries the SourceDocument fields by name; ``text`` is accepted as an
alias for ``message``. Crawlers are configured in config.json:

    "crawlers": [
        {"source_type": "sofiyska-voda", "url": "https://...", "locality": "bg.sofia"}
    ]
"""

from __future__ import annotations

import json
import logging
import urllib.request
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from adapters.document_codec import load_datetime
from core.crawlers import CrawlerRegistry
from core.errors import ConfigurationError
from core.models import SourceDocument

LOGGER = logging.getLogger(__name__)


class JsonFeedCrawler:
    """Fetches one JSON feed and turns its items into SourceDocuments."""

    def __init__(
        self,
        source_type: str,
        url: str,
        locality: Optional[str],
        timeout: float = 30,
        opener: Callable = urllib.request.urlopen,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._source_type = source_type
        self._url = url
        self._locality = locality
        self._timeout = timeout
        self._opener = opener
        self._clock = clock

    def _fetch(self) -> Any:
        with self._opener(self._url, timeout=self._timeout) as response:
            return json.loads(response.read().decode("utf-8"))

    def produce_documents(self) -> list[SourceDocument]:
        payload = self._fetch()
        items = payload.get("items", []) if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise ValueError(f"Feed {self._url} did not return a list of items")

        crawled_at = self._clock()
        documents = []
        for item in items:
            if not isinstance(item, dict) or not item.get("url"):
                LOGGER.warning("Skipping feed item without url from %s", self._source_type)
                continue
            documents.append(self._to_document(item, crawled_at))
        return documents

    def _to_document(self, item: dict, crawled_at: datetime) -> SourceDocument:
        return SourceDocument(
            url=str(item["url"]),
            date_published=item.get("date_published"),
            title=str(item.get("title") or ""),
            message=str(item.get("message") or item.get("text") or ""),
            source_type=self._source_type,
            crawled_at=crawled_at,
            locality=item.get("locality") or self._locality,
            markdown_text=item.get("markdown_text"),
            timespan_start=load_datetime(item.get("timespan_start")),
            timespan_end=load_datetime(item.get("timespan_end")),
            geo_json=item.get("geo_json"),
            categories=list(item.get("categories") or []),
            is_relevant=item.get("is_relevant"),
            deep_link_url=item.get("deep_link_url"),
            city_wide=bool(item.get("city_wide", False)),
            responsible_entity=item.get("responsible_entity"),
        )


def build_crawlers(
    entries: Iterable[dict],
    default_locality: Optional[str] = None,
    opener: Callable = urllib.request.urlopen,
) -> CrawlerRegistry:
    """Build a registry from config.json ``crawlers`` entries (disabled ones are skipped)."""

    registry = CrawlerRegistry()
    for entry in entries:
        if not entry.get("enabled", True):
            continue
        source_type = entry.get("source_type")
        url = entry.get("url")
        if not source_type or not url:
            raise ConfigurationError("Each crawler needs a source_type and a url")
        registry.register(
            source_type,
            JsonFeedCrawler(
                source_type=source_type,
                url=url,
                locality=entry.get("locality") or default_locality,
                timeout=float(entry.get("timeout", 30)),
                opener=opener,
            ),
        )
    return registry
