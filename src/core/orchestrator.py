"""Batch pipeline orchestration: crawl, ingest, notify.

The run walks START -> RUN_CRAWLERS -> RUN_INGEST -> RUN_NOTIFY and ends in
one of DONE, FAILED_PARTIAL (some crawler failed) or FAILED_FATAL (ingest or
notify raised). Crawler failures are isolated; ingest and notify always run.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from core.crawlers import CrawlerRegistry
from core.dedup import encode_document_id
from core.ingestor import IngestSummary, SourceIngestor
from core.matcher import NotificationMatcher, NotifySummary
from core.ports import StoragePort

LOGGER = logging.getLogger(__name__)


class BatchStatus(enum.Enum):
    DONE = "done"
    FAILED_PARTIAL = "failed_partial"
    FAILED_FATAL = "failed_fatal"


EXIT_CODES = {
    BatchStatus.DONE: 0,
    BatchStatus.FAILED_PARTIAL: 1,
    BatchStatus.FAILED_FATAL: 2,
}


@dataclass
class CrawlerResult:
    source: str
    ok: bool
    documents: int = 0
    saved: int = 0
    error: Optional[str] = None


@dataclass
class BatchReport:
    status: BatchStatus = BatchStatus.DONE
    crawlers: list[CrawlerResult] = field(default_factory=list)
    ingest: Optional[IngestSummary] = None
    notify: Optional[NotifySummary] = None
    error: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    @property
    def failed_sources(self) -> list[str]:
        return [result.source for result in self.crawlers if not result.ok]


class PipelineOrchestrator:
    """Runs registered crawlers, then ingestion, then notification matching."""

    def __init__(
        self,
        registry: CrawlerRegistry,
        storage: StoragePort,
        ingestor: Optional[SourceIngestor] = None,
        matcher: Optional[NotificationMatcher] = None,
    ) -> None:
        self._registry = registry
        self._storage = storage
        self._ingestor = ingestor
        self._matcher = matcher

    async def run(self, sources: Optional[Iterable[str]] = None) -> BatchReport:
        if self._ingestor is None or self._matcher is None:
            raise ValueError("A full pipeline run needs an ingestor and a matcher")
        selected = self._registry.select(sources)
        report = BatchReport()
        LOGGER.info("Pipeline starting with %s crawler(s)", len(selected))

        self._storage.open()
        try:
            for name, crawler in selected:
                report.crawlers.append(self._run_crawler(name, crawler))

            try:
                report.ingest = self._ingestor.ingest_pending()
            except Exception as exc:
                LOGGER.exception("Ingestion failed", extra={"stage": "ingest", "source": None})
                report.status = BatchStatus.FAILED_FATAL
                report.error = f"ingest: {exc}"
                return report

            try:
                report.notify = await self._matcher.match_and_notify()
            except Exception as exc:
                LOGGER.exception("Notification failed", extra={"stage": "notify", "source": None})
                report.status = BatchStatus.FAILED_FATAL
                report.error = f"notify: {exc}"
                return report
        finally:
            self._storage.close()

        if report.failed_sources:
            report.status = BatchStatus.FAILED_PARTIAL
            LOGGER.error("Pipeline finished with failed crawlers: %s", ", ".join(report.failed_sources))
        else:
            LOGGER.info("Pipeline finished successfully")
        return report

    def crawl(self, source: str) -> CrawlerResult:
        """Run a single crawler and store its documents, without ingest or notify."""

        crawler = self._registry.get(source)
        self._storage.open()
        try:
            return self._run_crawler(source, crawler)
        finally:
            self._storage.close()

    def _run_crawler(self, name: str, crawler) -> CrawlerResult:
        LOGGER.info("Running crawler %s", name)
        try:
            documents = crawler.produce_documents()
            saved = 0
            for document in documents:
                if self._storage.save_source_if_absent(encode_document_id(document.url), document):
                    saved += 1
        except Exception as exc:
            LOGGER.exception("Crawler %s failed", name, extra={"stage": "crawl", "source": name})
            return CrawlerResult(source=name, ok=False, error=str(exc))

        LOGGER.info("Crawler %s produced %s document(s), %s new", name, len(documents), saved)
        return CrawlerResult(source=name, ok=True, documents=len(documents), saved=saved)
