"""Source document ingestion (core domain).

Turns crawled SourceDocuments into canonical Messages. Each document goes
through the same strict order:
1) Validate required content
2) Skip and flag documents older than the retention window
3) Deduplicate against existing messages (natural key or content hash)
4) Normalize geometry coordinates
5) Classify once per message
6) Create the message under a fresh slug (create-if-absent, retry on collision)
7) Mark the source document as ingested (batched at the end of the run)

A failure in one document never aborts its siblings: unexpected errors are
recorded and flagged like validation failures. Only a slug space exhaustion
is raised, because it signals a bug rather than bad input.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Union

from core.categories import DEFAULT_RULES, CategoryRule, classify
from core.config import IngestConfig
from core.coordinates import normalize_geojson
from core.dedup import dedup_key, encode_document_id
from core.errors import DocumentValidationError, SlugCollisionError, TransientStorageError
from core.message_ids import SlugFactory, generate_slug
from core.models import (
    Address,
    Coordinates,
    Message,
    Pin,
    SourceDocument,
    StoredSource,
    StreetSection,
    Timespan,
)
from core.ports import StoragePort
from core.retry import call_with_retry

LOGGER = logging.getLogger(__name__)

VALIDATION = "validation"
TRANSIENT = "transient"
TOO_OLD = "too_old"
ERROR = "error"


@dataclass(frozen=True)
class FailedDocument:
    """A source document that could not be ingested, and why."""

    document_id: str
    url: str
    source_type: str
    kind: str
    reason: str


@dataclass
class IngestSummary:
    total: int = 0
    created: int = 0
    skipped: int = 0
    too_old: int = 0
    failed: list[FailedDocument] = field(default_factory=list)
    message_ids: list[str] = field(default_factory=list)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_published(value: object) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def validate_document(document: SourceDocument) -> None:
    """Raise DocumentValidationError listing every missing required field."""

    problems = []
    if not (document.title or "").strip():
        problems.append("title is empty")
    if not (document.message or "").strip() and not (document.markdown_text or "").strip():
        problems.append("message and markdown_text are both empty")
    if not (document.locality or "").strip():
        problems.append("locality is missing")
    if document.date_published is not None and not isinstance(document.date_published, str):
        problems.append("date_published is not a string")
    if problems:
        raise DocumentValidationError("; ".join(problems))


def resolve_source_url(document: SourceDocument) -> Optional[str]:
    """User-facing link: deep_link_url when given (empty means none), else url."""

    if document.deep_link_url is not None:
        return document.deep_link_url or None
    return document.url or None


def _feature_label(properties: dict) -> Optional[str]:
    for key in ("address", "name", "title"):
        value = properties.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_locations(
    geo_json: Optional[dict], timespan: Optional[Timespan]
) -> tuple[list[Address], list[Pin], list[StreetSection]]:
    """Denormalize point and street features into addresses, pins and streets."""

    addresses: list[Address] = []
    pins: list[Pin] = []
    streets: list[StreetSection] = []
    if not geo_json:
        return addresses, pins, streets

    timespans = [timespan] if timespan else []
    for feature in geo_json.get("features", []):
        geometry = feature["geometry"]
        properties = feature.get("properties") or {}
        if geometry["type"] == "Point":
            label = _feature_label(properties)
            if label is None:
                continue
            lng, lat = geometry["coordinates"]
            addresses.append(Address(original_text=label, coordinates=Coordinates(lat=lat, lng=lng)))
            pins.append(Pin(address=label, timespans=list(timespans)))
        elif geometry["type"] == "LineString":
            street = properties.get("street")
            if not street:
                continue
            streets.append(
                StreetSection(
                    street=str(street),
                    start=str(properties.get("from", "")),
                    end=str(properties.get("to", "")),
                    timespans=list(timespans),
                )
            )
    return addresses, pins, streets


class SourceIngestor:
    """Orchestrates validation, dedup, normalization, classification and persistence."""

    def __init__(
        self,
        storage: StoragePort,
        config: IngestConfig,
        rules: Iterable[CategoryRule] = DEFAULT_RULES,
        slug_factory: SlugFactory = generate_slug,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._storage = storage
        self._config = config
        self._rules = list(rules)
        self._slug_factory = slug_factory
        self._clock = clock
        self._sleep = sleep

    def ingest_pending(
        self,
        source_type: Optional[str] = None,
        limit: Optional[int] = None,
        dry_run: bool = False,
    ) -> IngestSummary:
        """Load non-ingested source documents from storage and ingest them."""

        sources = self._retry(
            lambda: self._storage.list_pending_sources(source_type=source_type, limit=limit),
            "listing pending sources",
        )
        LOGGER.info("Fetched %s pending source document(s)", len(sources))
        return self.ingest(sources, dry_run=dry_run)

    def ingest(
        self,
        documents: Iterable[Union[StoredSource, SourceDocument]],
        dry_run: bool = False,
    ) -> IngestSummary:
        """Ingest a batch of source documents. Re-running on the same batch is a no-op."""

        summary = IngestSummary()
        now = self._clock()
        cutoff = now.replace(hour=0, minute=0, second=0, microsecond=0) - timedelta(
            days=self._config.max_age_days
        )
        seen_keys: set[str] = set()
        ingested_ids: list[str] = []

        for item in documents:
            stored = item if isinstance(item, StoredSource) else StoredSource(encode_document_id(item.url), item)
            summary.total += 1
            try:
                ingested = self._ingest_one(stored, summary, seen_keys, cutoff, now, dry_run)
            except SlugCollisionError:
                raise
            except Exception as exc:
                LOGGER.exception("Unexpected error while ingesting %s", stored.document.url)
                reason = str(exc) or type(exc).__name__
                self._record_failure(summary, stored, ERROR, reason)
                if not dry_run:
                    self._flag(stored, ERROR, reason)
                continue
            if ingested:
                ingested_ids.append(stored.document_id)

        if ingested_ids and not dry_run:
            self._mark_ingested(ingested_ids)

        self._log_summary(summary, dry_run)
        return summary

    def _ingest_one(
        self,
        stored: StoredSource,
        summary: IngestSummary,
        seen_keys: set[str],
        cutoff: datetime,
        now: datetime,
        dry_run: bool,
    ) -> bool:
        """Process one document. Returns True when its source should be marked ingested."""

        document = stored.document
        try:
            validate_document(document)
        except DocumentValidationError as exc:
            self._record_failure(summary, stored, VALIDATION, str(exc))
            if not dry_run:
                self._flag(stored, VALIDATION, str(exc))
            return False

        published = _parse_published(document.date_published)
        if published is not None and published <= cutoff:
            summary.too_old += 1
            if not dry_run:
                self._flag(stored, TOO_OLD, f"published {published.date().isoformat()}")
            return False

        key = dedup_key(document)
        try:
            existing = key in seen_keys or self._retry(
                lambda: self._storage.find_message_id_by_dedup_key(key) is not None,
                f"dedup lookup for {document.url}",
            )
        except TransientStorageError as exc:
            self._record_failure(summary, stored, TRANSIENT, str(exc))
            return False

        if existing:
            LOGGER.info("Dedup skip for %s (%s)", document.source_type, document.url)
            summary.skipped += 1
            return True

        if dry_run:
            LOGGER.info("[dry-run] Would ingest %s", document.title)
            seen_keys.add(key)
            summary.created += 1
            return False

        try:
            message = self._create_message(stored, key, now)
        except TransientStorageError as exc:
            self._record_failure(summary, stored, TRANSIENT, str(exc))
            return False

        seen_keys.add(key)
        LOGGER.info(
            "Message %s created from %s (%s)",
            message.id,
            document.source_type,
            ", ".join(message.categories),
        )
        summary.created += 1
        summary.message_ids.append(message.id)
        return True

    def build_message(self, stored: StoredSource, key: str, now: datetime) -> Message:
        """Build the canonical message for a validated source document (id left empty)."""

        document = stored.document
        text = (document.message or "").strip() or (document.markdown_text or "").strip()

        geo_json = None
        if document.geo_json is not None:
            geo_json, stats = normalize_geojson(document.geo_json, self._config.precision)
            if stats.duplicate_points:
                LOGGER.info(
                    "Collapsed %s duplicate point(s) in %s", stats.duplicate_points, document.url
                )

        # Classification runs once per message; every feature shares it.
        classification = classify(f"{document.title}\n{text}", document.categories, self._rules)

        start = document.timespan_start or document.crawled_at
        end = document.timespan_end or document.crawled_at
        timespan = Timespan(start=start, end=end) if start and end else None
        addresses, pins, streets = extract_locations(geo_json, timespan)

        return Message(
            id="",
            text=text,
            source=document.source_type,
            locality=document.locality or "",
            created_at=now,
            dedup_key=key,
            markdown_text=document.markdown_text,
            geo_json=geo_json,
            addresses=addresses,
            pins=pins,
            streets=streets,
            categories=classification.categories,
            responsible_entity=document.responsible_entity,
            source_url=resolve_source_url(document),
            source_document_id=stored.document_id,
            city_wide=document.city_wide,
            is_relevant=document.is_relevant,
            crawled_at=document.crawled_at,
            finalized_at=now,
            timespan_start=start,
            timespan_end=end,
        )

    def _create_message(self, stored: StoredSource, key: str, now: datetime) -> Message:
        template = self.build_message(stored, key, now)
        for _ in range(self._config.slug_attempts):
            message = replace(template, id=self._slug_factory())
            created = self._retry(
                lambda: self._storage.create_message_if_absent(message),
                f"creating message {message.id}",
            )
            if created:
                return message
            LOGGER.warning("Slug collision on %s, drawing a new one", message.id)
        raise SlugCollisionError(
            f"No free message slug after {self._config.slug_attempts} attempts"
        )

    def _retry(self, operation, description: str):
        return call_with_retry(operation, self._config.retry, description, sleep=self._sleep)

    def _record_failure(
        self, summary: IngestSummary, stored: StoredSource, kind: str, reason: str
    ) -> None:
        document = stored.document
        summary.failed.append(
            FailedDocument(
                document_id=stored.document_id,
                url=document.url,
                source_type=document.source_type,
                kind=kind,
                reason=reason,
            )
        )
        LOGGER.warning("Failed to ingest %s (%s): %s", document.url, kind, reason)

    def _flag(self, stored: StoredSource, kind: str, reason: str) -> None:
        try:
            self._retry(
                lambda: self._storage.flag_source(stored.document_id, kind, reason),
                f"flagging source {stored.document_id}",
            )
        except TransientStorageError:
            LOGGER.exception("Could not flag source %s", stored.document_id)

    def _mark_ingested(self, document_ids: list[str]) -> None:
        # A failure here is recoverable: the next run finds the messages by
        # dedup key and marks the sources again.
        try:
            self._retry(
                lambda: self._storage.mark_sources_ingested(document_ids),
                "marking sources ingested",
            )
        except TransientStorageError:
            LOGGER.exception("Could not mark %s source(s) as ingested", len(document_ids))

    def _log_summary(self, summary: IngestSummary, dry_run: bool) -> None:
        LOGGER.info(
            "Ingestion summary: total=%s created=%s skipped=%s too_old=%s failed=%s dry_run=%s",
            summary.total,
            summary.created,
            summary.skipped,
            summary.too_old,
            len(summary.failed),
            dry_run,
        )
        for failure in summary.failed:
            LOGGER.error(
                "Ingestion error for %s [%s]: %s", failure.url, failure.kind, failure.reason
            )
