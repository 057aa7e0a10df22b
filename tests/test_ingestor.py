from __future__ import annotations

import itertools
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

import pytest

from core.config import IngestConfig, RetryConfig
from core.dedup import encode_document_id
from core.errors import SlugCollisionError
from core.ingestor import ERROR, TOO_OLD, TRANSIENT, VALIDATION, SourceIngestor
from core.models import Message, SourceDocument, StoredSource

from fakes import FakeStorage

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _document(url: str = "https://www.sofiyskavoda.bg/water-stops/1", **overrides) -> SourceDocument:
    fields = dict(
        url=url,
        date_published="2026-03-09T08:00:00Z",
        title="Спиране на водата",
        message="Ул. Шипка 1 остава без вода до 18:00",
        source_type="sofiyska-voda",
        crawled_at=datetime(2026, 3, 9, 9, 0, tzinfo=timezone.utc),
        locality="bg.sofia",
        geo_json={
            "type": "FeatureCollection",
            "features": [
                {
                    "type": "Feature",
                    "geometry": {"type": "Point", "coordinates": [23.3219001, 42.6977001]},
                    "properties": {"address": "ул. Шипка 1"},
                },
                {
                    "type": "Feature",
                    "geometry": {"type": "Point", "coordinates": [23.3219004, 42.6977004]},
                    "properties": {"address": "ул. Шипка 1"},
                },
            ],
        },
    )
    fields.update(overrides)
    return SourceDocument(**fields)


def _stored(document: SourceDocument) -> StoredSource:
    return StoredSource(encode_document_id(document.url), document)


def _slugs(*values: str):
    iterator = iter(values)
    return lambda: next(iterator)


def _ingestor(
    storage: FakeStorage,
    config: Optional[IngestConfig] = None,
    slug_factory=None,
    sleeps: Optional[list] = None,
) -> SourceIngestor:
    counter = itertools.count()
    return SourceIngestor(
        storage=storage,
        config=config or IngestConfig(),
        slug_factory=slug_factory or (lambda: f"msg{next(counter):05d}"),
        clock=lambda: NOW,
        sleep=(sleeps.append if sleeps is not None else (lambda _: None)),
    )


def test_ingest_creates_normalized_message() -> None:
    storage = FakeStorage()
    document = _document(deep_link_url="https://www.sofiyskavoda.bg/#stop-1")
    stored = _stored(document)

    summary = _ingestor(storage).ingest([stored])

    assert summary.created == 1
    message = storage.messages[summary.message_ids[0]]
    assert message.source == "sofiyska-voda"
    assert message.locality == "bg.sofia"
    assert message.source_url == "https://www.sofiyskavoda.bg/#stop-1"
    assert message.source_document_id == stored.document_id
    assert message.finalized_at == NOW
    assert "water" in message.categories
    assert len(message.geo_json["features"]) == 1
    assert message.geo_json["features"][0]["geometry"]["coordinates"] == [23.3219, 42.6977]
    assert [a.original_text for a in message.addresses] == ["ул. Шипка 1"]
    assert message.pins[0].timespans[0].start == document.crawled_at
    assert stored.document_id in storage.ingested


def test_ingest_twice_is_idempotent() -> None:
    storage = FakeStorage()
    documents = [_stored(_document()), _stored(_document(url="https://www.sofiyskavoda.bg/water-stops/2"))]

    first = _ingestor(storage).ingest(documents)
    second = _ingestor(storage).ingest(documents)

    assert first.created == 2
    assert second.created == 0
    assert second.skipped == 2
    assert len(storage.messages) == 2


def test_duplicates_within_one_batch_are_skipped() -> None:
    storage = FakeStorage()
    first = _document(date_published=None)
    second = _document(url="https://www.sofiyskavoda.bg/water-stops/copy", date_published=None)

    summary = _ingestor(storage).ingest([_stored(first), _stored(second)])

    assert summary.created == 1
    assert summary.skipped == 1
    assert storage.ingested == {encode_document_id(first.url), encode_document_id(second.url)}


def test_invalid_document_is_flagged_and_siblings_continue() -> None:
    storage = FakeStorage()
    bad = _stored(_document(url="https://example.org/bad", title="  ", locality=None))
    good = _stored(_document())

    summary = _ingestor(storage).ingest([bad, good])

    assert summary.created == 1
    assert len(summary.failed) == 1
    failure = summary.failed[0]
    assert failure.kind == VALIDATION
    assert "title is empty" in failure.reason
    assert "locality is missing" in failure.reason
    assert storage.flags[bad.document_id][0] == VALIDATION
    assert bad.document_id not in storage.ingested


def test_old_documents_are_flagged_and_leave_the_pending_list() -> None:
    storage = FakeStorage()
    stored = _stored(_document(date_published="2025-01-01T00:00:00Z"))
    storage.sources[stored.document_id] = stored

    summary = _ingestor(storage).ingest_pending()

    assert summary.too_old == 1
    assert summary.created == 0
    assert storage.flags[stored.document_id][0] == TOO_OLD
    assert stored.document_id not in storage.ingested
    assert storage.list_pending_sources() == []


def test_numeric_publish_date_is_flagged_and_siblings_continue() -> None:
    storage = FakeStorage()
    bad = _stored(_document(url="https://example.org/numeric-date", date_published=1741500000))
    good = _stored(_document())

    summary = _ingestor(storage).ingest([bad, good])

    assert summary.created == 1
    assert [f.kind for f in summary.failed] == [VALIDATION]
    assert "date_published is not a string" in summary.failed[0].reason
    assert storage.flags[bad.document_id][0] == VALIDATION
    assert good.document_id in storage.ingested


def test_feature_properties_that_are_not_a_mapping_are_ignored() -> None:
    storage = FakeStorage()
    odd = _document(
        url="https://example.org/odd-properties",
        geo_json={
            "type": "FeatureCollection",
            "features": [
                {
                    "type": "Feature",
                    "geometry": {"type": "Point", "coordinates": [23.33, 42.69]},
                    "properties": "n/a",
                }
            ],
        },
    )

    summary = _ingestor(storage).ingest([_stored(odd), _stored(_document())])

    assert summary.created == 2
    assert not summary.failed
    message = storage.messages[summary.message_ids[0]]
    assert message.geo_json["features"][0]["properties"] == {}
    assert message.addresses == []


class _BrokenStorage(FakeStorage):
    """Fails with an unexpected error when creating the message for one source."""

    def __init__(self, broken_document_id: str) -> None:
        super().__init__()
        self.broken_document_id = broken_document_id

    def create_message_if_absent(self, message: Message) -> bool:
        if message.source_document_id == self.broken_document_id:
            raise RuntimeError("unexpected payload")
        return super().create_message_if_absent(message)


def test_unexpected_error_is_flagged_and_siblings_continue() -> None:
    bad = _stored(_document(url="https://example.org/broken"))
    good = _stored(_document())
    storage = _BrokenStorage(bad.document_id)
    storage.sources[bad.document_id] = bad
    storage.sources[good.document_id] = good

    summary = _ingestor(storage).ingest_pending()

    assert summary.created == 1
    assert [f.kind for f in summary.failed] == [ERROR]
    assert summary.failed[0].reason == "unexpected payload"
    assert storage.flags[bad.document_id] == (ERROR, "unexpected payload")
    assert good.document_id in storage.ingested
    assert storage.list_pending_sources() == []


def test_empty_deep_link_means_no_source_url() -> None:
    storage = FakeStorage()
    summary = _ingestor(storage).ingest([_stored(_document(deep_link_url=""))])

    assert storage.messages[summary.message_ids[0]].source_url is None


def test_plain_documents_are_accepted() -> None:
    storage = FakeStorage()
    document = _document()

    summary = _ingestor(storage).ingest([document])

    assert summary.created == 1
    assert encode_document_id(document.url) in storage.ingested


def test_slug_collision_draws_a_new_slug() -> None:
    storage = FakeStorage()
    taken = Message(
        id="AAAAAAAA",
        text="older",
        source="toplo-bg",
        locality="bg.sofia",
        created_at=NOW,
        dedup_key="other",
    )
    storage.messages[taken.id] = taken

    summary = _ingestor(storage, slug_factory=_slugs("AAAAAAAA", "BBBBBBBB")).ingest([_stored(_document())])

    assert summary.message_ids == ["BBBBBBBB"]
    assert storage.messages["AAAAAAAA"] == taken


def test_slug_space_exhaustion_is_fatal() -> None:
    storage = FakeStorage()
    storage.messages["AAAAAAAA"] = Message(
        id="AAAAAAAA",
        text="older",
        source="toplo-bg",
        locality="bg.sofia",
        created_at=NOW,
        dedup_key="other",
    )
    ingestor = _ingestor(
        storage,
        config=IngestConfig(slug_attempts=3),
        slug_factory=lambda: "AAAAAAAA",
    )

    with pytest.raises(SlugCollisionError):
        ingestor.ingest([_stored(_document())])


def test_transient_error_is_retried_with_backoff() -> None:
    storage = FakeStorage()
    storage.fail_create_message = 2
    sleeps: list[float] = []

    summary = _ingestor(storage, sleeps=sleeps).ingest([_stored(_document())])

    assert summary.created == 1
    assert sleeps == [0.5, 1.0]


def test_persistent_transient_error_leaves_document_pending() -> None:
    storage = FakeStorage()
    storage.fail_create_message = 10
    stored = _stored(_document())
    storage.sources[stored.document_id] = stored
    config = IngestConfig(retry=RetryConfig(attempts=2, base_delay=0))

    summary = _ingestor(storage, config=config).ingest_pending()

    assert summary.created == 0
    assert [f.kind for f in summary.failed] == [TRANSIENT]
    assert stored.document_id not in storage.ingested
    assert stored.document_id not in storage.flags
    assert storage.list_pending_sources() == [stored]


def test_dry_run_writes_nothing() -> None:
    storage = FakeStorage()
    stored = _stored(_document())
    storage.sources[stored.document_id] = stored

    summary = _ingestor(storage).ingest_pending(dry_run=True)

    assert summary.created == 1
    assert not storage.messages
    assert not storage.ingested


def test_ingest_pending_filters_by_source_type() -> None:
    storage = FakeStorage()
    water = _stored(_document())
    heating = _stored(replace(_document(url="https://toplo.bg/1"), source_type="toplo-bg"))
    storage.sources[water.document_id] = water
    storage.sources[heating.document_id] = heating

    summary = _ingestor(storage).ingest_pending(source_type="toplo-bg")

    assert summary.total == 1
    assert storage.ingested == {heating.document_id}
