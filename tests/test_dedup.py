from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

from core.dedup import dedup_key, encode_document_id
from core.models import SourceDocument

BASE = SourceDocument(
    url="https://www.sofiyskavoda.bg/water-stops/123",
    date_published="2026-03-09T08:00:00Z",
    title="Спиране на водата",
    message="Ул. Шипка 1 без вода до 18:00",
    source_type="sofiyska-voda",
    crawled_at=datetime(2026, 3, 9, 9, 0, tzinfo=timezone.utc),
    locality="bg.sofia",
)


def test_natural_key_depends_on_url_and_date() -> None:
    assert dedup_key(BASE) == dedup_key(replace(BASE, title="edited title"))
    assert dedup_key(BASE) != dedup_key(replace(BASE, date_published="2026-03-10T08:00:00Z"))
    assert dedup_key(BASE) != dedup_key(replace(BASE, source_type="toplo-bg"))


def test_content_key_without_date_ignores_case_and_whitespace() -> None:
    first = replace(BASE, date_published=None)
    second = replace(
        BASE,
        url="https://www.sofiyskavoda.bg/water-stops/124",
        date_published=None,
        message="  ул. шипка 1   без вода до 18:00 ",
    )
    assert dedup_key(first) == dedup_key(second)


def test_encode_document_id_is_storage_safe() -> None:
    document_id = encode_document_id("https://example.org/a?b=c&d=e/f+g")
    assert not set("/+=") & set(document_id)
    assert encode_document_id(BASE.url) == encode_document_id(BASE.url)
