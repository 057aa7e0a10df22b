from __future__ import annotations

from datetime import datetime, timezone

import pytest

from adapters.sqlite_storage import SQLiteStorage
from core.config import RetryConfig
from core.errors import TransientStorageError
from core.models import (
    Address,
    Coordinates,
    Device,
    DeviceNotification,
    Interest,
    Message,
    MessageSnapshot,
    NotificationMatch,
    Pin,
    SourceDocument,
    StreetSection,
    Timespan,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def storage(tmp_path):
    store = SQLiteStorage(str(tmp_path / "civicwatch.db"), retry=RetryConfig(attempts=1, base_delay=0))
    store.open()
    yield store
    store.close()


def _message(message_id: str = "aB3xYz12", created_at: datetime = NOW) -> Message:
    span = Timespan(start=NOW, end=datetime(2026, 3, 10, 18, 0, tzinfo=timezone.utc))
    return Message(
        id=message_id,
        text="Спиране на водата",
        source="sofiyska-voda",
        locality="bg.sofia",
        created_at=created_at,
        dedup_key=f"key-{message_id}",
        markdown_text="**Спиране** на водата",
        geo_json={
            "type": "FeatureCollection",
            "features": [
                {
                    "type": "Feature",
                    "geometry": {"type": "Point", "coordinates": [23.3219, 42.6977]},
                    "properties": {"address": "ул. Шипка 1"},
                }
            ],
        },
        addresses=[Address("ул. Шипка 1", Coordinates(lat=42.6977, lng=23.3219))],
        pins=[Pin("ул. Шипка 1", [span])],
        streets=[StreetSection("ул. Шипка", "бул. Васил Левски", "ул. Оборище", [span])],
        categories=["water"],
        source_url="https://www.sofiyskavoda.bg/water-stops/1",
        source_document_id="doc-1",
        is_relevant=True,
        crawled_at=NOW,
        finalized_at=NOW,
        timespan_start=span.start,
        timespan_end=span.end,
    )


def _source(url: str, source_type: str = "sofiyska-voda") -> SourceDocument:
    return SourceDocument(
        url=url,
        date_published="2026-03-09T08:00:00Z",
        title="Спиране на водата",
        message="Без вода",
        source_type=source_type,
        crawled_at=NOW,
        locality="bg.sofia",
        geo_json={"type": "FeatureCollection", "features": []},
        categories=["water"],
        city_wide=True,
    )


def test_message_round_trip(storage) -> None:
    message = _message()

    assert storage.create_message_if_absent(message)
    assert not storage.create_message_if_absent(message)
    assert storage.get_message(message.id) == message
    assert storage.find_message_id_by_dedup_key(message.dedup_key) == message.id
    assert storage.find_message_id_by_dedup_key("missing") is None


def test_messages_pending_notification(storage) -> None:
    storage.create_message_if_absent(_message("bbbbbbbb", datetime(2026, 3, 10, 13, 0, tzinfo=timezone.utc)))
    storage.create_message_if_absent(_message("aaaaaaaa", datetime(2026, 3, 10, 11, 0, tzinfo=timezone.utc)))

    pending = storage.list_messages_pending_notification()
    assert [m.id for m in pending] == ["aaaaaaaa", "bbbbbbbb"]

    storage.mark_messages_notified(["aaaaaaaa"])

    assert [m.id for m in storage.list_messages_pending_notification()] == ["bbbbbbbb"]
    assert storage.get_message("aaaaaaaa").notifications_sent
    assert storage.count("messages", notifications_sent=True) == 1


def test_update_message(storage) -> None:
    storage.create_message_if_absent(_message())
    storage.update_message("aB3xYz12", {"categories": ["water", "heating"], "city_wide": True})

    updated = storage.get_message("aB3xYz12")
    assert updated.categories == ["water", "heating"]
    assert updated.city_wide

    with pytest.raises(ValueError):
        storage.update_message("aB3xYz12", {"id": "other"})


def test_source_lifecycle(storage) -> None:
    first = _source("https://example.org/1")
    second = _source("https://example.org/2", source_type="toplo-bg")
    third = _source("https://example.org/3")

    assert storage.save_source_if_absent("doc-1", first)
    assert not storage.save_source_if_absent("doc-1", first)
    storage.save_source_if_absent("doc-2", second)
    storage.save_source_if_absent("doc-3", third)

    pending = storage.list_pending_sources()
    assert [s.document_id for s in pending] == ["doc-1", "doc-2", "doc-3"]
    assert pending[0].document == first
    assert [s.document_id for s in storage.list_pending_sources(source_type="toplo-bg")] == ["doc-2"]
    assert len(storage.list_pending_sources(limit=1)) == 1

    storage.mark_sources_ingested(["doc-1"])
    storage.flag_source("doc-3", "validation", "title is empty")

    assert [s.document_id for s in storage.list_pending_sources()] == ["doc-2"]
    assert storage.list_ingested_source_ids() == {"doc-1"}
    assert storage.delete_sources(["doc-2", "doc-3", "missing"]) == 2
    assert [s.document_id for s in storage.list_sources()] == ["doc-1"]


def test_match_is_unique_per_pair(storage) -> None:
    match = NotificationMatch(
        id="zone-1:aB3xYz12",
        user_id="user-1",
        interest_id="zone-1",
        message_id="aB3xYz12",
        distance=111.2,
        matched_at=NOW,
        message_snapshot=MessageSnapshot(text="Спиране на водата", created_at=NOW, source="sofiyska-voda"),
    )

    assert storage.create_match_if_absent(match)
    assert not storage.create_match_if_absent(match)
    assert storage.count("notification_matches") == 1
    assert storage.get_match("zone-1", "aB3xYz12") == match

    outcome = DeviceNotification(device_id="dev-1", sent_at=NOW, success=True, device_info={"chat": "private"})
    storage.update_match(match.id, {"device_notifications": [outcome], "notified": True, "notified_at": NOW})

    stored = storage.get_match("zone-1", "aB3xYz12")
    assert stored.notified
    assert stored.notified_at == NOW
    assert stored.device_notifications == [outcome]
    assert storage.count("notification_matches", notified=True) == 1


def test_interests_and_devices(storage) -> None:
    storage.add_interest(
        Interest(
            id="zone-1",
            user_id="user-1",
            coordinates=Coordinates(lat=42.6977, lng=23.3219),
            radius=500,
            locality="bg.sofia",
            created_at=NOW,
            label="Home",
        )
    )
    storage.add_device(Device(id="dev-1", user_id="user-1", token="1001", created_at=NOW))

    interests = storage.list_interests("bg.sofia")
    assert [i.label for i in interests] == ["Home"]
    assert interests[0].coordinates == Coordinates(lat=42.6977, lng=23.3219)
    assert storage.list_interests("bg.plovdiv") == []

    assert [d.token for d in storage.list_devices("user-1")] == ["1001"]
    storage.delete_device("dev-1")
    assert storage.list_devices("user-1") == []


def test_operational_error_is_transient(storage) -> None:
    storage._connection().execute("DROP TABLE messages")

    with pytest.raises(TransientStorageError):
        storage.find_message_id_by_dedup_key("key")
    with pytest.raises(TransientStorageError):
        storage.mark_messages_notified(["aB3xYz12"])


def test_count_rejects_unknown_names(storage) -> None:
    with pytest.raises(ValueError):
        storage.count("users")
    with pytest.raises(ValueError):
        storage.count("messages", bogus=1)


def test_requires_open(tmp_path) -> None:
    closed = SQLiteStorage(str(tmp_path / "closed.db"))
    with pytest.raises(RuntimeError):
        closed.list_sources()
