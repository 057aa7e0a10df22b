"""JSON codec for domain values stored as text columns.

SQLite has no native list, dict or timestamp types, so geometry, location
lists, device outcomes and whole source documents are kept as JSON text.
Datetimes are written as ISO-8601 strings in UTC.
"""

from __future__ import annotations

import json
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from core.models import (
    Address,
    Coordinates,
    DeviceNotification,
    MessageSnapshot,
    Pin,
    SourceDocument,
    StreetSection,
    Timespan,
)


def dump_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def load_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return dump_datetime(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _plain(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def dumps(value: Any) -> Optional[str]:
    """Encode a JSON-able value (dataclasses included); None stays None."""

    if value is None:
        return None
    return json.dumps(_plain(value), ensure_ascii=False, default=_json_default)


def loads(text: Optional[str]) -> Any:
    if text is None:
        return None
    return json.loads(text)


def _timespans(raw: Optional[list]) -> list[Timespan]:
    return [
        Timespan(start=load_datetime(item["start"]), end=load_datetime(item["end"]))
        for item in raw or []
    ]


def load_addresses(text: Optional[str]) -> list[Address]:
    return [
        Address(
            original_text=item["original_text"],
            coordinates=Coordinates(**item["coordinates"]),
        )
        for item in loads(text) or []
    ]


def load_pins(text: Optional[str]) -> list[Pin]:
    return [
        Pin(address=item["address"], timespans=_timespans(item.get("timespans")))
        for item in loads(text) or []
    ]


def load_streets(text: Optional[str]) -> list[StreetSection]:
    return [
        StreetSection(
            street=item["street"],
            start=item["start"],
            end=item["end"],
            timespans=_timespans(item.get("timespans")),
        )
        for item in loads(text) or []
    ]


def load_device_notifications(text: Optional[str]) -> list[DeviceNotification]:
    return [
        DeviceNotification(
            device_id=item["device_id"],
            sent_at=load_datetime(item["sent_at"]),
            success=bool(item["success"]),
            error=item.get("error"),
            token_invalid=bool(item.get("token_invalid", False)),
            device_info=item.get("device_info"),
        )
        for item in loads(text) or []
    ]


def load_snapshot(text: Optional[str]) -> Optional[MessageSnapshot]:
    raw = loads(text)
    if raw is None:
        return None
    return MessageSnapshot(
        text=raw["text"],
        created_at=load_datetime(raw["created_at"]),
        source=raw.get("source"),
        source_url=raw.get("source_url"),
    )


def load_source_document(text: str) -> SourceDocument:
    raw = loads(text)
    for key in ("crawled_at", "timespan_start", "timespan_end"):
        raw[key] = load_datetime(raw.get(key))
    raw["categories"] = list(raw.get("categories") or [])
    return SourceDocument(**raw)
