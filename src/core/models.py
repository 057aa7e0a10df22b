"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any storage- or transport-specific types. Geometry is kept as
plain GeoJSON dicts; encoding them for a store is an adapter concern.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

UNCATEGORIZED = "uncategorized"


@dataclass(frozen=True)
class Coordinates:
    """A WGS84 point in lat/lng order (GeoJSON stores lng/lat)."""

    lat: float
    lng: float


@dataclass(frozen=True)
class Timespan:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class Address:
    original_text: str
    coordinates: Coordinates


@dataclass(frozen=True)
class Pin:
    address: str
    timespans: list[Timespan] = field(default_factory=list)


@dataclass(frozen=True)
class StreetSection:
    street: str
    start: str
    end: str
    timespans: list[Timespan] = field(default_factory=list)


@dataclass(frozen=True)
class SourceDocument:
    """One crawl result, as written by a crawler."""

    url: str
    date_published: Optional[str]
    title: str
    message: str
    source_type: str
    crawled_at: datetime
    locality: Optional[str]
    markdown_text: Optional[str] = None
    timespan_start: Optional[datetime] = None
    timespan_end: Optional[datetime] = None
    geo_json: Optional[dict[str, Any]] = None
    categories: list[str] = field(default_factory=list)
    is_relevant: Optional[bool] = None
    deep_link_url: Optional[str] = None
    city_wide: bool = False
    responsible_entity: Optional[str] = None


@dataclass(frozen=True)
class StoredSource:
    """A SourceDocument together with its storage key."""

    document_id: str
    document: SourceDocument


@dataclass(frozen=True)
class Message:
    """Canonical, user-facing civic notice."""

    id: str
    text: str
    source: str
    locality: str
    created_at: datetime
    dedup_key: str
    markdown_text: Optional[str] = None
    geo_json: Optional[dict[str, Any]] = None
    addresses: list[Address] = field(default_factory=list)
    pins: list[Pin] = field(default_factory=list)
    streets: list[StreetSection] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    responsible_entity: Optional[str] = None
    source_url: Optional[str] = None
    source_document_id: Optional[str] = None
    city_wide: bool = False
    is_relevant: Optional[bool] = None
    crawled_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    timespan_start: Optional[datetime] = None
    timespan_end: Optional[datetime] = None
    notifications_sent: bool = False
    notifications_sent_at: Optional[datetime] = None


@dataclass(frozen=True)
class Interest:
    """A user's watched zone: a center point and a radius in meters."""

    id: str
    user_id: str
    coordinates: Coordinates
    radius: float
    locality: str
    created_at: datetime
    label: Optional[str] = None
    color: Optional[str] = None


@dataclass(frozen=True)
class Device:
    """A delivery target registered by a user (a Telegram chat id)."""

    id: str
    user_id: str
    token: str
    created_at: datetime
    device_info: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class DeviceNotification:
    """Outcome of one delivery attempt to one device."""

    device_id: str
    sent_at: datetime
    success: bool
    error: Optional[str] = None
    token_invalid: bool = False
    device_info: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class MessageSnapshot:
    text: str
    created_at: datetime
    source: Optional[str] = None
    source_url: Optional[str] = None


@dataclass(frozen=True)
class NotificationMatch:
    """Record that one Interest must be (or was) notified about one Message."""

    id: str
    user_id: str
    interest_id: str
    message_id: str
    distance: float
    matched_at: datetime
    notified: bool = False
    notified_at: Optional[datetime] = None
    device_notifications: list[DeviceNotification] = field(default_factory=list)
    message_snapshot: Optional[MessageSnapshot] = None


def match_key(interest_id: str, message_id: str) -> str:
    """Return the storage key for the (interest, message) pair."""

    return f"{interest_id}:{message_id}"
