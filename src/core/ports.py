"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for storage, delivery and crawler
adapters so that the core can be reused with different backends.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional, Protocol

from core.models import (
    Device,
    DeviceNotification,
    Interest,
    Message,
    NotificationMatch,
    SourceDocument,
    StoredSource,
)


class StoragePort(Protocol):
    """Storage operations required by the core pipeline.

    Create-if-absent operations must be atomic per key; they return True when
    the record was written and False when the key was already taken.
    """

    def open(self) -> None:
        ...

    def close(self) -> None:
        ...

    # Source documents

    def save_source_if_absent(self, document_id: str, document: SourceDocument) -> bool:
        ...

    def list_pending_sources(
        self, source_type: Optional[str] = None, limit: Optional[int] = None
    ) -> list[StoredSource]:
        ...

    def list_sources(self) -> list[StoredSource]:
        ...

    def flag_source(self, document_id: str, kind: str, reason: str) -> None:
        ...

    def mark_sources_ingested(self, document_ids: Iterable[str]) -> None:
        ...

    def list_ingested_source_ids(self) -> set[str]:
        ...

    def delete_sources(self, document_ids: Iterable[str]) -> int:
        ...

    # Messages

    def find_message_id_by_dedup_key(self, dedup_key: str) -> Optional[str]:
        ...

    def create_message_if_absent(self, message: Message) -> bool:
        ...

    def get_message(self, message_id: str) -> Optional[Message]:
        ...

    def update_message(self, message_id: str, fields: dict[str, Any]) -> None:
        ...

    def list_messages_pending_notification(self, limit: Optional[int] = None) -> list[Message]:
        ...

    def mark_messages_notified(self, message_ids: Iterable[str]) -> None:
        ...

    # Interests, matches and devices

    def list_interests(self, locality: str) -> list[Interest]:
        ...

    def create_match_if_absent(self, match: NotificationMatch) -> bool:
        ...

    def get_match(self, interest_id: str, message_id: str) -> Optional[NotificationMatch]:
        ...

    def update_match(self, match_id: str, fields: dict[str, Any]) -> None:
        ...

    def list_devices(self, user_id: str) -> list[Device]:
        ...

    def delete_device(self, device_id: str) -> None:
        ...

    def count(self, collection: str, **filters: Any) -> int:
        ...


class DeliveryPort(Protocol):
    """Delivery operations required by the notification matcher."""

    async def deliver(
        self, match: NotificationMatch, message: Message, devices: list[Device]
    ) -> list[DeviceNotification]:
        ...


class CrawlerPort(Protocol):
    """A registered source crawler."""

    def produce_documents(self) -> list[SourceDocument]:
        ...
