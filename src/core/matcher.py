"""Notification matching (core domain).

Decides which watched zones (Interests) must hear about each message and
hands the result to the delivery port. The (interest, message) pair is the
unit of idempotency: a pair that already has a NotificationMatch is never
matched again. A recorded match whose delivery was never attempted (the run
stopped on a storage error in between) is delivered by the next run; a match
that was delivered or attempted is never delivered or overwritten again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from core.errors import TransientStorageError
from core.geometry import feature_centroids, min_distance_meters
from core.models import (
    Coordinates,
    DeviceNotification,
    Interest,
    Message,
    MessageSnapshot,
    NotificationMatch,
    match_key,
)
from core.ports import DeliveryPort, StoragePort

LOGGER = logging.getLogger(__name__)


@dataclass
class NotifySummary:
    messages: int = 0
    matched: int = 0
    already_matched: int = 0
    resumed: int = 0
    delivered: int = 0
    delivery_failures: int = 0
    unprocessed: int = 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _never_attempted(match: NotificationMatch) -> bool:
    return not match.notified and not match.device_notifications


def match_message_to_interest(
    message: Message, interest: Interest, centroids: list[Coordinates]
) -> Optional[float]:
    """Return the match distance in meters, or None when the interest does not match.

    City-wide messages match every interest at distance 0. Otherwise the
    distance is measured to the nearest feature centroid and the radius is
    inclusive.
    """

    if message.city_wide:
        return 0.0
    distance = min_distance_meters(interest.coordinates, centroids)
    if distance is None or distance > interest.radius:
        return None
    return distance


class NotificationMatcher:
    """Matches messages against interests and records one match per pair."""

    def __init__(
        self,
        storage: StoragePort,
        delivery: DeliveryPort,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._storage = storage
        self._delivery = delivery
        self._clock = clock

    async def match_and_notify(self, messages: Optional[Iterable[Message]] = None) -> NotifySummary:
        """Process candidate messages (default: all not yet processed for notifications)."""

        if messages is None:
            messages = self._storage.list_messages_pending_notification()
        messages = list(messages)
        LOGGER.info("Matching %s message(s) against interests", len(messages))

        summary = NotifySummary()
        interests_by_locality: dict[str, list[Interest]] = {}
        processed: list[str] = []

        for message in messages:
            try:
                await self._process_message(message, interests_by_locality, summary)
            except TransientStorageError:
                # Left unmarked so the next run picks the message up again.
                LOGGER.exception("Storage error while matching message %s", message.id)
                summary.unprocessed += 1
                continue
            summary.messages += 1
            processed.append(message.id)

        if processed:
            self._storage.mark_messages_notified(processed)

        LOGGER.info(
            "Notification summary: messages=%s matched=%s already_matched=%s resumed=%s "
            "delivered=%s failures=%s unprocessed=%s",
            summary.messages,
            summary.matched,
            summary.already_matched,
            summary.resumed,
            summary.delivered,
            summary.delivery_failures,
            summary.unprocessed,
        )
        return summary

    def _interests_for(self, locality: str, cache: dict[str, list[Interest]]) -> list[Interest]:
        if locality not in cache:
            interests = self._storage.list_interests(locality)
            # Deterministic processing order within a run.
            cache[locality] = sorted(interests, key=lambda i: (i.created_at, i.id))
        return cache[locality]

    async def _process_message(
        self,
        message: Message,
        interests_by_locality: dict[str, list[Interest]],
        summary: NotifySummary,
    ) -> None:
        centroids = [] if message.city_wide else feature_centroids(message.geo_json)
        if not message.city_wide and not centroids:
            LOGGER.info("Message %s has no usable geometry, nothing to match", message.id)
            return

        now = self._clock()
        snapshot = MessageSnapshot(
            text=message.text,
            created_at=message.created_at,
            source=message.source,
            source_url=message.source_url,
        )
        new_matches: dict[str, list[NotificationMatch]] = {}

        for interest in self._interests_for(message.locality, interests_by_locality):
            # Interests only hear about messages published after they were set up.
            if interest.created_at > message.created_at:
                continue
            distance = match_message_to_interest(message, interest, centroids)
            if distance is None:
                continue

            match = NotificationMatch(
                id=match_key(interest.id, message.id),
                user_id=interest.user_id,
                interest_id=interest.id,
                message_id=message.id,
                distance=distance,
                matched_at=now,
                message_snapshot=snapshot,
            )
            if not self._storage.create_match_if_absent(match):
                existing = self._storage.get_match(interest.id, message.id)
                if existing is not None and _never_attempted(existing):
                    summary.resumed += 1
                    LOGGER.info("Match %s recorded without a delivery attempt, resuming", match.id)
                    new_matches.setdefault(interest.user_id, []).append(existing)
                else:
                    summary.already_matched += 1
                    LOGGER.info("Match %s already recorded, skipping", match.id)
                continue

            summary.matched += 1
            LOGGER.info(
                "Match found: message=%s interest=%s distance=%sm",
                message.id,
                interest.id[:8],
                round(distance),
            )
            new_matches.setdefault(interest.user_id, []).append(match)

        # One notification per user per message, sent for the closest zone.
        for user_id, matches in new_matches.items():
            await self._deliver(user_id, message, matches, summary)

    async def _deliver(
        self,
        user_id: str,
        message: Message,
        matches: list[NotificationMatch],
        summary: NotifySummary,
    ) -> None:
        devices = self._storage.list_devices(user_id)
        if not devices:
            LOGGER.info("No devices registered for user %s", user_id[:8])
            return

        primary = min(matches, key=lambda m: m.distance)
        try:
            outcomes = await self._delivery.deliver(primary, message, devices)
        except Exception as exc:
            LOGGER.exception("Delivery failed for match %s", primary.id)
            sent_at = self._clock()
            outcomes = [
                DeviceNotification(
                    device_id=device.id,
                    sent_at=sent_at,
                    success=False,
                    error=str(exc),
                    device_info=device.device_info,
                )
                for device in devices
            ]

        for outcome in outcomes:
            if outcome.token_invalid:
                LOGGER.warning("Removing device %s with an invalid token", outcome.device_id[:8])
                self._storage.delete_device(outcome.device_id)

        fields: dict = {"device_notifications": outcomes}
        if any(outcome.success for outcome in outcomes):
            fields["notified"] = True
            fields["notified_at"] = self._clock()
            summary.delivered += 1
            LOGGER.info(
                "Notification sent: user=%s message=%s devices=%s/%s",
                user_id[:8],
                message.id,
                sum(1 for o in outcomes if o.success),
                len(outcomes),
            )
        else:
            summary.delivery_failures += 1
            LOGGER.error("Failed to deliver to any device: user=%s message=%s", user_id[:8], message.id)

        for match in matches:
            self._storage.update_match(match.id, fields)
