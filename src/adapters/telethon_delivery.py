"""Telethon delivery adapter.

Formats a Markdown notification and sends it from a bot account signed in
through Telethon.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Union

from telethon import errors

from adapters.notification_formatting import format_notification
from core.config import NotificationConfig
from core.models import Device, DeviceNotification, Message, NotificationMatch

LOGGER = logging.getLogger(__name__)

# RPC errors after which the chat can never be written to again.
INVALID_PEER_ERRORS = (
    errors.UserIsBlockedError,
    errors.PeerIdInvalidError,
    errors.InputUserDeactivatedError,
    errors.ChatWriteForbiddenError,
)


def _peer(token: str) -> Union[int, str]:
    # Chat ids are numeric (negative for groups); anything else is a username.
    return int(token) if token.lstrip("-").isdigit() else token


class TelethonDelivery:
    """Delivery adapter that sends messages through a Telethon client."""

    def __init__(self, client, config: NotificationConfig, source_aliases: dict[str, str]) -> None:
        self._client = client
        self._config = config
        self._source_aliases = source_aliases

    async def deliver(
        self, match: NotificationMatch, message: Message, devices: list[Device]
    ) -> list[DeviceNotification]:
        text = format_notification(match, message, self._config, self._source_aliases, mode="markdown")
        outcomes = []
        for device in devices:
            outcomes.append(await self._send(device, text))
        return outcomes

    async def _send(self, device: Device, text: str) -> DeviceNotification:
        sent_at = datetime.now(timezone.utc)
        try:
            await self._client.send_message(_peer(device.token), text, parse_mode="Markdown")
        except INVALID_PEER_ERRORS as e:
            LOGGER.warning("Device %s can no longer be reached: %s", device.id[:8], e)
            return DeviceNotification(
                device_id=device.id,
                sent_at=sent_at,
                success=False,
                error=str(e),
                token_invalid=True,
                device_info=device.device_info,
            )
        except (errors.RPCError, ValueError) as e:
            # ValueError: Telethon could not resolve the peer from its cache.
            LOGGER.warning("Telethon send failed for device %s: %s", device.id[:8], e)
            return DeviceNotification(
                device_id=device.id,
                sent_at=sent_at,
                success=False,
                error=str(e),
                device_info=device.device_info,
            )

        return DeviceNotification(
            device_id=device.id,
            sent_at=sent_at,
            success=True,
            device_info=device.device_info,
        )
