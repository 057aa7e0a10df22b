"""Telegram Bot API delivery adapter.

Sends one notification per device through the Bot API ``sendMessage``
method. A device token is the Telegram chat id the bot writes to.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from datetime import datetime, timezone
from typing import Callable

from adapters.notification_formatting import format_notification
from core.config import NotificationConfig
from core.models import Device, DeviceNotification, Message, NotificationMatch

LOGGER = logging.getLogger(__name__)

# Bot API error descriptions that mean the chat will never accept messages.
INVALID_TOKEN_MARKERS = (
    "chat not found",
    "bot was blocked by the user",
    "user is deactivated",
    "bot was kicked",
)


def is_invalid_token_error(status: int, body: str) -> bool:
    if status not in (400, 403):
        return False
    lowered = body.lower()
    return any(marker in lowered for marker in INVALID_TOKEN_MARKERS)


class TelegramBotDelivery:
    """Delivery adapter that sends messages via the Telegram Bot API."""

    def __init__(
        self,
        bot_token: str,
        config: NotificationConfig,
        source_aliases: dict[str, str],
        timeout: float = 10,
        opener: Callable = urllib.request.urlopen,
    ) -> None:
        self._bot_token = bot_token
        self._config = config
        self._source_aliases = source_aliases
        self._timeout = timeout
        self._opener = opener

    def _endpoint(self) -> str:
        # The Bot API endpoint is deterministic and derived from the token.
        return f"https://api.telegram.org/bot{self._bot_token}/sendMessage"

    async def deliver(
        self, match: NotificationMatch, message: Message, devices: list[Device]
    ) -> list[DeviceNotification]:
        text = format_notification(match, message, self._config, self._source_aliases, mode="html")
        return [self._send(device, text) for device in devices]

    def _send(self, device: Device, text: str) -> DeviceNotification:
        payload = {
            "chat_id": device.token,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(self._endpoint(), data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        sent_at = datetime.now(timezone.utc)

        # A blocking HTTP call keeps the adapter dependency-free; batches are
        # small and sequential.
        try:
            with self._opener(request, timeout=self._timeout):
                pass
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            invalid = is_invalid_token_error(e.code, body)
            LOGGER.warning("Bot API error %s for device %s: %s", e.code, device.id[:8], body)
            return DeviceNotification(
                device_id=device.id,
                sent_at=sent_at,
                success=False,
                error=f"Bot API error {e.code}: {body}",
                token_invalid=invalid,
                device_info=device.device_info,
            )
        except urllib.error.URLError as e:
            LOGGER.warning("Bot API unreachable for device %s: %s", device.id[:8], e.reason)
            return DeviceNotification(
                device_id=device.id,
                sent_at=sent_at,
                success=False,
                error=f"Bot API unreachable: {e.reason}",
                device_info=device.device_info,
            )

        return DeviceNotification(
            device_id=device.id,
            sent_at=sent_at,
            success=True,
            device_info=device.device_info,
        )
