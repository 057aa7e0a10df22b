from __future__ import annotations

import asyncio
import io
import json
import urllib.error
from datetime import datetime, timezone

from telethon import errors

from adapters.telegram_bot_delivery import TelegramBotDelivery, is_invalid_token_error
from adapters.telethon_delivery import TelethonDelivery
from core.config import NotificationConfig
from core.models import Device, Message, NotificationMatch

CONFIG = NotificationConfig(app_url="https://civicwatch.example")
CREATED = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)

MESSAGE = Message(
    id="aB3xYz12",
    text="Спиране на водата",
    source="sofiyska-voda",
    locality="bg.sofia",
    created_at=CREATED,
    dedup_key="key",
    categories=["water"],
)
MATCH = NotificationMatch(
    id="zone-1:aB3xYz12",
    user_id="user-1",
    interest_id="zone-1",
    message_id="aB3xYz12",
    distance=120.0,
    matched_at=CREATED,
)


def _device(device_id: str, token: str) -> Device:
    return Device(id=device_id, user_id="user-1", token=token, created_at=CREATED)


class _Response:
    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None


class FakeOpener:
    """Answers Bot API requests by chat id: 'blocked' -> 403, 'down' -> URLError."""

    def __init__(self) -> None:
        self.payloads: list[dict] = []

    def __call__(self, request, timeout=None):
        payload = json.loads(request.data.decode("utf-8"))
        self.payloads.append(payload)
        if payload["chat_id"] == "blocked":
            body = b'{"ok":false,"error_code":403,"description":"Forbidden: bot was blocked by the user"}'
            raise urllib.error.HTTPError(request.full_url, 403, "Forbidden", {}, io.BytesIO(body))
        if payload["chat_id"] == "down":
            raise urllib.error.URLError("timed out")
        return _Response()


def test_bot_delivery_outcomes_per_device() -> None:
    opener = FakeOpener()
    delivery = TelegramBotDelivery("123:abc", CONFIG, {}, opener=opener)
    devices = [_device("dev-1", "1001"), _device("dev-2", "blocked"), _device("dev-3", "down")]

    outcomes = asyncio.run(delivery.deliver(MATCH, MESSAGE, devices))

    assert [o.success for o in outcomes] == [True, False, False]
    assert [o.token_invalid for o in outcomes] == [False, True, False]
    assert "403" in outcomes[1].error
    assert opener.payloads[0]["parse_mode"] == "HTML"
    assert "https://civicwatch.example/m/aB3xYz12" in opener.payloads[0]["text"]


def test_invalid_token_detection() -> None:
    assert is_invalid_token_error(400, '{"description":"Bad Request: chat not found"}')
    assert not is_invalid_token_error(429, "Too Many Requests: chat not found")
    assert not is_invalid_token_error(400, "Bad Request: message is too long")


class FakeClient:
    def __init__(self) -> None:
        self.sent: list[tuple[object, str]] = []

    async def send_message(self, peer, text, parse_mode=None):
        if peer == 2002:
            raise errors.UserIsBlockedError(request=None)
        if peer == "unknown_user":
            raise ValueError("Could not find the input entity")
        self.sent.append((peer, text))


def test_telethon_delivery_outcomes_per_device() -> None:
    client = FakeClient()
    delivery = TelethonDelivery(client, CONFIG, {"sofiyska-voda": "Sofiyska Voda"})
    devices = [_device("dev-1", "1001"), _device("dev-2", "2002"), _device("dev-3", "unknown_user")]

    outcomes = asyncio.run(delivery.deliver(MATCH, MESSAGE, devices))

    assert [o.success for o in outcomes] == [True, False, False]
    assert [o.token_invalid for o in outcomes] == [False, True, False]
    peer, text = client.sent[0]
    assert peer == 1001
    assert "Sofiyska Voda" in text
