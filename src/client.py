"""Telegram client factory for civicwatch.

Only used by the ``telethon`` notification method. The client signs in with
the bot token, so no interactive login or QR flow is involved.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from telethon import TelegramClient

from core.errors import ConfigurationError


def build_client() -> TelegramClient:
    """Create a Telethon client from environment variables.

    We read API_ID/API_HASH via python-dotenv to keep secrets out of the repo.
    The session name defaults to "civicwatch" to create a local .session file.
    """

    load_dotenv()

    api_id = os.getenv("API_ID")
    api_hash = os.getenv("API_HASH")
    session_name = os.getenv("SESSION_NAME", "civicwatch")

    missing = [name for name, value in (("API_ID", api_id), ("API_HASH", api_hash)) if not value]
    if missing:
        raise ConfigurationError(f"Missing {' and '.join(missing)} in environment", missing_keys=missing)

    logging.getLogger(__name__).info("Initializing Telegram client")

    return TelegramClient(session_name, int(api_id), api_hash)


async def start_bot_client(client: TelegramClient) -> TelegramClient:
    """Connect ``client`` and sign it in with the BOT_API token."""

    await client.start(bot_token=os.getenv("BOT_API"))
    return client
