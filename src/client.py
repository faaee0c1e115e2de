"""Telegram client factory for subrelay.

We explicitly manage the client's lifecycle (start/disconnect) so it is
obvious when the bot session is created and when it ends.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from telethon import TelegramClient

from core.errors import ConfigError


def build_client() -> TelegramClient:
    """Create a Telethon client from environment variables.

    We read API_ID/API_HASH via python-dotenv to keep secrets out of the repo.
    The session name defaults to "subrelay" to create a local .session file.
    """

    load_dotenv()

    api_id = os.getenv("API_ID")
    api_hash = os.getenv("API_HASH")
    session_name = os.getenv("SESSION_NAME", "subrelay")

    if not api_id or not api_hash:
        raise ConfigError("Missing API_ID or API_HASH in environment")
    try:
        api_id_value = int(api_id)
    except ValueError as exc:
        raise ConfigError("API_ID must be an integer") from exc

    logging.getLogger(__name__).info("Initializing Telegram client")

    client = TelegramClient(session_name, api_id_value, api_hash)
    # Flood waits must reach the dispatcher instead of being slept through here.
    client.flood_sleep_threshold = 0
    return client


def bot_token() -> str:
    load_dotenv()
    token = os.getenv("BOT_TOKEN")
    if not token:
        raise ConfigError("BOT_TOKEN is required")
    return token


async def start_bot(client: TelegramClient, token: str) -> None:
    """Log in with the bot token and verify the credentials work."""

    await client.start(bot_token=token)
    me = await client.get_me()
    if me is None or not getattr(me, "bot", False):
        raise ConfigError("BOT_TOKEN did not authorize a bot account")
    logging.getLogger(__name__).info("Logged in as @%s", getattr(me, "username", me.id))
