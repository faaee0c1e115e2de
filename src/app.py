"""Application entry point for the subrelay watcher."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional, Sequence

from art import tprint
from dotenv import load_dotenv
from telethon import errors as tg_errors

import settings
from adapters.reddit_fetcher import RedditFetcher
from adapters.sqlite_ledger import SQLiteLedger
from adapters.telegram_sender import TelegramSender
from adapters.ytdlp_acquirer import YtDlpAcquirer
from client import bot_token, build_client, start_bot
from core.config import AppConfig
from core.dispatcher import Dispatcher
from core.errors import ConfigError, FetchError, LedgerStorageError
from core.models import Subscription
from core.scheduler import Scheduler, SubscriptionCycle
from core.shutdown import EXIT_FAILURE, EXIT_OK, EXIT_STARTUP, ShutdownCoordinator

NAME = "SUBRELAY"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)

_STARTUP_ERRORS = (ConfigError, LedgerStorageError, tg_errors.RPCError, ConnectionError, OSError)


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", True):
        return []
    values = []
    for name in redact_cfg.get("patterns", ["BOT_TOKEN", "API_HASH"]):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging(config: dict) -> None:
    config = config or {}
    if not config.get("enabled", True):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/subrelay.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers, force=True)
    # telethon is chatty at INFO about reconnects.
    logging.getLogger("telethon").setLevel(max(level, logging.WARNING))


def describe_subscription(sub: Subscription) -> str:
    args = [f"ranking={sub.ranking}", f"limit={sub.limit}", f"every={sub.interval_seconds:g}s"]
    if sub.min_score:
        args.append(f"min_score={sub.min_score}")
    if sub.kind_filter is not None:
        args.append(f"kind={sub.kind_filter.value}")
    if not sub.media_enabled:
        args.append("media=off")
    return f"{sub.label} ({', '.join(args)})"


def _open_ledger(config: AppConfig) -> SQLiteLedger:
    ledger = SQLiteLedger(config.db_path)
    applied = ledger.migrate()
    LOGGER.info("Ledger ready at %s (%s migration(s) applied)", config.db_path, applied)
    return ledger


def _build_cycles(
    config: AppConfig,
    subscriptions: Sequence[Subscription],
    *,
    fetcher: RedditFetcher,
    ledger: SQLiteLedger,
    dispatcher: Dispatcher,
    acquirer: YtDlpAcquirer,
    stop_event: asyncio.Event,
) -> list[SubscriptionCycle]:
    return [
        SubscriptionCycle(
            subscription,
            fetcher=fetcher,
            ledger=ledger,
            dispatcher=dispatcher,
            acquirer=acquirer,
            stop_event=stop_event,
            scheduler_config=config.scheduler,
            media_config=config.media,
        )
        for subscription in subscriptions
    ]


async def _serve(config: AppConfig) -> int:
    """Start every subscription cycle and block until the drain completes."""

    client = None
    try:
        ledger = _open_ledger(config)
        client = build_client()
        await start_bot(client, bot_token())
    except _STARTUP_ERRORS as exc:
        LOGGER.error("Startup failed: %s", exc)
        if client is not None:
            await client.disconnect()
        return EXIT_STARTUP

    fetcher = RedditFetcher(config.reddit)
    acquirer = YtDlpAcquirer(config.media)
    dispatcher = Dispatcher(
        TelegramSender(client, config.notifications.links_base_url),
        config.dispatch,
    )
    coordinator = ShutdownCoordinator(config.shutdown_grace_seconds)
    coordinator.install_signal_handlers()

    cycles = _build_cycles(
        config,
        config.subscriptions,
        fetcher=fetcher,
        ledger=ledger,
        dispatcher=dispatcher,
        acquirer=acquirer,
        stop_event=coordinator.stop_event,
    )
    for cycle in cycles:
        LOGGER.info("Subscribed %s", describe_subscription(cycle.subscription))

    scheduler = Scheduler(
        cycles,
        on_fatal=coordinator.report_fatal,
        startup_stagger_seconds=config.scheduler.startup_stagger_seconds,
    )
    try:
        return await coordinator.supervise(scheduler.start())
    finally:
        coordinator.remove_signal_handlers()
        await fetcher.close()
        await client.disconnect()
        LOGGER.info("Shut down")


async def _debug_post(config: AppConfig, post_id: str, chat_id: Optional[int]) -> int:
    """Fetch one post and optionally relay it to a chat."""

    fetcher = RedditFetcher(config.reddit)
    client = None
    try:
        try:
            item = await fetcher.fetch_item(post_id)
        except FetchError as exc:
            LOGGER.error("Could not fetch post %s (%s): %s", post_id, exc.kind.value, exc)
            return EXIT_FAILURE
        print(item)
        if chat_id is None:
            return EXIT_OK

        try:
            ledger = _open_ledger(config)
            client = build_client()
            await start_bot(client, bot_token())
        except _STARTUP_ERRORS as exc:
            LOGGER.error("Startup failed: %s", exc)
            return EXIT_STARTUP

        dispatcher = Dispatcher(
            TelegramSender(client, config.notifications.links_base_url),
            config.dispatch,
        )
        subscription = Subscription(subreddit=item.source, chat_id=chat_id, interval_seconds=1)
        (cycle,) = _build_cycles(
            config,
            [subscription],
            fetcher=fetcher,
            ledger=ledger,
            dispatcher=dispatcher,
            acquirer=YtDlpAcquirer(config.media),
            stop_event=asyncio.Event(),
        )
        report = await cycle.deliver_one(item)
        if report.already_delivered:
            LOGGER.info("Post %s was already relayed to %s", item.id, chat_id)
        return EXIT_OK if report.delivered or report.already_delivered else EXIT_FAILURE
    finally:
        await fetcher.close()
        if client is not None:
            await client.disconnect()


def _load(config_path: Optional[str]) -> Optional[AppConfig]:
    try:
        config = settings.load_config(config_path)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return None
    _configure_logging(config.logging)
    return config


def _run(config_path: Optional[str]) -> int:
    _print_banner()
    config = _load(config_path)
    if config is None:
        return EXIT_STARTUP
    LOGGER.info("Starting subrelay with %s subscription(s)", len(config.subscriptions))
    return asyncio.run(_serve(config))


def _check_config(config_path: Optional[str]) -> int:
    config = _load(config_path)
    if config is None:
        return EXIT_STARTUP
    print(f"Config OK: {settings.resolve_config_path(config_path)}")
    for subscription in config.subscriptions:
        print(f"  {describe_subscription(subscription)}")
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="subrelay")
    parser.add_argument("--config", help="Path to config.json (default: $SUBRELAY_CONFIG or ./config.json)")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the watcher")
    subparsers.add_parser("check-config", help="Validate the config file and list subscriptions")
    debug = subparsers.add_parser("debug-post", help="Fetch a single post, optionally relay it to a chat")
    debug.add_argument("post_id")
    debug.add_argument("--chat-id", type=int, default=None)

    args = parser.parse_args(argv)
    if args.command == "check-config":
        sys.exit(_check_config(args.config))
    if args.command == "debug-post":
        config = _load(args.config)
        if config is None:
            sys.exit(EXIT_STARTUP)
        sys.exit(asyncio.run(_debug_post(config, args.post_id, args.chat_id)))
    sys.exit(_run(args.config))


if __name__ == "__main__":
    main()
