"""Application entry point for the civicwatch batch pipeline."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Awaitable, Callable, Optional, TypeVar

from art import tprint
from dotenv import load_dotenv

import settings
from adapters.json_feed_crawler import build_crawlers
from adapters.sqlite_storage import SQLiteStorage
from adapters.telegram_bot_delivery import TelegramBotDelivery
from adapters.telethon_delivery import TelethonDelivery
from client import build_client, start_bot_client
from core.categories import build_category_rules
from core.errors import ConfigurationError, SlugCollisionError
from core.ingestor import SourceIngestor
from core.matcher import NotificationMatcher
from core.orchestrator import EXIT_CODES, BatchStatus, PipelineOrchestrator
from core.ports import DeliveryPort
from core.sources_clean import clean_sources

NAME = "CIVICWATCH"
FONT = "tarty-1"

T = TypeVar("T")


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        stage = getattr(record, "stage", None)
        if stage:
            record.stage_tag = f" [stage={stage} source={getattr(record, 'source', None) or '-'}]"
        else:
            record.stage_tag = ""
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s%(stage_tag)s: %(message)s"
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
        path = file_cfg.get("path", "logs/civicwatch.log")
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

    logging.basicConfig(level=level, handlers=handlers)


def _build_storage() -> SQLiteStorage:
    return SQLiteStorage(settings.DB_PATH, retry=settings.INGEST_CONFIG.retry)


def _build_ingestor(storage: SQLiteStorage) -> SourceIngestor:
    rules = build_category_rules(settings.CATEGORY_OVERRIDES)
    return SourceIngestor(storage=storage, config=settings.INGEST_CONFIG, rules=rules)


def _required_env() -> list[str]:
    try:
        return settings.REQUIRED_ENV[settings.NOTIFICATION_METHOD]
    except KeyError:
        raise ConfigurationError("notifications.method must be 'bot_api' or 'telethon'") from None


async def _with_delivery(work: Callable[[DeliveryPort], Awaitable[T]]) -> T:
    """Run ``work`` with the configured delivery adapter, managing its lifecycle."""

    logger = logging.getLogger(__name__)
    logger.info("Selected notification method - %s", settings.NOTIFICATION_METHOD)

    if settings.NOTIFICATION_METHOD == "telethon":
        client = await start_bot_client(build_client())
        try:
            return await work(TelethonDelivery(client, settings.NOTIFICATION_CONFIG, settings.SOURCE_ALIASES))
        finally:
            await client.disconnect()

    delivery = TelegramBotDelivery(
        bot_token=os.getenv("BOT_API", ""),
        config=settings.NOTIFICATION_CONFIG,
        source_aliases=settings.SOURCE_ALIASES,
    )
    return await work(delivery)


def _crawl(args: argparse.Namespace) -> int:
    registry = build_crawlers(settings.CRAWLERS, settings.DEFAULT_LOCALITY)
    orchestrator = PipelineOrchestrator(registry, _build_storage())
    result = orchestrator.crawl(args.source)
    return 0 if result.ok else EXIT_CODES[BatchStatus.FAILED_PARTIAL]


def _pipeline(args: argparse.Namespace) -> int:
    settings.verify_env(_required_env())
    registry = build_crawlers(settings.CRAWLERS, settings.DEFAULT_LOCALITY)
    sources = args.source or None
    # Fail on unknown names before any crawler runs.
    registry.select(sources)

    storage = _build_storage()
    ingestor = _build_ingestor(storage)

    async def work(delivery: DeliveryPort):
        matcher = NotificationMatcher(storage, delivery)
        orchestrator = PipelineOrchestrator(registry, storage, ingestor, matcher)
        return await orchestrator.run(sources)

    report = asyncio.run(_with_delivery(work))
    logging.getLogger(__name__).info("Pipeline status: %s", report.status.value)
    return report.exit_code


def _ingest(args: argparse.Namespace) -> int:
    storage = _build_storage()
    ingestor = _build_ingestor(storage)
    storage.open()
    try:
        summary = ingestor.ingest_pending(
            source_type=args.source_type,
            limit=args.limit,
            dry_run=args.dry_run,
        )
    finally:
        storage.close()
    return EXIT_CODES[BatchStatus.FAILED_PARTIAL] if summary.failed else 0


def _notify(args: argparse.Namespace) -> int:
    settings.verify_env(_required_env())
    storage = _build_storage()

    async def work(delivery: DeliveryPort):
        matcher = NotificationMatcher(storage, delivery)
        return await matcher.match_and_notify()

    storage.open()
    try:
        summary = asyncio.run(_with_delivery(work))
    finally:
        storage.close()
    if summary.delivery_failures or summary.unprocessed:
        return EXIT_CODES[BatchStatus.FAILED_PARTIAL]
    return 0


def _sources_clean(args: argparse.Namespace) -> int:
    storage = _build_storage()
    storage.open()
    try:
        clean_sources(storage, args.retain, dry_run=args.dry_run)
    finally:
        storage.close()
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="civicwatch")
    subparsers = parser.add_subparsers(dest="command", required=True)

    crawl = subparsers.add_parser("crawl", help="Run one crawler and store its documents")
    crawl.add_argument("--source", required=True, help="Crawler source type")
    crawl.set_defaults(handler=_crawl)

    pipeline = subparsers.add_parser("pipeline", help="Crawl, ingest and notify in one batch")
    pipeline.add_argument(
        "--source",
        action="append",
        help="Limit the run to this crawler (repeatable). Default: all crawlers",
    )
    pipeline.set_defaults(handler=_pipeline)

    ingest = subparsers.add_parser("ingest", help="Turn pending source documents into messages")
    ingest.add_argument("--source-type", help="Only ingest documents of this source type")
    ingest.add_argument("--limit", type=int, help="Maximum number of documents to process")
    ingest.add_argument("--dry-run", action="store_true", help="Report without writing")
    ingest.set_defaults(handler=_ingest)

    notify = subparsers.add_parser("notify", help="Match new messages and deliver notifications")
    notify.set_defaults(handler=_notify)

    clean = subparsers.add_parser(
        "sources-clean",
        help="Delete source documents that are neither of the retained type nor ingested",
    )
    clean.add_argument("--retain", required=True, help="Source type to keep")
    clean.add_argument("--dry-run", action="store_true", help="Report without deleting")
    clean.set_defaults(handler=_sources_clean)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    _print_banner()
    _configure_logging()
    logger = logging.getLogger(__name__)
    logger.info("Starting civicwatch %s", args.command)

    try:
        return args.handler(args)
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        if exc.missing_keys:
            logger.error("Missing keys: %s", ", ".join(exc.missing_keys))
        return EXIT_CODES[BatchStatus.FAILED_FATAL]
    except SlugCollisionError:
        logger.exception("Fatal ingestion error")
        return EXIT_CODES[BatchStatus.FAILED_FATAL]


if __name__ == "__main__":
    raise SystemExit(main())
