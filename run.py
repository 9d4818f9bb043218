"""Main entry point wiring the connection manager and the alert pipeline."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable

from alerts.director import AlertDirector
from alerts.email_relay import WebhookEmailSender
from alerts.engine import suspicious_address_set
from alerts.log_email import LoggingEmailSender
from alerts.notifiers.base import EmailSender
from connectors import LatestBlockFeed
from core.config_loader import DB_PATH_ENV, AppConfig, load_config
from core.connection import ConnectionManager
from core.errors import ChainSentryError
from core.event_bus import EventBus
from core.events import EventEnvelope, EventType
from core.monitor import NetworkMonitor
from storage.block_cache import BlockCache
from storage.kv_store import SqliteKeyValueStore
from storage.migrate import initialize_database
from storage.notification_store import NotificationStore

LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Blockchain node monitor and alert engine")
    parser.add_argument("--once", action="store_true", help="Process the latest block once and exit")
    parser.add_argument("--loop", action="store_true", help="Monitor the node and evaluate alerts until interrupted")
    parser.add_argument("--export-cache", metavar="PATH", help="Write the block cache to a .json or .zip file")
    parser.add_argument("--import-cache", metavar="PATH", help="Load blocks from a .json or .zip archive")
    parser.add_argument("--config", metavar="PATH", help="Path to config.yaml", default=None)
    return parser.parse_args()


def prepare_storage(config: AppConfig) -> None:
    db_path = config.storage.resolved_db_path
    if db_path:
        os.environ[DB_PATH_ENV] = db_path
    initialize_database(db_path)


def build_email_sender(config: AppConfig) -> EmailSender:
    email = config.alerts.email
    if email.enabled and email.webhook:
        return WebhookEmailSender(webhook=email.webhook, secret=email.secret)
    if email.enabled:
        LOGGER.warning("E-mail enabled but %s is not set; e-mails are only logged", email.webhook_env)
    return LoggingEmailSender()


def _log_event(envelope: EventEnvelope) -> None:
    event = envelope.event
    LOGGER.info("[%s] %s", event.event_type.value, event.message)


async def _process_latest(feed: LatestBlockFeed, director: AlertDirector) -> None:
    transactions = await feed.fetch_latest()
    if transactions:
        await director.process_batch(transactions)


async def _periodic(name: str, interval: float, coro: Callable[[], Awaitable[None]]) -> None:
    while True:
        try:
            await coro()
        except ChainSentryError as exc:
            LOGGER.warning("Task %s failed: %s", name, exc)
        except Exception as exc:  # pragma: no cover
            LOGGER.exception("Task %s failed: %s", name, exc)
        await asyncio.sleep(interval)


async def run_pipeline(config: AppConfig, loop: bool) -> None:
    event_bus = EventBus()
    event_bus.subscribe(EventType.SYSTEM_FAULT, _log_event)
    event_bus.subscribe(EventType.ALERT_FIRED, _log_event)

    kv_store = SqliteKeyValueStore()
    notifications = NotificationStore(kv_store)
    director = AlertDirector(
        notifications,
        email_sender=build_email_sender(config),
        event_bus=event_bus,
        suspicious_addresses=suspicious_address_set(config.alerts.suspicious_addresses),
    )
    manager = ConnectionManager(config.connection, event_bus=event_bus, store=kv_store)
    feed = LatestBlockFeed(manager, cache=BlockCache())

    async with manager:
        monitor = NetworkMonitor(manager)
        if await manager.start() is None and not loop:
            LOGGER.error("No connection to %s", manager.endpoint.url if manager.endpoint else "any endpoint")
            return
        if not loop:
            await _process_latest(feed, director)
            await director.aclose()
            return
        monitor.start()
        try:
            await _periodic("alerts", config.alerts.feed_interval, lambda: _process_latest(feed, director))
        finally:
            await director.aclose()


def export_cache(path: str) -> None:
    count = BlockCache().export_archive(Path(path))
    LOGGER.info("Exported %s blocks", count)


def import_cache(path: str) -> None:
    count = BlockCache().import_archive(Path(path))
    LOGGER.info("Imported %s blocks", count)


def run_async(entry: Callable[[], Awaitable[None]]) -> None:
    try:
        asyncio.run(entry())
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user.")


def main() -> None:
    args = parse_args()
    config = load_config(Path(args.config) if args.config else None)
    configure_logging(config.debug)
    prepare_storage(config)

    if args.export_cache:
        export_cache(args.export_cache)
        return
    if args.import_cache:
        import_cache(args.import_cache)
        return
    if args.once and args.loop:
        raise SystemExit("--once and --loop cannot be combined")
    if args.once:
        run_async(lambda: run_pipeline(config, loop=False))
    elif args.loop:
        run_async(lambda: run_pipeline(config, loop=True))
    else:
        raise SystemExit("Specify --once, --loop, --export-cache or --import-cache")


if __name__ == "__main__":
    main()
