"""
Process-wide component container with an explicit start/stop lifecycle.

    startup:   database → registry → dispatcher workers → heartbeat
    shutdown:  heartbeat → dispatcher drain → registry close_all → database

Built once in the application lifespan and stored on `app.state.container`.
Pass `notification_counter` to fold the general notification service's
unread count into the unread-counts push; without it that count is 0.
Tests build their own with a sqlite URL, an in-memory directory and a
simulated SMS provider.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from carewatch.app.alerts.alert_service import AlertLifecycleManager
from carewatch.app.alerts.channels.sms_gateway import SmsProvider, build_provider
from carewatch.app.alerts.directory import Directory, InMemoryDirectory
from carewatch.app.alerts.dispatcher import DeliveryDispatcher
from carewatch.app.alerts.heartbeat import HeartbeatScheduler
from carewatch.app.alerts.read_tracker import NotificationCounter, ReadTracker
from carewatch.app.alerts.recipients import RecipientResolver, RegionHierarchy
from carewatch.app.alerts.registry import ConnectionRegistry
from carewatch.app.alerts.sms_worker import SmsDeliveryWorker
from carewatch.app.alerts.store import AlertStore
from carewatch.app.core.config import Settings, settings
from carewatch.app.core.database import Database

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AlertContainer:

    def __init__(
        self,
        config: Optional[Settings] = None,
        *,
        database: Optional[Database] = None,
        directory: Optional[Directory] = None,
        provider: Optional[SmsProvider] = None,
        clock: Callable[[], datetime] = _now,
        notification_counter: Optional[NotificationCounter] = None,
    ):
        self.config = config or settings
        cfg = self.config

        self.database = database or Database(cfg.DATABASE_URL, echo=cfg.DATABASE_ECHO)
        self.directory = directory or self._load_directory(cfg)
        self.provider = provider or build_provider(cfg)

        self.store = AlertStore(self.database)
        self.registry = ConnectionRegistry(
            lifetime_seconds=cfg.SSE_CONNECTION_TIMEOUT_SECONDS,
            queue_max_size=cfg.SSE_QUEUE_MAX_SIZE,
        )
        self.dispatcher = DeliveryDispatcher(
            workers=cfg.DELIVERY_WORKERS,
            queue_max_size=cfg.DELIVERY_QUEUE_MAX_SIZE,
            shutdown_timeout=cfg.DELIVERY_SHUTDOWN_TIMEOUT_SECONDS,
        )
        self.heartbeat = HeartbeatScheduler(
            self.registry,
            interval_seconds=cfg.SSE_HEARTBEAT_INTERVAL_SECONDS,
            stats_interval_seconds=cfg.SSE_STATS_INTERVAL_SECONDS,
        )
        self.sms_worker = SmsDeliveryWorker(
            self.store, self.directory, self.provider,
            dedup_window_seconds=cfg.SMS_DEDUP_WINDOW_SECONDS,
            clock=clock,
        )
        self.read_tracker = ReadTracker(
            self.store, self.registry,
            notification_counter=notification_counter,
            clock=clock,
        )
        self.alerts = AlertLifecycleManager(
            store=self.store,
            directory=self.directory,
            resolver=RecipientResolver(
                self.directory,
                RegionHierarchy(cfg.REGION_HIERARCHY_DIGITS),
                warning_sms_enabled=cfg.WARNING_SMS_ENABLED,
            ),
            registry=self.registry,
            dispatcher=self.dispatcher,
            sms_worker=self.sms_worker,
            read_tracker=self.read_tracker,
            clock=clock,
        )

    @staticmethod
    def _load_directory(cfg: Settings) -> Directory:
        if cfg.DIRECTORY_SEED_PATH:
            logger.info("Loading directory seed from %s", cfg.DIRECTORY_SEED_PATH)
            return InMemoryDirectory.from_file(cfg.DIRECTORY_SEED_PATH)
        logger.warning("No DIRECTORY_SEED_PATH set, starting with an empty directory")
        return InMemoryDirectory()

    async def start(self) -> None:
        if self.config.DATABASE_CREATE_TABLES:
            await self.database.create_all()
        await self.dispatcher.start()
        await self.heartbeat.start()
        logger.info(
            "Alert container started (db=%s, sms=%s, workers=%d)",
            self.database.display_url, self.provider.name, self.dispatcher.worker_count,
        )

    async def stop(self) -> None:
        await self.heartbeat.stop()
        await self.dispatcher.stop()
        closed = self.registry.close_all()
        await self.database.dispose()
        logger.info("Alert container stopped (%d live connection(s) closed)", closed)
