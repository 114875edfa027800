from __future__ import annotations

import logging
from datetime import time

from telegram.error import NetworkError
from telegram.ext import Application, CallbackContext

from birthday_sync.bot_handlers import HandlerDependencies, build_handlers
from birthday_sync.cache_store import LocalCacheStore
from birthday_sync.connectivity import ConnectivityMonitor
from birthday_sync.date_logic import resolve_timezone
from birthday_sync.history import NotificationHistory
from birthday_sync.notification_queue import NotificationQueue
from birthday_sync.notifier import TelegramReminderDelivery
from birthday_sync.remote import JsonFileDatastore
from birthday_sync.scheduler import ReminderScheduler
from birthday_sync.service import BirthdayService
from birthday_sync.settings import load_settings
from birthday_sync.storage import JsonFileStorage
from birthday_sync.sync_queue import SyncQueue

LOGGER = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def connectivity_check(context: CallbackContext) -> None:
    monitor: ConnectivityMonitor = context.application.bot_data["connectivity"]
    try:
        await context.bot.get_me()
    except NetworkError as exc:
        LOGGER.warning("Connectivity check failed: %s", exc)
        monitor.set_online(False)
        return
    monitor.set_online(True)

    service: BirthdayService = context.application.bot_data["service"]
    report = await service.sync_if_due(context.application.bot_data["owner_id"])
    if report is not None:
        LOGGER.info("Periodic sync: %s synced, %s remaining", report.birthdays.synced, report.birthdays.remaining)


async def daily_reminder_refresh(context: CallbackContext) -> None:
    service: BirthdayService = context.application.bot_data["service"]
    owner_id: str = context.application.bot_data["owner_id"]
    refreshed = await service.refresh_reminders(owner_id)
    LOGGER.info("Refreshed reminders for %s birthdays", refreshed)


async def startup_catchup(application: Application) -> None:
    service: BirthdayService = application.bot_data["service"]
    owner_id: str = application.bot_data["owner_id"]

    # Scheduled jobs do not survive a restart, so every reminder is rebuilt.
    refreshed = await service.refresh_reminders(owner_id, force=True)
    report = await service.sync_pending(owner_id)
    LOGGER.info(
        "Startup: %s reminders rebuilt, %s changes synced, %s pending",
        refreshed,
        report.birthdays.synced,
        report.birthdays.remaining,
    )


def main() -> None:
    configure_logging()

    settings = load_settings()
    zone = resolve_timezone(settings.timezone)
    owner_id = str(settings.telegram_allowed_user_id)

    application = Application.builder().token(settings.telegram_bot_token).build()

    storage = JsonFileStorage(settings.local_storage_path, quota_bytes=settings.storage_quota_bytes)
    connectivity = ConnectivityMonitor()
    cache = LocalCacheStore(storage, ttl=settings.cache_ttl)
    history = NotificationHistory(storage, cache)
    scheduler = ReminderScheduler(
        TelegramReminderDelivery(application.job_queue, settings.telegram_allowed_chat_id),
        zone=zone,
        reminder_times=settings.reminder_times,
        leap_day_rule=settings.leap_day_rule,
    )
    service = BirthdayService(
        cache=cache,
        queue=SyncQueue(storage, cache, connectivity),
        notification_queue=NotificationQueue(storage, cache, connectivity),
        scheduler=scheduler,
        datastore=JsonFileDatastore(settings.remote_store_path),
        connectivity=connectivity,
        history=history,
    )

    application.bot_data["settings"] = settings
    application.bot_data["owner_id"] = owner_id
    application.bot_data["connectivity"] = connectivity
    application.bot_data["service"] = service
    application.bot_data["history"] = history
    application.bot_data["handler_deps"] = HandlerDependencies(
        settings=settings,
        service=service,
        connectivity=connectivity,
        zone=zone,
        history=history,
        storage=storage,
    )

    def on_connectivity_change(online: bool) -> None:
        if online:
            application.create_task(service.sync_pending(owner_id))

    connectivity.on_connectivity_change(on_connectivity_change)

    for handler in build_handlers():
        application.add_handler(handler)

    application.job_queue.run_repeating(
        connectivity_check,
        interval=settings.connectivity_check_seconds,
        first=settings.connectivity_check_seconds,
        name="connectivity-check",
    )
    application.job_queue.run_daily(
        daily_reminder_refresh,
        time=time(hour=0, minute=5, tzinfo=zone),
        name="daily-reminder-refresh",
    )

    application.post_init = startup_catchup
    application.run_polling()


if __name__ == "__main__":
    main()
