from __future__ import annotations

import logging
from datetime import datetime

from telegram.ext import CallbackContext, JobQueue

from birthday_sync.history import NotificationHistory, split_correlation_id

LOGGER = logging.getLogger(__name__)


class TelegramReminderDelivery:
    """Delivers reminders as Telegram messages through the bot's job queue."""

    def __init__(self, job_queue: JobQueue, chat_id: int) -> None:
        self._job_queue = job_queue
        self._chat_id = chat_id

    async def schedule_at(self, fire_at: datetime, message: str, correlation_id: str) -> str:
        job = self._job_queue.run_once(
            send_reminder,
            when=fire_at,
            data=message,
            name=correlation_id,
            chat_id=self._chat_id,
        )
        LOGGER.debug("Reminder %s scheduled for %s", correlation_id, fire_at.isoformat())
        return str(job.id)

    async def cancel(self, handle: str) -> None:
        for job in self._job_queue.jobs():
            if str(job.id) == handle:
                job.schedule_removal()
                return
        raise KeyError(f"No scheduled reminder with handle {handle}")


async def send_reminder(context: CallbackContext) -> None:
    job = context.job
    await context.bot.send_message(chat_id=job.chat_id, text=job.data)
    LOGGER.info("Sent reminder %s", job.name)

    history: NotificationHistory | None = context.application.bot_data.get("history")
    if history is not None:
        record_id, kind = split_correlation_id(job.name)
        history.add(context.application.bot_data["owner_id"], kind, job.data, record_id=record_id)
