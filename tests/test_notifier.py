import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from birthday_sync.cache_store import LocalCacheStore
from birthday_sync.history import KIND_BIRTHDAY_TODAY, NotificationHistory
from birthday_sync.notifier import TelegramReminderDelivery, send_reminder
from birthday_sync.storage import JsonFileStorage


@dataclass
class FakeJob:
    id: str
    callback: object
    when: datetime
    data: str
    name: str
    chat_id: int
    removed: bool = False

    def schedule_removal(self) -> None:
        self.removed = True


@dataclass
class FakeJobQueue:
    created: list[FakeJob] = field(default_factory=list)

    def run_once(self, callback, when, data=None, name=None, chat_id=None):
        job = FakeJob(
            id=f"job-{len(self.created) + 1}",
            callback=callback,
            when=when,
            data=data,
            name=name,
            chat_id=chat_id,
        )
        self.created.append(job)
        return job

    def jobs(self) -> tuple[FakeJob, ...]:
        return tuple(job for job in self.created if not job.removed)


@dataclass
class FakeBot:
    sent: list[tuple[int, str]] = field(default_factory=list)

    async def send_message(self, chat_id: int, text: str) -> None:
        self.sent.append((chat_id, text))


def test_schedule_at_registers_job_for_chat() -> None:
    job_queue = FakeJobQueue()
    delivery = TelegramReminderDelivery(job_queue, chat_id=222)
    fire_at = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)

    handle = asyncio.run(delivery.schedule_at(fire_at, "Sam in a week", "srv_1:7d"))

    job = job_queue.created[0]
    assert handle == "job-1"
    assert job.callback is send_reminder
    assert (job.when, job.data, job.name, job.chat_id) == (fire_at, "Sam in a week", "srv_1:7d", 222)


def test_cancel_removes_matching_job() -> None:
    job_queue = FakeJobQueue()
    delivery = TelegramReminderDelivery(job_queue, chat_id=222)
    fire_at = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)
    asyncio.run(delivery.schedule_at(fire_at, "a", "srv_1:7d"))
    handle = asyncio.run(delivery.schedule_at(fire_at, "b", "srv_1:1d"))

    asyncio.run(delivery.cancel(handle))

    assert [job.removed for job in job_queue.created] == [False, True]


def test_cancel_unknown_handle_raises() -> None:
    delivery = TelegramReminderDelivery(FakeJobQueue(), chat_id=222)

    with pytest.raises(KeyError):
        asyncio.run(delivery.cancel("job-9"))


def test_send_reminder_posts_job_message() -> None:
    bot = FakeBot()
    job = FakeJob(
        id="job-1",
        callback=send_reminder,
        when=datetime(2025, 3, 3, tzinfo=timezone.utc),
        data="Sam turns a year older today",
        name="srv_1:day-of",
        chat_id=222,
    )

    context = SimpleNamespace(job=job, bot=bot, application=SimpleNamespace(bot_data={}))

    asyncio.run(send_reminder(context))

    assert bot.sent == [(222, "Sam turns a year older today")]


def test_send_reminder_records_history_entry(storage: JsonFileStorage, cache: LocalCacheStore, clock) -> None:
    history = NotificationHistory(storage, cache, clock=clock)
    bot = FakeBot()
    job = FakeJob(
        id="job-3",
        callback=send_reminder,
        when=clock(),
        data="Sam turns a year older today",
        name="srv_1:day-of",
        chat_id=222,
    )
    application = SimpleNamespace(bot_data={"history": history, "owner_id": "u1"})

    asyncio.run(send_reminder(SimpleNamespace(job=job, bot=bot, application=application)))

    [entry] = history.list_entries("u1")
    assert entry.kind == KIND_BIRTHDAY_TODAY
    assert entry.record_id == "srv_1"
    assert entry.message == "Sam turns a year older today"
    assert not entry.read
