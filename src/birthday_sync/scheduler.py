from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Callable, Mapping, Protocol, Sequence

from birthday_sync.date_logic import days_before, local_instant, next_occurrence
from birthday_sync.models import REMINDER_OFFSETS, BirthdayRecord, utc_now

LOGGER = logging.getLogger(__name__)

MIN_LEAD_TIME = timedelta(seconds=60)

DEFAULT_REMINDER_TIMES: dict[int, time] = {
    7: time(9, 0),
    1: time(18, 0),
    0: time(8, 0),
}

OFFSET_LABELS = {7: "7d", 1: "1d", 0: "day-of"}

WEEK_AHEAD_TEMPLATES = (
    "🎂 Birthday Reminder\n{person_name}'s birthday is in 7 days. Time to plan something special.\nDate: {date}",
    "📆 One week to go.\n{person_name} celebrates on {date}.",
    "🎁 Seven days until {person_name}'s birthday.\nDate: {date}\nA good moment to sort out a gift.",
    "🗓️ Coming up next week: {person_name}'s birthday.\nDate: {date}",
)

DAY_BEFORE_TEMPLATES = (
    "🎉 Birthday Tomorrow!\nDon't forget: {person_name}'s birthday is tomorrow.\nDate: {date}",
    "⏰ Heads up - {person_name} celebrates tomorrow.\nDate: {date}",
    "🎈 One sleep left until {person_name}'s birthday.\nDate: {date}",
)

DAY_OF_TEMPLATES = (
    "🎂 Birthday Today!\nIt's {person_name}'s birthday today. Don't forget to send your wishes!\nDate: {date}",
    "🥳 Today we celebrate {person_name}.\nDate: {date}",
    "🎊 The calendar has spoken - it's {person_name}'s birthday.\nDate: {date}",
)

TEMPLATES_BY_OFFSET: dict[int, tuple[str, ...]] = {
    7: WEEK_AHEAD_TEMPLATES,
    1: DAY_BEFORE_TEMPLATES,
    0: DAY_OF_TEMPLATES,
}


class NotificationDelivery(Protocol):
    async def schedule_at(self, fire_at: datetime, message: str, correlation_id: str) -> str: ...

    async def cancel(self, handle: str) -> None: ...


@dataclass(frozen=True)
class ReminderCandidate:
    offset_days: int
    fire_at: datetime
    occurrence: date
    correlation_id: str


@dataclass(frozen=True)
class ScheduleFailure:
    offset_days: int
    error: str


@dataclass(frozen=True)
class ScheduleResult:
    handles: list[str]
    scheduled: int
    skipped: int
    failures: list[ScheduleFailure]
    occurrence: date | None

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass(frozen=True)
class CancelResult:
    cancelled: int
    failed: int


def correlation_id(record_id: str, offset_days: int) -> str:
    return f"{record_id}:{OFFSET_LABELS.get(offset_days, f'{offset_days}d')}"


def is_deliverable(fire_at: datetime, now: datetime, min_lead: timedelta = MIN_LEAD_TIME) -> bool:
    return fire_at - now >= min_lead


def reminder_candidates(
    record: BirthdayRecord,
    now: datetime,
    *,
    zone: tzinfo,
    reminder_times: Mapping[int, time] = DEFAULT_REMINDER_TIMES,
    leap_day_rule: str = "feb28",
    min_lead: timedelta = MIN_LEAD_TIME,
) -> tuple[list[ReminderCandidate], int]:
    """Reminder instants for the next occurrence plus the number discarded as too soon."""
    today = now.astimezone(zone).date()
    occurrence = next_occurrence(record.date, today, leap_day_rule)

    candidates: list[ReminderCandidate] = []
    skipped = 0
    for offset in REMINDER_OFFSETS:
        fire_at = local_instant(days_before(occurrence, offset), reminder_times[offset], zone)
        if not is_deliverable(fire_at, now, min_lead):
            skipped += 1
            continue
        candidates.append(
            ReminderCandidate(
                offset_days=offset,
                fire_at=fire_at,
                occurrence=occurrence,
                correlation_id=correlation_id(record.id, offset),
            )
        )
    return candidates, skipped


def format_reminder_message(record: BirthdayRecord, candidate: ReminderCandidate) -> str:
    templates = TEMPLATES_BY_OFFSET[candidate.offset_days]
    seed = "|".join((record.id, candidate.occurrence.isoformat(), str(candidate.offset_days)))
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    template = templates[int.from_bytes(digest[:4], "big") % len(templates)]
    return template.format(person_name=record.name, date=candidate.occurrence.isoformat())


class ReminderScheduler:
    def __init__(
        self,
        delivery: NotificationDelivery,
        *,
        zone: tzinfo,
        reminder_times: Mapping[int, time] | None = None,
        leap_day_rule: str = "feb28",
        min_lead: timedelta = MIN_LEAD_TIME,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._delivery = delivery
        self._zone = zone
        self._reminder_times = dict(reminder_times or DEFAULT_REMINDER_TIMES)
        self._leap_day_rule = leap_day_rule
        self._min_lead = min_lead
        self._clock = clock

    @property
    def zone(self) -> tzinfo:
        return self._zone

    def upcoming_occurrence(self, record: BirthdayRecord) -> date:
        today = self._clock().astimezone(self._zone).date()
        return next_occurrence(record.date, today, self._leap_day_rule)

    def candidates(self, record: BirthdayRecord) -> tuple[list[ReminderCandidate], int]:
        return reminder_candidates(
            record,
            self._clock(),
            zone=self._zone,
            reminder_times=self._reminder_times,
            leap_day_rule=self._leap_day_rule,
            min_lead=self._min_lead,
        )

    async def schedule(self, record: BirthdayRecord) -> ScheduleResult:
        try:
            candidates, skipped = self.candidates(record)
        except ValueError as exc:
            LOGGER.error("Cannot compute reminders for %s: %s", record.id, exc)
            return ScheduleResult(
                handles=[],
                scheduled=0,
                skipped=0,
                failures=[ScheduleFailure(offset_days=offset, error=str(exc)) for offset in REMINDER_OFFSETS],
                occurrence=None,
            )

        handles: list[str] = []
        failures: list[ScheduleFailure] = []
        for candidate in candidates:
            message = format_reminder_message(record, candidate)
            try:
                handle = await self._delivery.schedule_at(candidate.fire_at, message, candidate.correlation_id)
            except Exception as exc:
                LOGGER.warning("Could not schedule %s: %s", candidate.correlation_id, exc)
                failures.append(ScheduleFailure(offset_days=candidate.offset_days, error=str(exc)))
                continue
            handles.append(handle)

        LOGGER.info(
            "Scheduled %s reminders for %s (%s skipped, %s failed)",
            len(handles),
            record.name,
            skipped,
            len(failures),
        )
        return ScheduleResult(
            handles=handles,
            scheduled=len(handles),
            skipped=skipped,
            failures=failures,
            occurrence=self.upcoming_occurrence(record),
        )

    async def cancel(self, handles: Sequence[str]) -> CancelResult:
        cancelled = 0
        failed = 0
        for handle in handles:
            try:
                await self._delivery.cancel(handle)
            except Exception as exc:
                LOGGER.warning("Could not cancel reminder %s: %s", handle, exc)
                failed += 1
                continue
            cancelled += 1
        return CancelResult(cancelled=cancelled, failed=failed)

    async def reschedule(self, record: BirthdayRecord, previous_handles: Sequence[str]) -> ScheduleResult:
        if previous_handles:
            await self.cancel(previous_handles)
        return await self.schedule(record)
