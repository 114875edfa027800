from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, tzinfo

from telegram import Update
from telegram.ext import CallbackContext, CommandHandler

from birthday_sync.backup import (
    BackupFormatError,
    StorageUsage,
    export_local_data,
    import_local_data,
    parse_backup,
    render_backup,
    storage_usage,
)
from birthday_sync.connectivity import ConnectivityMonitor
from birthday_sync.date_logic import InvalidBirthdayError, days_until_birthday, next_occurrence
from birthday_sync.history import NotificationHistory, format_history
from birthday_sync.models import DEFAULT_RELATION, BirthdayNotFoundError, BirthdayRecord
from birthday_sync.service import BirthdayService, MutationResult
from birthday_sync.settings import Settings
from birthday_sync.storage import KeyValueStorage

LOGGER = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "date", "relation", "avatar")
HISTORY_PAGE_SIZE = 10


@dataclass(frozen=True)
class HandlerDependencies:
    settings: Settings
    service: BirthdayService
    connectivity: ConnectivityMonitor
    zone: tzinfo
    history: NotificationHistory
    storage: KeyValueStorage


@dataclass(frozen=True)
class BirthdayListRow:
    record_id: str
    name: str
    relation: str
    days_until: int
    next_date: date
    pending: bool


def is_authorized(update: Update, settings: Settings) -> bool:
    effective_user = update.effective_user
    effective_chat = update.effective_chat
    if effective_user is None or effective_chat is None:
        return False
    return (
        effective_user.id == settings.telegram_allowed_user_id
        and effective_chat.id == settings.telegram_allowed_chat_id
    )


async def _deny_unauthorized(update: Update) -> None:
    if update.effective_message:
        await update.effective_message.reply_text("This bot is restricted to its configured owner.")


def _command_argument(text: str | None) -> str:
    return (text or "").partition(" ")[2].strip()


def parse_add_arguments(raw_text: str) -> tuple[str, str, str]:
    """Parse ``Name | YYYY-MM-DD [| relation]``."""
    pieces = [piece.strip() for piece in raw_text.split("|")]
    if len(pieces) not in (2, 3) or not pieces[0] or not pieces[1]:
        raise ValueError("Use /add Name | YYYY-MM-DD | relation (relation is optional)")

    relation = pieces[2] if len(pieces) == 3 and pieces[2] else DEFAULT_RELATION
    return pieces[0], pieces[1], relation


def parse_edit_arguments(raw_text: str) -> tuple[int, dict[str, str]]:
    """Parse ``N field=value | field=value``."""
    number, _, rest = raw_text.strip().partition(" ")
    if not number.isdigit():
        raise ValueError("Start with the entry number shown by /list")

    changes: dict[str, str] = {}
    for token in rest.split("|"):
        cleaned = token.strip()
        if not cleaned:
            continue
        field_name, separator, value = cleaned.partition("=")
        field_name = field_name.strip().lower()
        if not separator or field_name not in EDITABLE_FIELDS:
            raise ValueError(f"Fields must be one of {', '.join(EDITABLE_FIELDS)} written as field=value")
        changes[field_name] = value.strip()

    if not changes:
        raise ValueError("Provide at least one field=value change")
    return int(number), changes


def build_rows(records: list[BirthdayRecord], today: date, leap_day_rule: str) -> list[BirthdayListRow]:
    rows: list[BirthdayListRow] = []
    for record in records:
        try:
            next_date = next_occurrence(record.date, today, leap_day_rule)
            days_until = days_until_birthday(record.date, today, leap_day_rule)
        except InvalidBirthdayError:
            LOGGER.warning("Skipping birthday %s with unusable date %r", record.id, record.date)
            continue
        rows.append(
            BirthdayListRow(
                record_id=record.id,
                name=record.name,
                relation=record.relation,
                days_until=days_until,
                next_date=next_date,
                pending=record.optimistic,
            )
        )

    rows.sort(key=lambda row: (row.days_until, row.name.lower()))
    return rows


def _render_help() -> str:
    return (
        "Commands:\n"
        "/add Name | YYYY-MM-DD | relation - Track a birthday (relation optional)\n"
        "/edit N field=value | field=value - Change entry N (name, date, relation, avatar)\n"
        "/delete N - Stop tracking entry N\n"
        "/list - Show tracked birthdays, soonest first\n"
        "/sync - Push changes saved while offline\n"
        "/status - Show connectivity, pending changes and storage use\n"
        "/history - Show recent notifications (/history clear empties it)\n"
        "/export - Download a backup of the local data\n"
        "/import - Reply to a backup file to restore it\n"
        "/clearcache - Drop the local copy and reload from the server\n"
        "/help - Show this help message"
    )


def _render_list_message(rows: list[BirthdayListRow]) -> str:
    lines = [f"Tracked birthdays ({len(rows)})", "Sorted by soonest:"]

    for index, row in enumerate(rows, start=1):
        lines.append(f"{index}. {row.name}")
        details = [
            "Today" if row.days_until == 0 else f"In {row.days_until}d",
            f"Next {row.next_date.isoformat()}",
            row.relation,
        ]
        if row.pending:
            details.append("Pending sync")
        lines.append(f"   {' | '.join(details)}")
        lines.append("")

    return "\n".join(lines).rstrip()


def _render_mutation(verb: str, result: MutationResult) -> str:
    if result.rolled_back:
        return f"Could not delete {result.record.name}; it has been restored."

    lines = [f"{verb} {result.record.name}."]
    if result.queued:
        lines.append("Saved locally, pending sync.")
    if result.reminders is not None:
        lines.append(f"Reminders scheduled: {result.reminders.scheduled}")
        if result.reminders.failures:
            lines.append("Some reminders could not be scheduled and will be retried.")
    return "\n".join(lines)


def _format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    return f"{size / 1024:.1f} KB"


def _render_status(
    *,
    online: bool,
    pending: int,
    last_synced: datetime | None,
    unread: int,
    usage: StorageUsage,
    zone: tzinfo,
) -> str:
    synced_text = last_synced.astimezone(zone).strftime("%Y-%m-%d %H:%M") if last_synced else "never"
    storage_text = _format_bytes(usage.total_bytes)
    if usage.usage_percent is not None:
        storage_text += f" of {_format_bytes(usage.quota_bytes)} ({usage.usage_percent:.0f}%)"

    lines = [
        f"Status: {'online' if online else 'offline'}",
        f"Pending changes: {pending}",
        f"Last sync: {synced_text}",
        f"Unread notifications: {unread}",
        f"Local storage: {storage_text}",
    ]
    for section, size in sorted(usage.breakdown.items()):
        lines.append(f"   {section}: {_format_bytes(size)}")
    return "\n".join(lines)


def _owner_id(update: Update) -> str:
    return str(update.effective_user.id)


def _today(deps: HandlerDependencies) -> date:
    return datetime.now(deps.zone).date()


async def _select_row(deps: HandlerDependencies, owner_id: str, number: int) -> BirthdayListRow | None:
    loaded = await deps.service.load_birthdays(owner_id)
    rows = build_rows(loaded.records, _today(deps), deps.settings.leap_day_rule)
    if number < 1 or number > len(rows):
        return None
    return rows[number - 1]


async def help_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return
    await update.effective_message.reply_text(_render_help())


async def list_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return

    loaded = await deps.service.load_birthdays(_owner_id(update))
    if not loaded.records:
        await update.effective_message.reply_text("No birthdays are currently tracked.")
        return

    rows = build_rows(loaded.records, _today(deps), deps.settings.leap_day_rule)
    message = _render_list_message(rows)
    if loaded.error:
        message += "\n\nShowing saved data; could not refresh right now."
    await update.effective_message.reply_text(message)


async def add_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return

    try:
        name, birthday, relation = parse_add_arguments(_command_argument(update.effective_message.text))
        result = await deps.service.add_birthday(_owner_id(update), name=name, date=birthday, relation=relation)
    except ValueError as exc:
        await update.effective_message.reply_text(str(exc))
        return

    await update.effective_message.reply_text(_render_mutation("Added", result))
    LOGGER.info("Added birthday for %s", name)


async def edit_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return

    owner_id = _owner_id(update)
    try:
        number, changes = parse_edit_arguments(_command_argument(update.effective_message.text))
        row = await _select_row(deps, owner_id, number)
        if row is None:
            await update.effective_message.reply_text("No entry with that number. Send /list to see them.")
            return
        result = await deps.service.update_birthday(owner_id, row.record_id, changes)
    except (ValueError, BirthdayNotFoundError) as exc:
        await update.effective_message.reply_text(str(exc))
        return

    await update.effective_message.reply_text(_render_mutation("Updated", result))
    LOGGER.info("Updated birthday %s", result.record.id)


async def delete_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return

    owner_id = _owner_id(update)
    raw_number = _command_argument(update.effective_message.text)
    if not raw_number.isdigit():
        await update.effective_message.reply_text("Use /delete N with the number shown by /list.")
        return

    row = await _select_row(deps, owner_id, int(raw_number))
    if row is None:
        await update.effective_message.reply_text("No entry with that number. Send /list to see them.")
        return

    try:
        result = await deps.service.delete_birthday(owner_id, row.record_id)
    except BirthdayNotFoundError as exc:
        await update.effective_message.reply_text(str(exc))
        return

    await update.effective_message.reply_text(_render_mutation("Deleted", result))


async def sync_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return

    report = await deps.service.sync_pending(_owner_id(update))
    if report.birthdays.skipped:
        await update.effective_message.reply_text(
            f"Offline: {report.birthdays.remaining} changes are waiting to sync."
        )
        return

    await update.effective_message.reply_text(
        f"Synced {report.birthdays.synced}, failed {report.birthdays.failed}, "
        f"remaining {report.birthdays.remaining}."
    )


async def status_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return

    owner_id = _owner_id(update)
    message = _render_status(
        online=deps.connectivity.is_online(),
        pending=deps.service.pending_sync_count(owner_id),
        last_synced=deps.service.last_synced(owner_id),
        unread=deps.history.unread_count(owner_id),
        usage=storage_usage(deps.storage, deps.settings.storage_quota_bytes),
        zone=deps.zone,
    )
    await update.effective_message.reply_text(message)


async def history_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return

    owner_id = _owner_id(update)
    if _command_argument(update.effective_message.text).lower() == "clear":
        deps.history.clear(owner_id)
        await update.effective_message.reply_text("Notification history cleared.")
        return

    entries = deps.history.list_entries(owner_id)[:HISTORY_PAGE_SIZE]
    await update.effective_message.reply_text(format_history(entries, datetime.now(deps.zone)))
    deps.history.mark_all_read(owner_id)


async def export_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return

    document = export_local_data(deps.storage)
    await update.effective_message.reply_document(
        document=render_backup(document),
        filename=f"birthday-backup-{_today(deps).isoformat()}.json",
    )
    LOGGER.info("Exported %s local storage keys", len(document["data"]))


async def import_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return

    replied = update.effective_message.reply_to_message
    if replied is None or replied.document is None:
        await update.effective_message.reply_text("Reply to a backup file sent by /export with /import.")
        return

    backup_file = await replied.document.get_file()
    raw = await backup_file.download_as_bytearray()
    try:
        document = parse_backup(bytes(raw))
    except BackupFormatError as exc:
        await update.effective_message.reply_text(f"Could not read backup: {exc}")
        return

    result = import_local_data(deps.storage, document)
    refreshed = await deps.service.refresh_reminders(_owner_id(update), force=True)
    await update.effective_message.reply_text(
        f"Restored {result.imported} entries ({len(result.skipped)} skipped). Reminders rebuilt: {refreshed}."
    )


async def clear_cache_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return

    result = await deps.service.clear_local_cache(_owner_id(update))
    if not result.cleared:
        await update.effective_message.reply_text(f"Cache kept: {result.reason}.")
        return

    message = f"Cache cleared. Reloaded {result.records} birthdays."
    if result.reason:
        message += f"\nReload failed: {result.reason}"
    await update.effective_message.reply_text(message)


def build_handlers() -> list:
    return [
        CommandHandler("help", help_command),
        CommandHandler("start", help_command),
        CommandHandler("list", list_command),
        CommandHandler("add", add_command),
        CommandHandler("edit", edit_command),
        CommandHandler("delete", delete_command),
        CommandHandler("sync", sync_command),
        CommandHandler("status", status_command),
        CommandHandler("history", history_command),
        CommandHandler("export", export_command),
        CommandHandler("import", import_command),
        CommandHandler("clearcache", clear_cache_command),
    ]
