"""Grid addressing for the weekly submission tables.

Every submitter owns one table (worksheet) in the configured spreadsheet,
named ``<base sheet name>-<account id>``. A table is seven day blocks of
eight rows each. Column A holds the static labels, column B the values::

    row i*8+1   <day label>          (Sunday is day 0)
    row i*8+2   Player Display Name
    row i*8+3   Screenshot
    row i*8+4   Timestamp (UTC)
    row i*8+5   Verified
    row i*8+6   Strikes
    row i*8+7   Time in Server
    row i*8+8   Drive File ID

Everything here is pure. Callers capture "now" once per operation and derive
every coordinate from that single value.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

DAYS_OF_WEEK = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
DAY_SUB_FIELDS = (
    "Player Display Name",
    "Screenshot",
    "Timestamp (UTC)",
    "Verified",
    "Strikes",
    "Time in Server",
    "Drive File ID",
)
ROWS_PER_DAY_BLOCK = 1 + len(DAY_SUB_FIELDS)
BLOB_ID_FIELD_INDEX = DAY_SUB_FIELDS.index("Drive File ID")
TIMESTAMP_FIELD_INDEX = DAY_SUB_FIELDS.index("Timestamp (UTC)")
LABEL_COLUMN = "A"
VALUE_COLUMN = "B"
TABLE_ROW_COUNT = ROWS_PER_DAY_BLOCK * len(DAYS_OF_WEEK)


def as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def day_index_for(moment: datetime) -> int:
    """Day of the reporting week in UTC, Sunday = 0."""
    return (as_utc(moment).weekday() + 1) % 7


def quote_table_name(table: str) -> str:
    return "'" + table.replace("'", "''") + "'"


def a1_range(table: str, start_col: str, start_row: int, end_col: str | None = None, end_row: int | None = None) -> str:
    spec = f"{quote_table_name(table)}!{start_col}{start_row}"
    if end_col is not None or end_row is not None:
        spec += f":{end_col or start_col}{end_row if end_row is not None else ''}"
    return spec


@dataclass(frozen=True)
class DaySlot:
    day_index: int
    day_label: str
    label_row: int
    first_value_row: int
    last_value_row: int
    blob_id_row: int

    def value_range(self, table: str) -> str:
        return a1_range(table, VALUE_COLUMN, self.first_value_row, VALUE_COLUMN, self.last_value_row)

    def blob_id_cell(self, table: str) -> str:
        return a1_range(table, VALUE_COLUMN, self.blob_id_row)


def slot_for_day(day_index: int) -> DaySlot:
    if not 0 <= day_index < len(DAYS_OF_WEEK):
        raise ValueError(f"day index out of range: {day_index!r}")
    label_row = day_index * ROWS_PER_DAY_BLOCK + 1
    first_value_row = label_row + 1
    return DaySlot(
        day_index=day_index,
        day_label=DAYS_OF_WEEK[day_index],
        label_row=label_row,
        first_value_row=first_value_row,
        last_value_row=first_value_row + len(DAY_SUB_FIELDS) - 1,
        blob_id_row=first_value_row + BLOB_ID_FIELD_INDEX,
    )


def slot_for(moment: datetime) -> DaySlot:
    return slot_for_day(day_index_for(moment))


def all_slots() -> list[DaySlot]:
    return [slot_for_day(i) for i in range(len(DAYS_OF_WEEK))]


def table_name_for(base_name: str, account_id: int) -> str:
    return f"{base_name}-{account_id}"


def is_submitter_table(base_name: str, title: str) -> bool:
    prefix = f"{base_name}-"
    return title.startswith(prefix) and title[len(prefix):].isdigit()


def layout_labels() -> list[str]:
    """Column A contents for a fresh table, top to bottom."""
    labels: list[str] = []
    for day in DAYS_OF_WEEK:
        labels.append(day)
        labels.extend(DAY_SUB_FIELDS)
    return labels


def next_reset_at(moment: datetime) -> datetime:
    """Next Sunday 00:00 UTC strictly after `moment`."""
    now = as_utc(moment)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    candidate = midnight + timedelta(days=(7 - day_index_for(now)) % 7)
    if candidate <= now:
        candidate += timedelta(days=7)
    return candidate


def week_start(moment: datetime) -> datetime:
    """Sunday 00:00 UTC opening the week that contains `moment`."""
    now = as_utc(moment)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=day_index_for(now))
