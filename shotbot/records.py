from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from .slots import BLOB_ID_FIELD_INDEX, DAY_SUB_FIELDS, TIMESTAMP_FIELD_INDEX, as_utc

SCREENSHOT_LINK_LABEL = "View Screenshot"


class VerificationState(enum.Enum):
    UNSET = ""
    VERIFIED = "Verified"
    FLAGGED = "Flagged"


@dataclass(frozen=True)
class SubmitterIdentity:
    account_id: int
    tag: str
    display_name: str


def format_timestamp(moment: datetime, date_only: bool = False) -> str:
    """`MM-DD-YY HH:mm UTC`, or `MM-DD-YY` with date_only."""
    utc = as_utc(moment)
    if date_only:
        return utc.strftime("%m-%d-%y")
    return utc.strftime("%m-%d-%y %H:%M UTC")


def format_duration(duration: timedelta | float, short: bool = False) -> str:
    seconds_total = duration.total_seconds() if isinstance(duration, timedelta) else float(duration)
    seconds_total = max(int(seconds_total), 0)
    days, rem = divmod(seconds_total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, seconds = divmod(rem, 60)
    if short:
        if days > 0:
            return f"{days}d {hours}h"
        if hours > 0:
            return f"{hours}h {minutes}m"
        if minutes > 0:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"
    return f"{days}d {hours}h {minutes}m {seconds}s"


def hyperlink_formula(link: str, label: str = SCREENSHOT_LINK_LABEL) -> str:
    safe_link = link.replace('"', "%22")
    safe_label = label.replace('"', '""')
    return f'=HYPERLINK("{safe_link}", "{safe_label}")'


@dataclass(frozen=True)
class SubmissionRecord:
    submitter: SubmitterIdentity
    blob_id: str
    blob_link: str
    submitted_at: datetime
    channel_name: str
    tenure: Optional[timedelta] = None
    verified: VerificationState = VerificationState.UNSET
    strikes: Optional[int] = None

    def slot_values(self) -> list[str]:
        """Column B values for one day block, in DAY_SUB_FIELDS order."""
        values = [
            self.submitter.display_name,
            hyperlink_formula(self.blob_link),
            format_timestamp(self.submitted_at),
            self.verified.value,
            "" if self.strikes is None else str(self.strikes),
            format_duration(self.tenure, short=True) if self.tenure is not None else "",
            self.blob_id,
        ]
        return values


@dataclass(frozen=True)
class SlotSnapshot:
    """What a day block held before a write."""
    values: tuple[str, ...]

    @classmethod
    def from_column(cls, rows: Sequence[Sequence[str]]) -> "SlotSnapshot":
        # the Sheets API trims trailing blank rows and cells
        cells = [str(row[0]) if row else "" for row in rows]
        cells += [""] * (len(DAY_SUB_FIELDS) - len(cells))
        return cls(values=tuple(cells[: len(DAY_SUB_FIELDS)]))

    @classmethod
    def empty(cls) -> "SlotSnapshot":
        return cls(values=("",) * len(DAY_SUB_FIELDS))

    @property
    def blob_id(self) -> Optional[str]:
        value = self.values[BLOB_ID_FIELD_INDEX].strip()
        return value or None

    @property
    def occupied(self) -> bool:
        return any(value.strip() for value in self.values)

    def recorded_on(self, date_key: str) -> bool:
        """True when the block was written on the `MM-DD-YY` day `date_key`."""
        return self.values[TIMESTAMP_FIELD_INDEX].strip().startswith(date_key)
