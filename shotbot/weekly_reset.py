from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, Optional

from .errors import StoreError
from .reconciler import BlobStore, RecordStore
from .slots import DAYS_OF_WEEK, as_utc, day_index_for, is_submitter_table, slot_for_day, week_start

logger = logging.getLogger("shotbot.reset")


@dataclass
class ResetReport:
    spreadsheet_id: str
    tables: list[str] = field(default_factory=list)
    day_labels: list[str] = field(default_factory=list)
    cleared: bool = False
    deleted_blob_ids: list[str] = field(default_factory=list)
    failed_blob_ids: list[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.cleared and not self.failed_blob_ids


def is_reset_due(now: datetime, last_reset_on: Optional[date]) -> bool:
    """True when this week's Sunday 00:00 UTC reset has not run yet."""
    return last_reset_on is None or last_reset_on < week_start(now).date()


class WeeklyResetScheduler:
    """Blanks day slots across every submitter table and deletes their blobs.

    Blob ids are read before anything is cleared, because the id cells are
    the only place they live. The clear is one batched request, so a failure
    leaves every table untouched. Blob deletions run after a confirmed clear
    and fail independently.
    """

    def __init__(self, records: RecordStore, blobs: BlobStore):
        self.records = records
        self.blobs = blobs

    async def sweep(
        self,
        spreadsheet_id: str,
        base_sheet_name: str,
        day_indexes: Optional[Iterable[int]] = None,
    ) -> ResetReport:
        slots = [slot_for_day(i) for i in (range(len(DAYS_OF_WEEK)) if day_indexes is None else day_indexes)]
        report = ResetReport(spreadsheet_id=spreadsheet_id, day_labels=[s.day_label for s in slots])

        try:
            titles = await self.records.list_tables(spreadsheet_id)
        except StoreError as exc:
            logger.error("reset_list_tables_failed spreadsheet_id=%s error=%s", spreadsheet_id, exc)
            report.error = str(exc)
            return report
        report.tables = [t for t in titles if is_submitter_table(base_sheet_name, t)]
        if not report.tables or not slots:
            report.cleared = True
            logger.info("reset_nothing_to_clear spreadsheet_id=%s base=%r", spreadsheet_id, base_sheet_name)
            return report

        targets = [(table, slot) for table in report.tables for slot in slots]
        try:
            columns = await self.records.batch_get_ranges(
                spreadsheet_id, [slot.blob_id_cell(table) for table, slot in targets]
            )
        except StoreError as exc:
            logger.error("reset_collect_blob_ids_failed spreadsheet_id=%s error=%s", spreadsheet_id, exc)
            report.error = str(exc)
            return report

        blob_ids: list[str] = []
        for rows in columns:
            value = str(rows[0][0]).strip() if rows and rows[0] else ""
            if value and value not in blob_ids:
                blob_ids.append(value)

        try:
            await self.records.batch_clear_ranges(
                spreadsheet_id, [slot.value_range(table) for table, slot in targets]
            )
        except StoreError as exc:
            logger.error(
                "reset_clear_failed spreadsheet_id=%s tables=%s pending_blob_ids=%s error=%s",
                spreadsheet_id, len(report.tables), blob_ids, exc,
            )
            report.error = str(exc)
            return report
        report.cleared = True
        logger.info(
            "reset_cleared spreadsheet_id=%s tables=%s days=%s blob_ids=%s",
            spreadsheet_id, len(report.tables), ",".join(report.day_labels), len(blob_ids),
        )

        for blob_id in blob_ids:
            try:
                await self.blobs.delete_file(blob_id)
            except StoreError as exc:
                logger.warning("reset_blob_delete_failed spreadsheet_id=%s blob_id=%s error=%s", spreadsheet_id, blob_id, exc)
                report.failed_blob_ids.append(blob_id)
                continue
            report.deleted_blob_ids.append(blob_id)
        return report

    async def clear_day(self, spreadsheet_id: str, base_sheet_name: str, day_index: int) -> ResetReport:
        return await self.sweep(spreadsheet_id, base_sheet_name, day_indexes=[day_index])

    async def clear_today(self, spreadsheet_id: str, base_sheet_name: str, now: datetime) -> ResetReport:
        return await self.clear_day(spreadsheet_id, base_sheet_name, day_index_for(as_utc(now)))
