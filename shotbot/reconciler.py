"""Submission reconciliation: the only writer of day slots and uploader of blobs.

Ordering for one submission:

1. capture "now" once, derive the day slot and the submitter's table
2. read the slot (best effort; failures mean "no prior record")
3. upload the new image
4. write the record, creating the table if needed
5. delete the superseded blob, if any

The superseded blob is deleted only after the new record is written, so the
slot never points at a deleted file. A write failure deletes the fresh upload
before reporting failure.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Sequence

from .errors import StoreError
from .records import SlotSnapshot, SubmissionRecord, SubmitterIdentity, format_timestamp
from .slots import LABEL_COLUMN, TABLE_ROW_COUNT, a1_range, as_utc, layout_labels, slot_for, table_name_for

logger = logging.getLogger("shotbot.reconciler")


class RecordStore(Protocol):
    async def get_range(self, spreadsheet_id: str, range_spec: str) -> list[list[str]]: ...

    async def batch_get_ranges(self, spreadsheet_id: str, range_specs: Sequence[str]) -> list[list[list[str]]]: ...

    async def update_range(
        self, spreadsheet_id: str, range_spec: str, values: Sequence[Sequence[str]], value_input_option: str = ...
    ) -> None: ...

    async def batch_clear_ranges(self, spreadsheet_id: str, range_specs: Sequence[str]) -> None: ...

    async def list_tables(self, spreadsheet_id: str) -> list[str]: ...

    async def add_table(self, spreadsheet_id: str, title: str) -> None: ...


class BlobStore(Protocol):
    async def create_file(
        self, name: str, parent_folder_id: str, content: bytes, mime_type: str, description: Optional[str] = None
    ): ...

    async def delete_file(self, file_id: str) -> None: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutcomeStatus(enum.Enum):
    CREATED = "created"
    REPLACED = "replaced"
    FAILED = "failed"


@dataclass(frozen=True)
class Outcome:
    status: OutcomeStatus
    day_label: str
    table_name: str
    blob_id: Optional[str] = None
    blob_link: Optional[str] = None
    replaced_blob_id: Optional[str] = None
    stage: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not OutcomeStatus.FAILED

    @property
    def replaced(self) -> bool:
        return self.status is OutcomeStatus.REPLACED


@dataclass(frozen=True)
class SubmissionContext:
    spreadsheet_id: str
    base_sheet_name: str
    folder_id: str
    channel_name: str
    file_name: str = "screenshot.png"
    joined_at: Optional[datetime] = None
    now: Optional[datetime] = None


class SlotLocks:
    """Keyed async locks, one per (account id, UTC date).

    Entries are dropped once nobody holds or waits on them.
    """

    def __init__(self):
        self._locks: dict[tuple, asyncio.Lock] = {}
        self._holders: dict[tuple, int] = {}

    @asynccontextmanager
    async def hold(self, key: tuple) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class SubmissionReconciler:
    def __init__(
        self,
        records: RecordStore,
        blobs: BlobStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.records = records
        self.blobs = blobs
        self.clock = clock
        self.locks = SlotLocks()
        self._known_tables: dict[str, set[str]] = {}

    async def reconcile(
        self,
        submitter: SubmitterIdentity,
        image_bytes: bytes,
        content_type: Optional[str],
        context: SubmissionContext,
    ) -> Outcome:
        now = as_utc(context.now) if context.now is not None else as_utc(self.clock())
        slot = slot_for(now)
        table = table_name_for(context.base_sheet_name, submitter.account_id)
        date_key = format_timestamp(now, date_only=True)
        async with self.locks.hold((submitter.account_id, date_key)):
            return await self._reconcile_locked(submitter, image_bytes, content_type, context, now, slot, table)

    async def _reconcile_locked(self, submitter, image_bytes, content_type, context, now, slot, table) -> Outcome:
        log_ctx = f"user_id={submitter.account_id} tag={submitter.tag} table={table!r} day={slot.day_label}"
        table_exists = await self._table_exists(context.spreadsheet_id, table)
        prior = await self._read_slot(context.spreadsheet_id, table, slot, log_ctx) if table_exists else SlotSnapshot.empty()

        file_name = f"{submitter.account_id}-{int(now.timestamp() * 1000)}-{context.file_name}"
        try:
            blob = await self.blobs.create_file(
                file_name,
                context.folder_id,
                image_bytes,
                content_type or "image/png",
                description=f"Screenshot from {submitter.tag} in #{context.channel_name}",
            )
        except StoreError as exc:
            logger.error("submission_upload_failed %s error=%s", log_ctx, exc)
            return Outcome(
                status=OutcomeStatus.FAILED,
                day_label=slot.day_label,
                table_name=table,
                stage="upload",
                error=str(exc),
            )
        logger.info("submission_uploaded %s blob_id=%s", log_ctx, blob.id)

        record = SubmissionRecord(
            submitter=submitter,
            blob_id=blob.id,
            blob_link=blob.web_view_link,
            submitted_at=now,
            channel_name=context.channel_name,
            tenure=(now - as_utc(context.joined_at)) if context.joined_at is not None else None,
        )
        value_range = slot.value_range(table)
        try:
            if not table_exists:
                await self._create_table(context.spreadsheet_id, table)
            await self.records.update_range(
                context.spreadsheet_id,
                value_range,
                [[value] for value in record.slot_values()],
            )
        except StoreError as exc:
            logger.error("submission_write_failed %s range=%s blob_id=%s error=%s", log_ctx, value_range, blob.id, exc)
            self.forget_tables(context.spreadsheet_id)
            await self._discard_blob(blob.id, reason="orphaned_upload", log_ctx=log_ctx)
            return Outcome(
                status=OutcomeStatus.FAILED,
                day_label=slot.day_label,
                table_name=table,
                stage="write",
                error=str(exc),
            )

        replaced_blob_id = prior.blob_id if prior.blob_id and prior.blob_id != blob.id else None
        if replaced_blob_id:
            await self._discard_blob(replaced_blob_id, reason="superseded", log_ctx=log_ctx)

        # a block left over from an earlier week counts as a fresh submission
        same_day = prior.recorded_on(format_timestamp(now, date_only=True))
        status = OutcomeStatus.REPLACED if same_day else OutcomeStatus.CREATED
        logger.info(
            "submission_recorded %s status=%s range=%s blob_id=%s replaced_blob_id=%s",
            log_ctx, status.value, value_range, blob.id, replaced_blob_id,
        )
        return Outcome(
            status=status,
            day_label=slot.day_label,
            table_name=table,
            blob_id=blob.id,
            blob_link=blob.web_view_link,
            replaced_blob_id=replaced_blob_id,
        )

    async def _table_exists(self, spreadsheet_id: str, table: str) -> bool:
        known = self._known_tables.get(spreadsheet_id)
        if known is not None and table in known:
            return True
        try:
            titles = await self.records.list_tables(spreadsheet_id)
        except StoreError as exc:
            # unknown: attempt the read anyway; it degrades to "no prior record"
            logger.warning("submission_table_list_failed spreadsheet_id=%s error=%s", spreadsheet_id, exc)
            return True
        self._known_tables[spreadsheet_id] = set(titles)
        return table in titles

    async def _read_slot(self, spreadsheet_id: str, table: str, slot, log_ctx: str) -> SlotSnapshot:
        try:
            rows = await self.records.get_range(spreadsheet_id, slot.value_range(table))
        except StoreError as exc:
            logger.warning("submission_prior_read_failed %s error=%s", log_ctx, exc)
            return SlotSnapshot.empty()
        return SlotSnapshot.from_column(rows)

    async def _create_table(self, spreadsheet_id: str, table: str) -> None:
        titles = self._known_tables.setdefault(spreadsheet_id, set())
        if table not in titles:
            await self.records.add_table(spreadsheet_id, table)
            titles.add(table)
        await self.records.update_range(
            spreadsheet_id,
            a1_range(table, LABEL_COLUMN, 1, LABEL_COLUMN, TABLE_ROW_COUNT),
            [[label] for label in layout_labels()],
        )
        logger.info("submission_table_created spreadsheet_id=%s table=%r", spreadsheet_id, table)

    async def _discard_blob(self, blob_id: str, reason: str, log_ctx: str) -> bool:
        try:
            await self.blobs.delete_file(blob_id)
        except StoreError as exc:
            logger.warning("submission_blob_delete_failed %s blob_id=%s reason=%s error=%s", log_ctx, blob_id, reason, exc)
            return False
        logger.info("submission_blob_deleted %s blob_id=%s reason=%s", log_ctx, blob_id, reason)
        return True

    def forget_tables(self, spreadsheet_id: Optional[str] = None) -> None:
        if spreadsheet_id is None:
            self._known_tables.clear()
        else:
            self._known_tables.pop(spreadsheet_id, None)
