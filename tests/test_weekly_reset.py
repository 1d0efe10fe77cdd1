from datetime import date, datetime, timedelta, timezone

import pytest
import pytest_asyncio

from shotbot.reconciler import SubmissionContext, SubmissionReconciler
from shotbot.records import SubmitterIdentity
from shotbot.slots import layout_labels
from shotbot.weekly_reset import WeeklyResetScheduler, is_reset_due

ALICE = SubmitterIdentity(account_id=1, tag="alice", display_name="Alice")
BOB = SubmitterIdentity(account_id=2, tag="bob", display_name="Bob")


async def submit(reconciler, who, moment):
    return await reconciler.reconcile(
        who,
        b"img",
        "image/png",
        SubmissionContext(
            spreadsheet_id="sheet-id",
            base_sheet_name="Sheet1",
            folder_id="folder-id",
            channel_name=f"ticket-{who.tag}",
            now=moment,
        ),
    )


@pytest_asyncio.fixture
async def populated(records, blobs, tuesday):
    reconciler = SubmissionReconciler(records, blobs)
    await submit(reconciler, ALICE, tuesday)
    await submit(reconciler, ALICE, tuesday - timedelta(days=1))
    await submit(reconciler, BOB, tuesday)
    records.tables["Sheet1"] = {("A", 1): "legacy"}
    return records, blobs


@pytest.mark.asyncio
async def test_sweep_clears_every_slot_and_deletes_blobs(populated):
    records, blobs = populated
    scheduler = WeeklyResetScheduler(records, blobs)

    report = await scheduler.sweep("sheet-id", "Sheet1")

    assert report.ok
    assert sorted(report.tables) == ["Sheet1-1", "Sheet1-2"]
    assert sorted(report.deleted_blob_ids) == ["blob-1", "blob-2", "blob-3"]
    assert blobs.files == {}
    for table in ("Sheet1-1", "Sheet1-2"):
        assert records.column(table, "B", 1, 56) == [""] * 56
        assert records.column(table, "A", 1, 56) == layout_labels()
    assert records.cell("Sheet1", "A", 1) == "legacy"


@pytest.mark.asyncio
async def test_sweep_is_a_single_batch_clear(populated):
    records, blobs = populated
    await WeeklyResetScheduler(records, blobs).sweep("sheet-id", "Sheet1")
    assert records.calls.count(("batchClear",)) == 1
    assert records.calls.count(("batchGet",)) == 1


@pytest.mark.asyncio
async def test_collect_failure_aborts_without_clearing(populated):
    records, blobs = populated
    records.fail_on.add("batchGet")

    report = await WeeklyResetScheduler(records, blobs).sweep("sheet-id", "Sheet1")

    assert not report.cleared
    assert report.error
    assert records.cell("Sheet1-1", "B", 24) == "blob-1"
    assert blobs.deleted == []


@pytest.mark.asyncio
async def test_clear_failure_keeps_blobs(populated):
    records, blobs = populated
    records.fail_on.add("batchClear")

    report = await WeeklyResetScheduler(records, blobs).sweep("sheet-id", "Sheet1")

    assert not report.cleared
    assert blobs.deleted == []
    assert len(blobs.files) == 3


@pytest.mark.asyncio
async def test_blob_delete_failures_are_independent(populated):
    records, blobs = populated
    blobs.fail_delete_ids.add("blob-2")

    report = await WeeklyResetScheduler(records, blobs).sweep("sheet-id", "Sheet1")

    assert report.cleared
    assert not report.ok
    assert report.failed_blob_ids == ["blob-2"]
    assert sorted(report.deleted_blob_ids) == ["blob-1", "blob-3"]


@pytest.mark.asyncio
async def test_list_failure_reports_error(records, blobs):
    records.fail_on.add("list")
    report = await WeeklyResetScheduler(records, blobs).sweep("sheet-id", "Sheet1")
    assert not report.cleared
    assert "list" in report.error


@pytest.mark.asyncio
async def test_empty_spreadsheet_counts_as_cleared(records, blobs):
    report = await WeeklyResetScheduler(records, blobs).sweep("sheet-id", "Sheet1")
    assert report.cleared
    assert report.tables == []
    assert ("batchClear",) not in records.calls


@pytest.mark.asyncio
async def test_clear_today_only_touches_todays_block(populated, tuesday):
    records, blobs = populated

    report = await WeeklyResetScheduler(records, blobs).clear_today("sheet-id", "Sheet1", tuesday)

    assert report.day_labels == ["Tuesday"]
    assert records.cell("Sheet1-1", "B", 24) == ""
    assert records.cell("Sheet1-2", "B", 24) == ""
    assert records.cell("Sheet1-1", "B", 16) == "blob-2"
    assert sorted(report.deleted_blob_ids) == ["blob-1", "blob-3"]


def test_is_reset_due():
    now = datetime(2024, 5, 14, 9, 0, tzinfo=timezone.utc)
    assert is_reset_due(now, None)
    assert is_reset_due(now, date(2024, 5, 5))
    assert not is_reset_due(now, date(2024, 5, 12))
    sunday = datetime(2024, 5, 19, 0, 0, tzinfo=timezone.utc)
    assert is_reset_due(sunday, date(2024, 5, 12))


@pytest.mark.asyncio
async def test_second_sweep_has_nothing_to_delete(populated):
    records, blobs = populated
    scheduler = WeeklyResetScheduler(records, blobs)
    await scheduler.sweep("sheet-id", "Sheet1")

    report = await scheduler.sweep("sheet-id", "Sheet1")

    assert report.ok
    assert report.deleted_blob_ids == []
    assert len(blobs.deleted) == 3
