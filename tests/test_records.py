from datetime import datetime, timedelta, timezone

from shotbot.records import (
    SlotSnapshot,
    SubmissionRecord,
    SubmitterIdentity,
    format_duration,
    format_timestamp,
    hyperlink_formula,
)


def test_format_timestamp(tuesday):
    assert format_timestamp(tuesday) == "05-14-24 15:30 UTC"
    assert format_timestamp(tuesday, date_only=True) == "05-14-24"


def test_format_duration_long_and_short():
    duration = timedelta(days=3, hours=4, minutes=5, seconds=6)
    assert format_duration(duration) == "3d 4h 5m 6s"
    assert format_duration(duration, short=True) == "3d 4h"
    assert format_duration(timedelta(hours=2, minutes=7), short=True) == "2h 7m"
    assert format_duration(timedelta(minutes=1, seconds=2), short=True) == "1m 2s"
    assert format_duration(9, short=True) == "9s"


def test_format_duration_clamps_negative():
    assert format_duration(timedelta(seconds=-30), short=True) == "0s"


def test_hyperlink_formula_escapes_quotes():
    assert hyperlink_formula('https://x/"a"', 'say "hi"') == '=HYPERLINK("https://x/%22a%22", "say ""hi""")'


def test_slot_values_order(tuesday):
    record = SubmissionRecord(
        submitter=SubmitterIdentity(account_id=7, tag="alice", display_name="Alice"),
        blob_id="file-1",
        blob_link="https://drive.example/file-1",
        submitted_at=tuesday,
        channel_name="ticket-alice-0007",
        tenure=timedelta(days=40, hours=2),
    )
    assert record.slot_values() == [
        "Alice",
        '=HYPERLINK("https://drive.example/file-1", "View Screenshot")',
        "05-14-24 15:30 UTC",
        "",
        "",
        "40d 2h",
        "file-1",
    ]


def test_snapshot_pads_trimmed_rows():
    snapshot = SlotSnapshot.from_column([["Alice"], [], ["05-14-24 15:30 UTC"]])
    assert len(snapshot.values) == 7
    assert snapshot.occupied
    assert snapshot.blob_id is None


def test_snapshot_recorded_on_matches_date_prefix():
    snapshot = SlotSnapshot.from_column([["Alice"], ["link"], ["05-14-24 15:30 UTC"]])
    assert snapshot.recorded_on("05-14-24")
    assert not snapshot.recorded_on("05-21-24")
    assert not SlotSnapshot.empty().recorded_on("05-14-24")


def test_snapshot_blob_id_and_empty():
    rows = [["Alice"], ["link"], ["ts"], [""], [""], ["1d 0h"], [" file-9 "]]
    assert SlotSnapshot.from_column(rows).blob_id == "file-9"
    assert not SlotSnapshot.empty().occupied
    assert not SlotSnapshot.from_column([]).occupied


def test_timestamps_from_other_zones_are_written_in_utc():
    moment = datetime(2024, 5, 14, 20, 0, tzinfo=timezone(timedelta(hours=5)))
    assert format_timestamp(moment) == "05-14-24 15:00 UTC"
