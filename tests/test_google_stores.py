from unittest.mock import MagicMock

import httplib2
import pytest
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

from shotbot.errors import BlobStoreError, ConfigurationError, RecordStoreError
from shotbot.google_stores import FOLDER_MIME_TYPE, DriveBlobStore, SheetsRecordStore, verify_remote_targets


def http_error(status):
    return HttpError(httplib2.Response({"status": status}), b"simulated failure")


@pytest.fixture
def sheets():
    service = MagicMock()
    return service, SheetsRecordStore(lambda: service)


@pytest.fixture
def drive():
    service = MagicMock()
    return service, DriveBlobStore(lambda: service)


@pytest.mark.asyncio
async def test_get_range_returns_values(sheets):
    service, store = sheets
    values_api = service.spreadsheets.return_value.values.return_value
    values_api.get.return_value.execute.return_value = {"values": [["Alice"], [], ["ts"]]}

    rows = await store.get_range("sid", "'Sheet1-1'!B18:B24")

    assert rows == [["Alice"], [], ["ts"]]
    values_api.get.assert_called_once_with(spreadsheetId="sid", range="'Sheet1-1'!B18:B24")


@pytest.mark.asyncio
async def test_get_range_of_blank_cells_is_empty(sheets):
    service, store = sheets
    service.spreadsheets.return_value.values.return_value.get.return_value.execute.return_value = {}
    assert await store.get_range("sid", "'Sheet1-1'!B2:B8") == []


@pytest.mark.asyncio
async def test_update_range_request_shape(sheets):
    service, store = sheets
    values_api = service.spreadsheets.return_value.values.return_value

    await store.update_range("sid", "'Sheet1-1'!B2:B8", [["a"], ["b"]])

    values_api.update.assert_called_once_with(
        spreadsheetId="sid",
        range="'Sheet1-1'!B2:B8",
        valueInputOption="USER_ENTERED",
        body={"values": [["a"], ["b"]]},
    )


@pytest.mark.asyncio
async def test_batch_calls_skip_empty_input():
    factory = MagicMock()
    store = SheetsRecordStore(factory)
    assert await store.batch_get_ranges("sid", []) == []
    await store.batch_clear_ranges("sid", [])
    factory.assert_not_called()


@pytest.mark.asyncio
async def test_batch_get_and_clear(sheets):
    service, store = sheets
    values_api = service.spreadsheets.return_value.values.return_value
    values_api.batchGet.return_value.execute.return_value = {
        "valueRanges": [{"range": "a", "values": [["blob-1"]]}, {"range": "b"}]
    }

    assert await store.batch_get_ranges("sid", ["a", "b"]) == [[["blob-1"]], []]
    await store.batch_clear_ranges("sid", ["a", "b"])

    values_api.batchClear.assert_called_once_with(spreadsheetId="sid", body={"ranges": ["a", "b"]})


@pytest.mark.asyncio
async def test_append_row_quotes_table(sheets):
    service, store = sheets
    values_api = service.spreadsheets.return_value.values.return_value

    await store.append_row("sid", "Bob's log", ["x", "y"])

    kwargs = values_api.append.call_args.kwargs
    assert kwargs["range"] == "'Bob''s log'"
    assert kwargs["insertDataOption"] == "INSERT_ROWS"
    assert kwargs["body"] == {"values": [["x", "y"]]}


@pytest.mark.asyncio
async def test_list_and_add_tables(sheets):
    service, store = sheets
    spreadsheets = service.spreadsheets.return_value
    spreadsheets.get.return_value.execute.return_value = {
        "sheets": [{"properties": {"sheetId": 0, "title": "Sheet1"}}, {"properties": {"sheetId": 5, "title": "Sheet1-9"}}]
    }

    assert await store.list_tables("sid") == ["Sheet1", "Sheet1-9"]
    await store.add_table("sid", "Sheet1-10")

    spreadsheets.batchUpdate.assert_called_once_with(
        spreadsheetId="sid",
        body={"requests": [{"addSheet": {"properties": {"title": "Sheet1-10"}}}]},
    )


@pytest.mark.asyncio
async def test_http_errors_become_record_store_errors(sheets):
    service, store = sheets
    service.spreadsheets.return_value.values.return_value.get.return_value.execute.side_effect = http_error(403)

    with pytest.raises(RecordStoreError) as excinfo:
        await store.get_range("sid", "'Sheet1-1'!B2:B8")

    assert "HTTP 403" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, HttpError)


@pytest.mark.asyncio
async def test_create_file_uploads_into_folder(drive):
    service, store = drive
    files_api = service.files.return_value
    files_api.create.return_value.execute.return_value = {"id": "f1", "webViewLink": "https://drive/f1"}

    blob = await store.create_file("42-1-shot.png", "folder", b"bytes", "image/png", description="from alice")

    assert blob.id == "f1"
    assert blob.web_view_link == "https://drive/f1"
    kwargs = files_api.create.call_args.kwargs
    assert kwargs["body"] == {"name": "42-1-shot.png", "parents": ["folder"], "description": "from alice"}
    assert kwargs["fields"] == "id, webViewLink"
    assert kwargs["supportsAllDrives"] is True
    assert isinstance(kwargs["media_body"], MediaIoBaseUpload)
    assert kwargs["media_body"].mimetype() == "image/png"


@pytest.mark.asyncio
async def test_drive_transport_errors_become_blob_store_errors(drive):
    service, store = drive
    service.files.return_value.delete.return_value.execute.side_effect = OSError("connection reset")

    with pytest.raises(BlobStoreError):
        await store.delete_file("f1")


@pytest.mark.asyncio
async def test_verify_remote_targets_rejects_non_folder(sheets, drive):
    sheets_service, records = sheets
    drive_service, blobs = drive
    sheets_service.spreadsheets.return_value.get.return_value.execute.return_value = {"sheets": []}
    drive_service.files.return_value.get.return_value.execute.return_value = {
        "id": "f", "name": "notes.txt", "mimeType": "text/plain",
    }

    with pytest.raises(ConfigurationError):
        await verify_remote_targets(records, blobs, "sid", "f")


@pytest.mark.asyncio
async def test_verify_remote_targets_reports_unreachable_spreadsheet(sheets, drive):
    sheets_service, records = sheets
    _, blobs = drive
    sheets_service.spreadsheets.return_value.get.return_value.execute.side_effect = http_error(404)

    with pytest.raises(ConfigurationError, match="not reachable"):
        await verify_remote_targets(records, blobs, "sid", "f")


@pytest.mark.asyncio
async def test_verify_remote_targets_accepts_folder(sheets, drive):
    sheets_service, records = sheets
    drive_service, blobs = drive
    sheets_service.spreadsheets.return_value.get.return_value.execute.return_value = {
        "sheets": [{"properties": {"sheetId": 0, "title": "Sheet1"}}]
    }
    drive_service.files.return_value.get.return_value.execute.return_value = {
        "id": "f", "name": "Screenshots", "mimeType": FOLDER_MIME_TYPE,
    }

    assert await verify_remote_targets(records, blobs, "sid", "f") == ["Sheet1"]
