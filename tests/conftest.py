import re
from datetime import datetime, timezone
from typing import Optional

import pytest

from shotbot.errors import BlobStoreError, RecordStoreError
from shotbot.google_stores import StoredBlob

_RANGE_RE = re.compile(r"^'((?:[^']|'')*)'!([A-Z]+)(\d+)(?::([A-Z]+)(\d+))?$")


def parse_range(range_spec: str):
    match = _RANGE_RE.match(range_spec)
    if match is None:
        raise ValueError(f"unsupported range {range_spec!r}")
    table, col, row, end_col, end_row = match.groups()
    table = table.replace("''", "'")
    start = int(row)
    end = int(end_row) if end_row else start
    return table, col, start, end_col or col, end


class FakeRecordStore:
    """In-memory spreadsheet: {table: {(col, row): value}}."""

    def __init__(self):
        self.tables: dict[str, dict[tuple[str, int], str]] = {}
        self.calls: list[tuple] = []
        self.fail_on: set[str] = set()

    def _maybe_fail(self, op: str):
        self.calls.append((op,))
        if op in self.fail_on:
            raise RecordStoreError(f"sheets {op} failed: simulated")

    def _grid(self, table: str) -> dict:
        if table not in self.tables:
            raise RecordStoreError(f"Unable to parse range: {table}")
        return self.tables[table]

    def cell(self, table: str, col: str, row: int) -> str:
        return self.tables[table].get((col, row), "")

    def column(self, table: str, col: str, start: int, end: int) -> list[str]:
        return [self.tables[table].get((col, r), "") for r in range(start, end + 1)]

    async def get_range(self, spreadsheet_id, range_spec):
        self._maybe_fail("get")
        table, col, start, _, end = parse_range(range_spec)
        self._grid(table)
        values = [[v] for v in self.column(table, col, start, end)]
        # mimic the API trimming trailing blanks
        while values and values[-1] == [""]:
            values.pop()
        return [row if row != [""] else [] for row in values]

    async def batch_get_ranges(self, spreadsheet_id, range_specs):
        self._maybe_fail("batchGet")
        out = []
        for spec in range_specs:
            table, col, start, _, end = parse_range(spec)
            values = [[v] for v in self.column(table, col, start, end) if v]
            out.append(values)
        return out

    async def update_range(self, spreadsheet_id, range_spec, values, value_input_option="USER_ENTERED"):
        self._maybe_fail("update")
        table, col, start, _, _ = parse_range(range_spec)
        grid = self._grid(table)
        for offset, row in enumerate(values):
            grid[(col, start + offset)] = row[0] if row else ""

    async def batch_clear_ranges(self, spreadsheet_id, range_specs):
        self._maybe_fail("batchClear")
        for spec in range_specs:
            table, col, start, _, end = parse_range(spec)
            for r in range(start, end + 1):
                self._grid(table).pop((col, r), None)

    async def list_tables(self, spreadsheet_id):
        self._maybe_fail("list")
        return list(self.tables)

    async def add_table(self, spreadsheet_id, title):
        self._maybe_fail("addSheet")
        self.tables.setdefault(title, {})


class FakeBlobStore:
    def __init__(self):
        self.files: dict[str, bytes] = {}
        self.metadata: dict[str, dict] = {}
        self.deleted: list[str] = []
        self.fail_create = False
        self.fail_delete_ids: set[str] = set()
        self._counter = 0

    async def create_file(self, name, parent_folder_id, content, mime_type, description: Optional[str] = None):
        if self.fail_create:
            raise BlobStoreError("drive create failed: simulated")
        self._counter += 1
        file_id = f"blob-{self._counter}"
        self.files[file_id] = content
        self.metadata[file_id] = {
            "name": name,
            "parent": parent_folder_id,
            "mime_type": mime_type,
            "description": description,
        }
        return StoredBlob(id=file_id, web_view_link=f"https://drive.example/{file_id}")

    async def delete_file(self, file_id):
        if file_id in self.fail_delete_ids:
            raise BlobStoreError(f"drive delete failed for {file_id}: simulated")
        self.files.pop(file_id, None)
        self.deleted.append(file_id)


@pytest.fixture
def records():
    return FakeRecordStore()


@pytest.fixture
def blobs():
    return FakeBlobStore()


@pytest.fixture
def tuesday():
    return datetime(2024, 5, 14, 15, 30, tzinfo=timezone.utc)
