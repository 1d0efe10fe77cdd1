"""Async adapters over the Google Sheets and Drive v3 APIs.

The googleapiclient requests are blocking, so every call runs through
asyncio.to_thread. httplib2 connections are not thread-safe; each worker
thread builds and keeps its own service object.
"""
from __future__ import annotations

import asyncio
import io
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import httplib2
from google.auth.exceptions import GoogleAuthError
from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

from .errors import BlobStoreError, ConfigurationError, RecordStoreError
from .settings import GOOGLE_SCOPES, Settings
from .slots import quote_table_name

logger = logging.getLogger("shotbot.google")

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
_TRANSPORT_ERRORS = (HttpError, GoogleAuthError, httplib2.HttpLib2Error, OSError)


def load_google_credentials(settings: Settings) -> Credentials:
    if settings.google_credentials_json:
        try:
            info = json.loads(settings.google_credentials_json)
        except ValueError as exc:
            raise ConfigurationError("GOOGLE_CREDENTIALS_JSON is not valid JSON.") from exc
        try:
            return Credentials.from_service_account_info(info, scopes=GOOGLE_SCOPES)
        except ValueError as exc:
            raise ConfigurationError(f"GOOGLE_CREDENTIALS_JSON is not a service account key: {exc}") from exc
    try:
        return Credentials.from_service_account_file(settings.google_credentials_file, scopes=GOOGLE_SCOPES)
    except (OSError, ValueError) as exc:
        raise ConfigurationError(
            f"Unable to read service account file {settings.google_credentials_file!r}."
        ) from exc


def describe_http_error(exc: BaseException) -> str:
    if isinstance(exc, HttpError):
        status = getattr(exc.resp, "status", "?")
        return f"HTTP {status}: {exc}"
    return f"{type(exc).__name__}: {exc}"


class _ThreadLocalService:
    def __init__(self, factory: Callable[[], Any]):
        self._factory = factory
        self._local = threading.local()

    def get(self) -> Any:
        service = getattr(self._local, "service", None)
        if service is None:
            service = self._factory()
            self._local.service = service
        return service


@dataclass(frozen=True)
class StoredBlob:
    id: str
    web_view_link: str


class SheetsRecordStore:
    """Record store backed by the Sheets values API."""

    def __init__(self, service_factory: Callable[[], Any]):
        self._services = _ThreadLocalService(service_factory)

    @classmethod
    def from_credentials(cls, credentials: Credentials) -> "SheetsRecordStore":
        return cls(lambda: build("sheets", "v4", credentials=credentials, cache_discovery=False))

    async def _call(self, op: str, target: str, make_request: Callable[[Any], Any]) -> Any:
        def _run():
            return make_request(self._services.get()).execute()

        try:
            return await asyncio.to_thread(_run)
        except _TRANSPORT_ERRORS as exc:
            raise RecordStoreError(f"sheets {op} failed for {target}: {describe_http_error(exc)}") from exc

    async def get_range(self, spreadsheet_id: str, range_spec: str) -> list[list[str]]:
        data = await self._call(
            "get",
            range_spec,
            lambda svc: svc.spreadsheets().values().get(spreadsheetId=spreadsheet_id, range=range_spec),
        )
        return data.get("values", [])

    async def batch_get_ranges(self, spreadsheet_id: str, range_specs: Sequence[str]) -> list[list[list[str]]]:
        if not range_specs:
            return []
        data = await self._call(
            "batchGet",
            f"{len(range_specs)} ranges",
            lambda svc: svc.spreadsheets().values().batchGet(spreadsheetId=spreadsheet_id, ranges=list(range_specs)),
        )
        value_ranges = data.get("valueRanges", [])
        # responses come back in request order
        return [vr.get("values", []) for vr in value_ranges]

    async def update_range(
        self,
        spreadsheet_id: str,
        range_spec: str,
        values: Sequence[Sequence[str]],
        value_input_option: str = "USER_ENTERED",
    ) -> None:
        await self._call(
            "update",
            range_spec,
            lambda svc: svc.spreadsheets().values().update(
                spreadsheetId=spreadsheet_id,
                range=range_spec,
                valueInputOption=value_input_option,
                body={"values": [list(row) for row in values]},
            ),
        )

    async def batch_clear_ranges(self, spreadsheet_id: str, range_specs: Sequence[str]) -> None:
        if not range_specs:
            return
        await self._call(
            "batchClear",
            f"{len(range_specs)} ranges",
            lambda svc: svc.spreadsheets().values().batchClear(
                spreadsheetId=spreadsheet_id, body={"ranges": list(range_specs)}
            ),
        )

    async def append_row(
        self,
        spreadsheet_id: str,
        table: str,
        values: Sequence[str],
        value_input_option: str = "USER_ENTERED",
    ) -> None:
        await self._call(
            "append",
            table,
            lambda svc: svc.spreadsheets().values().append(
                spreadsheetId=spreadsheet_id,
                range=quote_table_name(table),
                valueInputOption=value_input_option,
                insertDataOption="INSERT_ROWS",
                body={"values": [list(values)]},
            ),
        )

    async def list_tables(self, spreadsheet_id: str) -> list[str]:
        data = await self._call(
            "get",
            spreadsheet_id,
            lambda svc: svc.spreadsheets().get(
                spreadsheetId=spreadsheet_id, fields="sheets(properties(sheetId,title))"
            ),
        )
        return [sheet["properties"]["title"] for sheet in data.get("sheets", [])]

    async def add_table(self, spreadsheet_id: str, title: str) -> None:
        await self._call(
            "addSheet",
            title,
            lambda svc: svc.spreadsheets().batchUpdate(
                spreadsheetId=spreadsheet_id,
                body={"requests": [{"addSheet": {"properties": {"title": title}}}]},
            ),
        )


class DriveBlobStore:
    """Blob store backed by Drive v3 files."""

    def __init__(self, service_factory: Callable[[], Any]):
        self._services = _ThreadLocalService(service_factory)

    @classmethod
    def from_credentials(cls, credentials: Credentials) -> "DriveBlobStore":
        return cls(lambda: build("drive", "v3", credentials=credentials, cache_discovery=False))

    async def _call(self, op: str, target: str, make_request: Callable[[Any], Any]) -> Any:
        def _run():
            return make_request(self._services.get()).execute()

        try:
            return await asyncio.to_thread(_run)
        except _TRANSPORT_ERRORS as exc:
            raise BlobStoreError(f"drive {op} failed for {target}: {describe_http_error(exc)}") from exc

    async def create_file(
        self,
        name: str,
        parent_folder_id: str,
        content: bytes,
        mime_type: str,
        description: Optional[str] = None,
    ) -> StoredBlob:
        metadata: dict[str, Any] = {"name": name, "parents": [parent_folder_id]}
        if description:
            metadata["description"] = description

        def _request(svc):
            media = MediaIoBaseUpload(io.BytesIO(content), mimetype=mime_type, resumable=False)
            return svc.files().create(
                body=metadata,
                media_body=media,
                fields="id, webViewLink",
                supportsAllDrives=True,
            )

        data = await self._call("create", name, _request)
        return StoredBlob(id=data["id"], web_view_link=data.get("webViewLink", ""))

    async def delete_file(self, file_id: str) -> None:
        await self._call(
            "delete",
            file_id,
            lambda svc: svc.files().delete(fileId=file_id, supportsAllDrives=True),
        )

    async def describe(self, file_id: str) -> dict[str, Any]:
        return await self._call(
            "get",
            file_id,
            lambda svc: svc.files().get(fileId=file_id, fields="id, name, mimeType", supportsAllDrives=True),
        )


async def verify_remote_targets(
    records: SheetsRecordStore,
    blobs: DriveBlobStore,
    spreadsheet_id: str,
    folder_id: str,
) -> list[str]:
    """Fail fast when the spreadsheet or the Drive folder is unreachable.

    Returns the spreadsheet's table titles. Raises ConfigurationError.
    """
    try:
        tables = await records.list_tables(spreadsheet_id)
    except RecordStoreError as exc:
        raise ConfigurationError(f"Spreadsheet {spreadsheet_id} is not reachable: {exc}") from exc
    try:
        folder = await blobs.describe(folder_id)
    except BlobStoreError as exc:
        raise ConfigurationError(f"Drive folder {folder_id} is not reachable: {exc}") from exc
    if folder.get("mimeType") != FOLDER_MIME_TYPE:
        raise ConfigurationError(f"Drive id {folder_id} is not a folder (mimeType={folder.get('mimeType')}).")
    logger.info(
        "google_targets_verified spreadsheet_id=%s tables=%s folder_id=%s folder_name=%r",
        spreadsheet_id, len(tables), folder_id, folder.get("name"),
    )
    return tables
