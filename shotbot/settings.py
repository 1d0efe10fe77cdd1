from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive.file",
]


@dataclass
class Settings:
    discord_token: str
    spreadsheet_id: str
    drive_folder_id: str
    google_credentials_json: Optional[str] = None
    google_credentials_file: Optional[str] = None
    sheet_name: str = "Sheet1"
    db_dir: str = "db"
    log_dir: str = "logs"
    log_level: str = "INFO"
    ephemeral_delete_seconds: int = 10
    blank_ticket_timeout_seconds: int = 60

    @property
    def config_db_path(self) -> str:
        return os.path.join(self.db_dir, "shotbot_config.db")


def _int_env(name: str, default: int) -> int:
    val = os.getenv(name)
    if not val:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def load_settings(dotenv: bool = True) -> Settings:
    """Load settings from the environment (and `.env` unless disabled).

    Raises ConfigurationError naming every missing required variable.
    """
    if dotenv:
        load_dotenv()

    discord_token = (os.getenv("DISCORD_TOKEN") or "").strip()
    spreadsheet_id = (os.getenv("SPREADSHEET_ID") or "").strip()
    drive_folder_id = (os.getenv("GOOGLE_DRIVE_FOLDER_ID") or "").strip()
    credentials_json = os.getenv("GOOGLE_CREDENTIALS_JSON") or None
    credentials_file = os.getenv("GOOGLE_CREDENTIALS_FILE") or None

    missing = [
        name
        for name, value in (
            ("DISCORD_TOKEN", discord_token),
            ("SPREADSHEET_ID", spreadsheet_id),
            ("GOOGLE_DRIVE_FOLDER_ID", drive_folder_id),
        )
        if not value
    ]
    if not credentials_json and not credentials_file:
        missing.append("GOOGLE_CREDENTIALS_JSON or GOOGLE_CREDENTIALS_FILE")
    if missing:
        raise ConfigurationError(
            "Missing required configuration: " + ", ".join(missing)
            + ". Check your .env file and WorkingDirectory."
        )

    return Settings(
        discord_token=discord_token,
        spreadsheet_id=spreadsheet_id,
        drive_folder_id=drive_folder_id,
        google_credentials_json=credentials_json,
        google_credentials_file=credentials_file,
        sheet_name=(os.getenv("SHEET_NAME") or "Sheet1").strip() or "Sheet1",
        db_dir=os.getenv("DB_DIR", "db"),
        log_dir=os.getenv("LOG_DIR", "logs"),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        ephemeral_delete_seconds=_int_env("EPHEMERAL_DELETE_SECONDS", 10),
        blank_ticket_timeout_seconds=_int_env("BLANK_TICKET_TIMEOUT_SECONDS", 60),
    )
