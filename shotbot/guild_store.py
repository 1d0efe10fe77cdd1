from __future__ import annotations

import asyncio
import json
import os
import sqlite3
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class GuildConfig:
    guild_id: int
    guild_name: str
    prompt_channel_id: Optional[int] = None
    prompt_message_id: Optional[int] = None
    ticket_category_id: Optional[int] = None
    ticket_category_name: Optional[str] = None
    admin_role_ids: list[int] = field(default_factory=list)
    shutdown_role_id: Optional[int] = None
    shutdown_role_name: Optional[str] = None
    spreadsheet_id: Optional[str] = None
    sheet_name: Optional[str] = None
    drive_folder_id: Optional[str] = None


def _apply_sqlite_pragmas(conn: sqlite3.Connection):
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=10000;")  # ms


def _row_to_config(row: sqlite3.Row) -> GuildConfig:
    return GuildConfig(
        guild_id=int(row["guild_id"]),
        guild_name=row["guild_name"],
        prompt_channel_id=row["prompt_channel_id"],
        prompt_message_id=row["prompt_message_id"],
        ticket_category_id=row["ticket_category_id"],
        ticket_category_name=row["ticket_category_name"],
        admin_role_ids=[int(r) for r in json.loads(row["admin_role_ids"] or "[]")],
        shutdown_role_id=row["shutdown_role_id"],
        shutdown_role_name=row["shutdown_role_name"],
        spreadsheet_id=row["spreadsheet_id"],
        sheet_name=row["sheet_name"],
        drive_folder_id=row["drive_folder_id"],
    )


class GuildStore:
    """sqlite-backed guild configuration plus a small key/value state table."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        # serialize DB writes to avoid sqlite "database is locked"
        self.write_lock = asyncio.Lock()

    def connect(self) -> sqlite3.Connection:
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        _apply_sqlite_pragmas(conn)
        return conn

    def init_db(self):
        with self.connect() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS guild_config (
                guild_id INTEGER PRIMARY KEY,
                guild_name TEXT NOT NULL,
                prompt_channel_id INTEGER,
                prompt_message_id INTEGER,
                ticket_category_id INTEGER,
                ticket_category_name TEXT,
                admin_role_ids TEXT NOT NULL DEFAULT '[]',
                shutdown_role_id INTEGER,
                shutdown_role_name TEXT,
                spreadsheet_id TEXT,
                sheet_name TEXT,
                drive_folder_id TEXT,
                updated_at_utc TEXT
            );
            """)
            conn.execute("""
            CREATE TABLE IF NOT EXISTS guild_state (
                guild_id INTEGER NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (guild_id, key)
            );
            """)

    async def save(self, config: GuildConfig, updated_at_utc: str):
        async with self.write_lock:
            with self.connect() as conn:
                conn.execute("""
                    INSERT INTO guild_config(
                        guild_id, guild_name, prompt_channel_id, prompt_message_id,
                        ticket_category_id, ticket_category_name, admin_role_ids,
                        shutdown_role_id, shutdown_role_name,
                        spreadsheet_id, sheet_name, drive_folder_id, updated_at_utc
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(guild_id) DO UPDATE SET
                        guild_name=excluded.guild_name,
                        prompt_channel_id=excluded.prompt_channel_id,
                        prompt_message_id=excluded.prompt_message_id,
                        ticket_category_id=excluded.ticket_category_id,
                        ticket_category_name=excluded.ticket_category_name,
                        admin_role_ids=excluded.admin_role_ids,
                        shutdown_role_id=excluded.shutdown_role_id,
                        shutdown_role_name=excluded.shutdown_role_name,
                        spreadsheet_id=excluded.spreadsheet_id,
                        sheet_name=excluded.sheet_name,
                        drive_folder_id=excluded.drive_folder_id,
                        updated_at_utc=excluded.updated_at_utc
                """, (
                    config.guild_id, config.guild_name,
                    config.prompt_channel_id, config.prompt_message_id,
                    config.ticket_category_id, config.ticket_category_name,
                    json.dumps(config.admin_role_ids),
                    config.shutdown_role_id, config.shutdown_role_name,
                    config.spreadsheet_id, config.sheet_name, config.drive_folder_id,
                    updated_at_utc,
                ))

    def get(self, guild_id: int) -> GuildConfig | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM guild_config WHERE guild_id=?", (guild_id,)).fetchone()
            return _row_to_config(row) if row else None

    def all(self) -> list[GuildConfig]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM guild_config ORDER BY guild_id").fetchall()
            return [_row_to_config(row) for row in rows]

    # ---- per-guild state ----
    def gset(self, guild_id: int, key: str, value: str):
        with self.connect() as conn:
            conn.execute("""
                INSERT INTO guild_state(guild_id, key, value) VALUES(?, ?, ?)
                ON CONFLICT(guild_id, key) DO UPDATE SET value=excluded.value
            """, (guild_id, key, value))

    def gget(self, guild_id: int, key: str) -> str | None:
        with self.connect() as conn:
            row = conn.execute("""
                SELECT value FROM guild_state WHERE guild_id=? AND key=?
            """, (guild_id, key)).fetchone()
            return row["value"] if row else None
