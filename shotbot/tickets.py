from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("shotbot.tickets")

TICKET_PREFIX = "ticket-"
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".gif")


def ticket_channel_name(username: str, user_id: int, discriminator: str | None = None) -> str:
    slug = re.sub(r"[^a-zA-Z0-9_-]", "", username or "").lower() or "user"
    suffix = discriminator if discriminator and discriminator != "0" else str(user_id)[-4:]
    return f"{TICKET_PREFIX}{slug}-{suffix}"


def is_ticket_channel(name: str, parent_id: Optional[int], category_id: Optional[int]) -> bool:
    return bool(category_id) and parent_id == category_id and name.startswith(TICKET_PREFIX)


def is_image_attachment(filename: str, content_type: Optional[str]) -> bool:
    if content_type and content_type.lower().startswith("image/"):
        return True
    return (filename or "").lower().endswith(IMAGE_EXTENSIONS)


class TicketRegistry:
    """Open ticket channels per (guild, user) and pending cleanup timers per channel."""

    def __init__(self):
        self._open: dict[tuple[int, int], int] = {}
        self._timers: dict[int, asyncio.Task] = {}

    def open(self, guild_id: int, user_id: int, channel_id: int) -> None:
        self._open[(guild_id, user_id)] = channel_id

    def channel_for(self, guild_id: int, user_id: int) -> Optional[int]:
        return self._open.get((guild_id, user_id))

    def close(self, guild_id: int, user_id: int) -> Optional[int]:
        return self._open.pop((guild_id, user_id), None)

    def forget_channel(self, channel_id: int) -> Optional[tuple[int, int]]:
        """Drop every reference to a deleted channel. Returns the owner key, if any."""
        self.cancel_cleanup(channel_id)
        for key, open_channel_id in list(self._open.items()):
            if open_channel_id == channel_id:
                del self._open[key]
                return key
        return None

    def schedule_cleanup(
        self,
        channel_id: int,
        delay_seconds: float,
        callback: Callable[[], Awaitable[None]],
    ) -> asyncio.Task:
        self.cancel_cleanup(channel_id)

        async def _run():
            await asyncio.sleep(delay_seconds)
            # past this point the timer can no longer be cancelled by activity
            self._timers.pop(channel_id, None)
            try:
                await callback()
            except Exception:
                logger.exception("ticket_cleanup_failed channel_id=%s", channel_id)

        task = asyncio.create_task(_run())
        self._timers[channel_id] = task
        return task

    def cancel_cleanup(self, channel_id: int) -> bool:
        task = self._timers.pop(channel_id, None)
        if task is None:
            return False
        task.cancel()
        return True

    def has_pending_cleanup(self, channel_id: int) -> bool:
        return channel_id in self._timers

    def cancel_all(self) -> None:
        for channel_id in list(self._timers):
            self.cancel_cleanup(channel_id)
