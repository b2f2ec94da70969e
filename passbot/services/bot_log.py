from __future__ import annotations

import asyncio
import logging

from passbot.db.session import session_scope
from passbot.repo import add_bot_log

log = logging.getLogger(__name__)


class BotActivityLog:
    """Fire-and-forget writer for the bots' dashboard activity trail.

    A failed insert is logged and dropped; it never reaches the caller.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def record(
        self,
        bot_id: str,
        message: str,
        *,
        level: str = "info",
        user_id: str | int | None = None,
        chat_id: str | int | None = None,
    ) -> None:
        task = asyncio.create_task(self._write(bot_id, message, level, user_id, chat_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _write(self, bot_id, message, level, user_id, chat_id) -> None:
        try:
            async with session_scope() as session:
                await add_bot_log(session, bot_id, message, level=level, user_id=user_id, chat_id=chat_id)
                await session.commit()
        except Exception:
            log.exception("bot_log_write_failed", extra={"bot_id": bot_id})

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
