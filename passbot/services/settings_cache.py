from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from passbot.db.session import session_scope
from passbot.repo import get_app_setting, get_bot

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BotSnapshot:
    id: str
    name: str
    allowed_groups: tuple[str, ...] = ()
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def restricted(self) -> bool:
        return bool(self.allowed_groups)


class SettingsCache:
    """Read-through TTL cache for bot config and global app_settings.

    Entries may be up to `ttl_seconds` stale. Misses are loaded without any
    lock, so two concurrent misses simply both hit the database.
    """

    def __init__(self, *, ttl_seconds: float = 30, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._bots: dict[str, tuple[float, BotSnapshot | None]] = {}
        self._globals: dict[str, tuple[float, str | None]] = {}

    def _fresh(self, stamp: float) -> bool:
        return (self._clock() - stamp) < self.ttl_seconds

    async def bot(self, bot_id: str) -> BotSnapshot | None:
        hit = self._bots.get(bot_id)
        if hit and self._fresh(hit[0]):
            return hit[1]

        async with session_scope() as session:
            row = await get_bot(session, bot_id)
            snap = None
            if row is not None:
                snap = BotSnapshot(
                    id=row.id,
                    name=row.name,
                    allowed_groups=tuple(str(x) for x in (row.allowed_groups or [])),
                    config=dict(row.config or {}),
                )
        self._bots[bot_id] = (self._clock(), snap)
        return snap

    async def global_value(self, key: str, fallback: str = "") -> str:
        hit = self._globals.get(key)
        if hit and self._fresh(hit[0]):
            value = hit[1]
        else:
            async with session_scope() as session:
                value = await get_app_setting(session, key)
            self._globals[key] = (self._clock(), value)
        return value if value else fallback

    async def get(self, bot_id: str | None, key: str, fallback: str = "") -> str:
        """Bot override first, then global setting, then `fallback`."""
        if bot_id:
            snap = await self.bot(bot_id)
            if snap is not None:
                value = snap.config.get(key)
                if value not in (None, ""):
                    return str(value)
        return await self.global_value(key, fallback)

    def invalidate(self, bot_id: str | None = None) -> None:
        if bot_id is None:
            self._bots.clear()
            self._globals.clear()
            return
        self._bots.pop(bot_id, None)
