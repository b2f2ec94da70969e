from __future__ import annotations

import asyncio
import logging

from passbot.bot.manager import BotManager

log = logging.getLogger(__name__)


async def run_sync_loop(manager: BotManager, interval_seconds: float = 60) -> None:
    """Keep this process listening for every bot marked active.

    Covers restarts and bots switched on from the dashboard: `sync()` starts
    whatever is active in the database but missing from the registry.
    """
    log.info("sync_loop_start interval=%s", interval_seconds)
    while True:
        try:
            started = await manager.sync()
            if started:
                log.info("sync_loop_started_bots count=%s", started)
        except Exception:
            log.exception("sync_loop_error")

        await asyncio.sleep(interval_seconds)
