from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from aiogram import Bot, Dispatcher

from passbot.bot.channel import AiogramChannel, Channel
from passbot.db.session import session_scope
from passbot.repo import get_bot, list_active_bots, set_bot_status, touch_bot_last_seen
from passbot.services.bot_log import BotActivityLog

log = logging.getLogger(__name__)

MODE_WEBHOOK = "webhook"
MODE_POLLING = "polling"


def default_bot_factory(token: str) -> Bot:
    return Bot(token=token)


@dataclass
class BotHandle:
    bot_id: str
    bot: Bot
    dp: Dispatcher
    mode: str
    task: asyncio.Task | None = None


@dataclass(frozen=True)
class LifecycleResult:
    ok: bool
    error: str | None = None
    mode: str | None = None


@dataclass(frozen=True)
class _BotRecord:
    token: str | None
    status: str
    use_webhooks: bool
    webhook_url: str | None


class BotManager:
    """Registry of the bots this process listens for.

    One handle per bot id; `start` replaces an existing handle instead of
    adding a second listener. Nothing here is module state, so tests can run
    several isolated managers.
    """

    def __init__(
        self,
        *,
        dispatcher_factory: Callable[[str], Dispatcher],
        bot_factory: Callable[[str], Bot] = default_bot_factory,
        activity: BotActivityLog | None = None,
        public_base_url: str = "",
        webhook_secret: str | None = None,
        heartbeat_interval: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._dispatcher_factory = dispatcher_factory
        self._bot_factory = bot_factory
        self._activity = activity
        self._public_base_url = public_base_url.rstrip("/")
        self._webhook_secret = webhook_secret
        self._heartbeat_interval = heartbeat_interval
        self._clock = clock

        self._handles: dict[str, BotHandle] = {}
        # bots built only to message users of bots not registered here
        self._transient: dict[str, Bot] = {}
        self._last_touch: dict[str, float] = {}
        self._tasks: set[asyncio.Task] = set()
        # start/stop of one bot never interleave
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, bot_id: str) -> asyncio.Lock:
        lock = self._locks.get(bot_id)
        if lock is None:
            lock = self._locks[bot_id] = asyncio.Lock()
        return lock

    # ---- lifecycle -----------------------------------------------------------
    async def start(self, bot_id: str) -> LifecycleResult:
        async with self._lock(bot_id):
            return await self._start(bot_id)

    async def stop(self, bot_id: str) -> LifecycleResult:
        async with self._lock(bot_id):
            return await self._stop(bot_id)

    async def _start(self, bot_id: str) -> LifecycleResult:
        old = self._handles.pop(bot_id, None)
        if old is not None:
            log.info("bot_restart", extra={"bot_id": bot_id})
            await self._close(old)

        record = await self._load(bot_id)
        if record is None:
            return LifecycleResult(False, "bot not found")
        if not record.token:
            return LifecycleResult(False, "bot has no token")

        bot = self._bot_factory(record.token)
        dp = self._dispatcher_factory(bot_id)
        webhook_url = self._webhook_url(bot_id, record)
        try:
            if record.use_webhooks and webhook_url:
                await bot.set_webhook(webhook_url, secret_token=self._webhook_secret)
                handle = BotHandle(bot_id, bot, dp, MODE_WEBHOOK)
            else:
                await bot.delete_webhook(drop_pending_updates=True)
                task = asyncio.create_task(dp.start_polling(bot, handle_signals=False), name=f"polling:{bot_id}")
                handle = BotHandle(bot_id, bot, dp, MODE_POLLING, task)
        except Exception as e:
            log.exception("bot_start_failed", extra={"bot_id": bot_id})
            await self._close_session(bot)
            return LifecycleResult(False, str(e))

        # a webhook handle may have been built on demand while we awaited Telegram
        stale = self._handles.get(bot_id)
        self._handles[bot_id] = handle
        if stale is not None:
            await self._close(stale)
        async with session_scope() as session:
            await set_bot_status(session, bot_id, "active", seen=True)
            await session.commit()

        log.info("bot_started mode=%s", handle.mode, extra={"bot_id": bot_id})
        self._record(bot_id, f"Bot iniciado (Modo: {'Webhook' if handle.mode == MODE_WEBHOOK else 'Polling'})", "success")
        return LifecycleResult(True, mode=handle.mode)

    async def _stop(self, bot_id: str) -> LifecycleResult:
        handle = self._handles.pop(bot_id, None)
        if handle is not None:
            await self._close(handle)

        record = await self._load(bot_id)
        if record is None:
            return LifecycleResult(False, "bot not found")

        # whoever set the webhook, make Telegram stop pushing updates
        if record.token:
            bot = self._bot_factory(record.token)
            try:
                await bot.delete_webhook(drop_pending_updates=True)
            except Exception:
                log.warning("bot_delete_webhook_failed", extra={"bot_id": bot_id}, exc_info=True)
            finally:
                await self._close_session(bot)

        transient = self._transient.pop(bot_id, None)
        if transient is not None:
            await self._close_session(transient)

        async with session_scope() as session:
            await set_bot_status(session, bot_id, "inactive")
            await session.commit()

        log.info("bot_stopped", extra={"bot_id": bot_id})
        self._record(bot_id, "Bot parado pelo painel", "warning")
        return LifecycleResult(True)

    async def sync(self) -> int:
        """Start every bot marked active that this process is not running. Returns how many started."""
        async with session_scope() as session:
            rows = await list_active_bots(session)
            pending = [row.id for row in rows if row.id not in self._handles and row.token]

        started = 0
        for bot_id in pending:
            log.info("bot_sync_start", extra={"bot_id": bot_id})
            result = await self.start(bot_id)
            if result.ok:
                started += 1
        return started

    def list(self) -> list[str]:
        return sorted(self._handles)

    async def shutdown(self) -> None:
        handles, self._handles = list(self._handles.values()), {}
        for handle in handles:
            await self._close(handle)
        transient, self._transient = list(self._transient.values()), {}
        for bot in transient:
            await self._close_session(bot)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        log.info("bot_manager_shutdown count=%s", len(handles))

    # ---- webhook intake ------------------------------------------------------
    async def feed_webhook_update(self, bot_id: str, update: dict[str, Any]) -> bool:
        """Process one Telegram update pushed to us. False if the bot does not take webhooks."""
        handle = self._handles.get(bot_id)
        if handle is None:
            record = await self._load(bot_id)
            if record is None or record.status != "active" or not record.use_webhooks or not record.token:
                return False
            # another replica registered the webhook; serve it here without touching Telegram
            bot = self._bot_factory(record.token)
            handle = BotHandle(bot_id, bot, self._dispatcher_factory(bot_id), MODE_WEBHOOK)
            existing = self._handles.setdefault(bot_id, handle)
            if existing is not handle:
                await self._close_session(bot)
                handle = existing
            else:
                log.info("bot_webhook_handle_built", extra={"bot_id": bot_id})

        await handle.dp.feed_webhook_update(handle.bot, update)
        return True

    # ---- helpers for other components -------------------------------------------
    async def channel(self, bot_id: str) -> Channel | None:
        handle = self._handles.get(bot_id)
        if handle is not None:
            return AiogramChannel(handle.bot)
        bot = self._transient.get(bot_id)
        if bot is None:
            record = await self._load(bot_id)
            if record is None or not record.token:
                return None
            bot = self._transient.setdefault(bot_id, self._bot_factory(record.token))
        return AiogramChannel(bot)

    def touch(self, bot_id: str) -> None:
        """Heartbeat: persist last_seen at most once per interval per bot, without waiting."""
        now = self._clock()
        last = self._last_touch.get(bot_id)
        if last is not None and (now - last) < self._heartbeat_interval:
            return
        self._last_touch[bot_id] = now
        task = asyncio.create_task(self._write_last_seen(bot_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _write_last_seen(self, bot_id: str) -> None:
        try:
            async with session_scope() as session:
                await touch_bot_last_seen(session, bot_id)
                await session.commit()
        except Exception:
            log.warning("bot_heartbeat_failed", extra={"bot_id": bot_id}, exc_info=True)

    # ---- internals -----------------------------------------------------------
    async def _load(self, bot_id: str) -> _BotRecord | None:
        async with session_scope() as session:
            row = await get_bot(session, bot_id)
            if row is None:
                return None
            return _BotRecord(
                token=(row.token or "").strip() or None,
                status=row.status,
                use_webhooks=bool(row.use_webhooks),
                webhook_url=row.webhook_url,
            )

    def _webhook_url(self, bot_id: str, record: _BotRecord) -> str | None:
        if record.webhook_url:
            return record.webhook_url
        if self._public_base_url:
            return f"{self._public_base_url}/bot/{bot_id}/webhook"
        return None

    async def _close(self, handle: BotHandle) -> None:
        task = handle.task
        if task is not None and not task.done():
            try:
                await handle.dp.stop_polling()
            except RuntimeError:
                # polling loop not entered yet
                task.cancel()
            try:
                await asyncio.wait_for(task, timeout=10)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            except Exception:
                log.exception("bot_polling_task_error", extra={"bot_id": handle.bot_id})
        await self._close_session(handle.bot)

    async def _close_session(self, bot: Bot) -> None:
        try:
            await bot.session.close()
        except Exception:
            log.warning("bot_session_close_failed", exc_info=True)

    def _record(self, bot_id: str, message: str, level: str) -> None:
        if self._activity is not None:
            self._activity.record(bot_id, message, level=level)
