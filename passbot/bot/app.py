import logging
from typing import Callable

from aiogram import Dispatcher

from passbot.bot.handlers import build_router
from passbot.bot.middlewares import CorrelationIdMiddleware, HeartbeatMiddleware, RateLimitMiddleware
from passbot.flow.runner import FlowRunner

log = logging.getLogger(__name__)


def build_dispatcher(bot_id: str, *, runner: FlowRunner, touch: Callable[[str], None]) -> Dispatcher:
    dp = Dispatcher()
    dp.update.outer_middleware(HeartbeatMiddleware(bot_id, touch))
    dp.message.middleware(CorrelationIdMiddleware(bot_id))
    dp.callback_query.middleware(CorrelationIdMiddleware(bot_id))
    dp.callback_query.middleware(RateLimitMiddleware(min_interval_sec=0.4))

    dp.include_router(build_router(bot_id, runner))

    log.info("dispatcher_built", extra={"bot_id": bot_id})
    return dp
