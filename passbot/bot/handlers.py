from __future__ import annotations

import logging

from aiogram import Bot, F, Router
from aiogram.filters import CommandStart
from aiogram.types import CallbackQuery, Message

from passbot.bot.channel import AiogramChannel
from passbot.flow.engine import CB_CHECK_PAYMENT, Button, Event, Start, Text
from passbot.flow.runner import FlowRunner, Turn

log = logging.getLogger(__name__)

GENERIC_ERROR_TEXT = "❌ Ocorreu um erro inesperado. Tente novamente em instantes."


def build_router(bot_id: str, runner: FlowRunner) -> Router:
    """Routers attach to a single dispatcher, so every bot gets its own."""
    router = Router(name=f"flow:{bot_id}")

    async def dispatch(bot: Bot, chat, user, event: Event, corr_id: str | None) -> None:
        turn = Turn(
            channel=AiogramChannel(bot),
            bot_id=bot_id,
            user_id=str(user.id),
            chat_id=chat.id,
            chat_type=chat.type,
        )
        try:
            await runner.handle(turn, event)
        except Exception:
            log.exception("flow_handler_error", extra={"corr_id": corr_id, "bot_id": bot_id, "tg_id": user.id, "chat_id": chat.id})
            try:
                await bot.send_message(chat.id, GENERIC_ERROR_TEXT)
            except Exception:
                pass

    @router.message(CommandStart())
    async def on_start(message: Message, bot: Bot, corr_id: str | None = None) -> None:
        if message.from_user is None:
            return
        await dispatch(bot, message.chat, message.from_user, Start(), corr_id)

    @router.message(F.text)
    async def on_text(message: Message, bot: Bot, corr_id: str | None = None) -> None:
        if message.from_user is None:
            return
        await dispatch(bot, message.chat, message.from_user, Text(message.text or ""), corr_id)

    @router.callback_query(F.data)
    async def on_button(cb: CallbackQuery, bot: Bot, corr_id: str | None = None) -> None:
        try:
            await cb.answer("⏳ Verificando..." if cb.data == CB_CHECK_PAYMENT else None)
        except Exception:
            pass
        if cb.message is None:
            return
        await dispatch(bot, cb.message.chat, cb.from_user, Button(cb.data, cb.message.message_id), corr_id)

    return router
