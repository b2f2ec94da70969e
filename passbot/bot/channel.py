from __future__ import annotations

from typing import Protocol

from aiogram import Bot
from aiogram.types import BufferedInputFile

from passbot.bot.keyboards import ButtonRows, kb_rows


class Channel(Protocol):
    """What the flow and the orchestrator need from a chat transport."""

    async def send_text(self, chat_id: int, text: str, *, buttons: ButtonRows | None = None, html: bool = False) -> int: ...

    async def send_photo(
        self,
        chat_id: int,
        photo: str | bytes,
        *,
        caption: str | None = None,
        buttons: ButtonRows | None = None,
        html: bool = False,
    ) -> int: ...

    async def delete_message(self, chat_id: int, message_id: int) -> None: ...

    async def edit_message_text(self, chat_id: int, message_id: int, text: str, *, html: bool = False) -> None: ...


class AiogramChannel:
    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    async def send_text(self, chat_id: int, text: str, *, buttons: ButtonRows | None = None, html: bool = False) -> int:
        msg = await self.bot.send_message(
            chat_id,
            text,
            reply_markup=kb_rows(buttons),
            parse_mode="HTML" if html else None,
        )
        return msg.message_id

    async def send_photo(
        self,
        chat_id: int,
        photo: str | bytes,
        *,
        caption: str | None = None,
        buttons: ButtonRows | None = None,
        html: bool = False,
    ) -> int:
        # bytes are uploaded, strings are URLs / file ids
        media = BufferedInputFile(photo, filename="pix.png") if isinstance(photo, bytes) else photo
        msg = await self.bot.send_photo(
            chat_id,
            media,
            caption=caption,
            reply_markup=kb_rows(buttons),
            parse_mode="HTML" if html else None,
        )
        return msg.message_id

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        await self.bot.delete_message(chat_id, message_id)

    async def edit_message_text(self, chat_id: int, message_id: int, text: str, *, html: bool = False) -> None:
        await self.bot.edit_message_text(
            text,
            chat_id=chat_id,
            message_id=message_id,
            parse_mode="HTML" if html else None,
        )
