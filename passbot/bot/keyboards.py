from __future__ import annotations

from typing import Sequence

from aiogram.types import InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

# rows of (label, callback_data)
ButtonRows = Sequence[Sequence[tuple[str, str]]]


def kb_rows(rows: ButtonRows | None) -> InlineKeyboardMarkup | None:
    if not rows:
        return None
    b = InlineKeyboardBuilder()
    for row in rows:
        for text, data in row:
            b.button(text=text, callback_data=data)
    b.adjust(*[len(row) for row in rows])
    return b.as_markup()
