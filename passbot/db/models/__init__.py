from .app_setting import AppSetting
from .bot import Bot
from .bot_log import BotLog
from .chat_session import ChatSession
from .order import Order, OrderStatus
from .promo_code import PromoCode, normalize_code

__all__ = [
    "AppSetting",
    "Bot",
    "BotLog",
    "ChatSession",
    "Order",
    "OrderStatus",
    "PromoCode",
    "normalize_code",
]
