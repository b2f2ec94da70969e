import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

# context fields copied from `extra=` into the JSON line
CONTEXT_FIELDS = ("corr_id", "update_id", "bot_id", "tg_id", "chat_id", "tx_id", "order_id", "source")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for k in CONTEXT_FIELDS:
            if hasattr(record, k):
                payload[k] = getattr(record, k)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging() -> None:
    """Structured JSON logs to stdout."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.handlers.clear()
    root.addHandler(handler)
    # aiogram logs every polled update at INFO
    if level != "DEBUG":
        logging.getLogger("aiogram.event").setLevel(logging.WARNING)
