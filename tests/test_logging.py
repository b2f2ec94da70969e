import json
import logging

from passbot.core.config import make_async_db_url
from passbot.core.logging import JsonFormatter


def test_json_formatter_carries_context():
    record = logging.LogRecord("passbot.test", logging.INFO, __file__, 1, "order_paid order=%s", ("o-1",), None)
    record.tx_id = "tx-1"
    record.bot_id = "bot-1"
    record.unrelated = "x"

    line = json.loads(JsonFormatter().format(record))

    assert line["msg"] == "order_paid order=o-1"
    assert line["level"] == "INFO"
    assert line["tx_id"] == "tx-1"
    assert line["bot_id"] == "bot-1"
    assert "unrelated" not in line


def test_make_async_db_url():
    assert make_async_db_url("postgres://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
    assert make_async_db_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
    assert make_async_db_url("sqlite:///x.db") == "sqlite+aiosqlite:///x.db"
