from sqlalchemy import select

from conftest import add_order
from passbot.db.models import BotLog
from passbot.db.session import dispose_engine, session_scope
from passbot.services.bot_log import BotActivityLog
from passbot.services.orchestrator import Orchestrator


async def all_logs() -> list[BotLog]:
    async with session_scope() as session:
        res = await session.execute(select(BotLog).order_by(BotLog.id))
        return list(res.scalars().all())


async def test_records_are_written_in_background(db):
    activity = BotActivityLog()
    activity.record("bot-1", "Bot iniciado", level="success", user_id=42, chat_id=-100)
    await activity.drain()

    (row,) = await all_logs()
    assert (row.bot_id, row.message, row.level, row.user_id, row.chat_id) == ("bot-1", "Bot iniciado", "success", "42", "-100")


async def test_write_failure_never_reaches_caller(db):
    await dispose_engine()
    activity = BotActivityLog()
    activity.record("bot-1", "lost")
    await activity.drain()


async def test_delivery_leaves_activity_trail(db, gateways, delivery):
    activity = BotActivityLog()
    orchestrator = Orchestrator(gateways=gateways, delivery=delivery, activity=activity)
    await add_order("tx-1")

    await orchestrator.reconcile("tx-1", paid=True)
    await activity.drain()

    messages = {row.message for row in await all_logs()}
    assert messages == {"Pagamento confirmado (webhook) TX: tx-1", "Passe enviado com sucesso para Booyah (12345)"}
