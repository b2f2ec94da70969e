import asyncio
import logging
import signal

from aiohttp import web

from passbot.bot.app import build_dispatcher
from passbot.bot.manager import BotManager
from passbot.core.config import settings
from passbot.core.logging import setup_logging
from passbot.db.session import dispose_engine, init_engine
from passbot.flow.runner import FlowRunner
from passbot.scheduler import run_sync_loop
from passbot.services.bot_log import BotActivityLog
from passbot.services.delivery import LikesFFClient
from passbot.services.orchestrator import Orchestrator
from passbot.services.payments import build_gateways
from passbot.services.promo import promo_ledger
from passbot.services.settings_cache import SettingsCache
from passbot.web.server import build_web_app

log = logging.getLogger(__name__)


async def main() -> None:
    setup_logging()
    init_engine(settings.database_url)

    cache = SettingsCache(ttl_seconds=settings.settings_cache_ttl_seconds)
    activity = BotActivityLog()
    gateways = build_gateways(cache)
    delivery = LikesFFClient(
        credentials=cache.global_value,
        base_url=settings.likesff_base_url,
        timeout_seconds=settings.http_timeout_seconds,
    )
    orchestrator = Orchestrator(gateways=gateways, delivery=delivery, activity=activity)
    runner = FlowRunner(
        cache=cache,
        gateways=gateways,
        orchestrator=orchestrator,
        promos=promo_ledger,
        activity=activity,
    )
    manager = BotManager(
        dispatcher_factory=lambda bot_id: build_dispatcher(bot_id, runner=runner, touch=manager.touch),
        activity=activity,
        public_base_url=settings.public_base_url,
        webhook_secret=settings.webhook_secret,
        heartbeat_interval=settings.heartbeat_interval_seconds,
    )
    orchestrator.channels = manager.channel

    app = build_web_app(
        orchestrator=orchestrator,
        manager=manager,
        delivery=delivery,
        admin_token=settings.admin_token,
        webhook_secret=settings.webhook_secret,
    )
    web_runner = web.AppRunner(app)
    await web_runner.setup()
    await web.TCPSite(web_runner, settings.http_host, settings.http_port).start()
    log.info("http_start host=%s port=%s", settings.http_host, settings.http_port)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    sync_task = asyncio.create_task(run_sync_loop(manager, settings.sync_interval_seconds))
    try:
        await stop.wait()
    finally:
        log.info("shutdown")
        sync_task.cancel()
        await manager.shutdown()
        await web_runner.cleanup()
        await activity.drain()
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
