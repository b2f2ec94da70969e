from __future__ import annotations

import asyncio
import hmac
import logging
from typing import Any

from aiohttp import web

from passbot.core.errors import ConfigurationError, DeliveryError
from passbot.db.session import session_scope
from passbot.flow.engine import ReconcileResult
from passbot.repo import get_order_by_tx
from passbot.services.delivery import LikesFFClient
from passbot.services.orchestrator import Orchestrator
from passbot.web.payloads import parse_mercadopago_notification, parse_payment_notification

log = logging.getLogger(__name__)

ORCHESTRATOR = web.AppKey("orchestrator", Orchestrator)
MANAGER = web.AppKey("manager", object)
DELIVERY = web.AppKey("delivery", object)
ADMIN_TOKEN = web.AppKey("admin_token", object)
WEBHOOK_SECRET = web.AppKey("webhook_secret", object)
BACKGROUND = web.AppKey("background", set)


async def _read_json(request: web.Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception:
        log.exception("http_handler_error path=%s", request.path)
        return web.json_response({"error": "internal error"}, status=500)


# ---- payment webhooks ----------------------------------------------------------
async def syncpay_webhook(request: web.Request) -> web.Response:
    payload = await _read_json(request)
    note = parse_payment_notification(payload)
    if note is None:
        log.warning("payment_webhook_malformed payload=%s", str(payload)[:500])
        return web.json_response({"error": "invalid payload", "expected": "identifier and status"}, status=400)

    ctx = {"tx_id": note.tx_id, "source": "webhook"}
    if not note.paid:
        async with session_scope() as session:
            order = await get_order_by_tx(session, note.tx_id)
        if order is None:
            log.warning("payment_webhook_unknown_order status=%s", note.status, extra=ctx)
            return web.json_response({"error": "order not found"}, status=404)
        log.info("payment_webhook_ignored status=%s", note.status, extra=ctx)
        return web.json_response({"received": True, "message": "status ignored"})

    result = await request.app[ORCHESTRATOR].reconcile(note.tx_id, paid=True, source="webhook")
    if result == ReconcileResult.NOT_FOUND:
        return web.json_response({"error": "order not found"}, status=404)
    log.info("payment_webhook_processed result=%s", result.value, extra=ctx)
    return web.json_response({"success": True, "result": result.value})


async def mercadopago_webhook(request: web.Request) -> web.Response:
    payload = await _read_json(request)
    payment_id = parse_mercadopago_notification(request.query, payload)
    if payment_id is None:
        return web.json_response({"ok": True, "ignored": True})

    # notification carries no status: ask the gateway
    result = await request.app[ORCHESTRATOR].reconcile(payment_id, paid=None, source="webhook")
    log.info("mercadopago_webhook result=%s", result.value, extra={"tx_id": payment_id})
    return web.json_response({"ok": True, "result": result.value})


# ---- telegram ------------------------------------------------------------------
async def telegram_webhook(request: web.Request) -> web.Response:
    secret = request.app[WEBHOOK_SECRET]
    if secret:
        given = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
        if not hmac.compare_digest(given, secret):
            return web.json_response({"error": "forbidden"}, status=403)

    update = await _read_json(request)
    if not isinstance(update, dict):
        return web.json_response({"error": "invalid update"}, status=400)

    bot_id = request.match_info["bot_id"]
    # answer Telegram right away; it re-sends updates that take too long
    task = asyncio.create_task(_feed_update(request.app, bot_id, update))
    tasks = request.app[BACKGROUND]
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return web.json_response({"ok": True})


async def _feed_update(app: web.Application, bot_id: str, update: dict) -> None:
    try:
        accepted = await app[MANAGER].feed_webhook_update(bot_id, update)
        if not accepted:
            log.warning("telegram_update_rejected", extra={"bot_id": bot_id})
    except Exception:
        log.exception("telegram_update_error", extra={"bot_id": bot_id})


async def drain_background(app: web.Application) -> None:
    tasks = list(app[BACKGROUND])
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


# ---- operator actions ------------------------------------------------------------
def _require_admin(request: web.Request) -> None:
    token = request.app[ADMIN_TOKEN]
    if not token:
        raise web.HTTPForbidden(text="operator actions disabled")
    if not hmac.compare_digest(request.headers.get("X-Admin-Token", ""), token):
        raise web.HTTPUnauthorized(text="bad admin token")


async def approve_order(request: web.Request) -> web.Response:
    _require_admin(request)
    order_id = request.match_info["order_id"]
    result = await request.app[ORCHESTRATOR].approve(order_id)
    log.info("operator_approve result=%s", result.value, extra={"order_id": order_id})
    if result == ReconcileResult.NOT_FOUND:
        return web.json_response({"error": "order not found"}, status=404)
    if result == ReconcileResult.ALREADY_PROCESSED:
        return web.json_response({"error": "order already processed", "result": result.value}, status=409)
    return web.json_response({"success": True, "result": result.value})


async def fail_order(request: web.Request) -> web.Response:
    _require_admin(request)
    order_id = request.match_info["order_id"]
    payload = await _read_json(request)
    reason = "marked failed by operator"
    if isinstance(payload, dict) and payload.get("reason"):
        reason = str(payload["reason"])[:500]
    done = await request.app[ORCHESTRATOR].fail(order_id, reason)
    if not done:
        return web.json_response({"error": "order not found or not pending/paid"}, status=409)
    return web.json_response({"success": True})


async def likesff_info(request: web.Request) -> web.Response:
    _require_admin(request)
    delivery: LikesFFClient | None = request.app[DELIVERY]
    if delivery is None:
        raise web.HTTPNotFound()
    try:
        data = await delivery.balance()
    except ConfigurationError as e:
        return web.json_response({"error": str(e)}, status=503)
    except DeliveryError as e:
        return web.json_response({"error": str(e)}, status=502)
    return web.json_response(data)


def _lifecycle_response(bot_id: str, action: str, result) -> web.Response:
    log.info("operator_bot_%s ok=%s", action, result.ok, extra={"bot_id": bot_id})
    if not result.ok:
        status = 404 if result.error == "bot not found" else 400
        return web.json_response({"error": result.error}, status=status)
    body: dict[str, Any] = {"success": True}
    if result.mode:
        body["mode"] = result.mode
    return web.json_response(body)


async def start_bot(request: web.Request) -> web.Response:
    _require_admin(request)
    bot_id = request.match_info["bot_id"]
    return _lifecycle_response(bot_id, "start", await request.app[MANAGER].start(bot_id))


async def stop_bot(request: web.Request) -> web.Response:
    _require_admin(request)
    bot_id = request.match_info["bot_id"]
    return _lifecycle_response(bot_id, "stop", await request.app[MANAGER].stop(bot_id))


async def sync_bots(request: web.Request) -> web.Response:
    _require_admin(request)
    started = await request.app[MANAGER].sync()
    return web.json_response({"success": True, "started": started})


async def list_bots(request: web.Request) -> web.Response:
    _require_admin(request)
    return web.json_response({"running": request.app[MANAGER].list()})


async def health(request: web.Request) -> web.Response:
    return web.json_response({"ok": True, "bots": request.app[MANAGER].list()})


def build_web_app(
    *,
    orchestrator: Orchestrator,
    manager,
    delivery: LikesFFClient | None = None,
    admin_token: str | None = None,
    webhook_secret: str | None = None,
) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[ORCHESTRATOR] = orchestrator
    app[MANAGER] = manager
    app[DELIVERY] = delivery
    app[ADMIN_TOKEN] = admin_token
    app[WEBHOOK_SECRET] = webhook_secret
    app[BACKGROUND] = set()

    app.router.add_post("/webhooks/syncpay", syncpay_webhook)
    app.router.add_post("/webhooks/mercadopago", mercadopago_webhook)
    app.router.add_post("/bot/{bot_id}/webhook", telegram_webhook)
    app.router.add_post("/orders/{order_id}/approve", approve_order)
    app.router.add_post("/orders/{order_id}/fail", fail_order)
    app.router.add_get("/likesff/info", likesff_info)
    app.router.add_get("/bots", list_bots)
    app.router.add_post("/bots/sync", sync_bots)
    app.router.add_post("/bots/{bot_id}/start", start_bot)
    app.router.add_post("/bots/{bot_id}/stop", stop_bot)
    app.router.add_get("/health", health)

    async def _on_cleanup(app: web.Application) -> None:
        await drain_background(app)

    app.on_cleanup.append(_on_cleanup)
    return app
