from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

from aiohttp import web

from . import __version__
from .config import Settings
from .database import initialize_database
from .engine import PolicyEngine
from .observability import observability
from .services.state_store import EngineStateStore
from .transport.client import USER_AGENT, HttpMatrixClient
from .transport.sync import SyncLoop

log = logging.getLogger("clobber.app")


def build_web_app(engine: PolicyEngine) -> web.Application:
    app = web.Application()

    async def health(_: web.Request) -> web.Response:
        return web.json_response(
            {
                "ok": True,
                "service": "clobber",
                "version": __version__,
                "stats": engine.stats.as_dict(),
                "observability": observability.get_health_summary(),
            }
        )

    async def room_status(request: web.Request) -> web.Response:
        status = engine.room_status(request.match_info["room_id"])
        return web.json_response(
            {
                "room_id": status.room_id,
                "state": status.state,
                "backoff_until": status.backoff_until,
                "reason": status.reason,
                "protected": status.room_id in engine.rooms,
            }
        )

    async def list_rules(request: web.Request) -> web.Response:
        rules = engine.list_active_rules(request.match_info["list_ref"])
        return web.json_response({"rules": [r.to_dict() for r in rules]})

    app.router.add_get("/", health)
    app.router.add_get("/healthz", health)
    app.router.add_get("/rooms/{room_id}/status", room_status)
    app.router.add_get("/lists/{list_ref}/rules", list_rules)
    return app


async def _start_web_server(engine: PolicyEngine, port: int) -> web.AppRunner:
    runner = web.AppRunner(build_web_app(engine))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    log.info("Health server listening on 0.0.0.0:%s", port)
    return runner


async def run(settings: Settings) -> None:
    store = EngineStateStore(settings.sqlite_path)
    await initialize_database(settings.sqlite_path, [store])

    async with HttpMatrixClient(settings.homeserver_url, settings.access_token, user_agent=USER_AGENT) as client:
        user_id = settings.user_id or await client.whoami()
        log.info("Running as %s against %s", user_id, settings.homeserver_url)

        engine = PolicyEngine.from_settings(settings, client, state_store=store, bot_user_id=user_id)
        await engine.start()

        runner: Optional[web.AppRunner] = None
        if settings.health_enabled:
            runner = await _start_web_server(engine, settings.health_port)

        stop_event = asyncio.Event()

        def _signal_handler() -> None:
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _signal_handler)
            except NotImplementedError:
                # Windows / limited environments
                pass

        sync = SyncLoop(client, engine, timeout_ms=settings.sync_timeout_ms, retry=settings.retry_policy())
        sync_task = asyncio.create_task(sync.run(stop_event), name="clobber-sync")
        stop_task = asyncio.create_task(stop_event.wait(), name="clobber-stop")
        try:
            await asyncio.wait({sync_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if stop_event.is_set():
                log.info("Shutdown signal received; stopping...")
        finally:
            for t in (sync_task, stop_task):
                t.cancel()
            await asyncio.gather(sync_task, stop_task, return_exceptions=True)
            await engine.stop()
            if runner is not None:
                await runner.cleanup()

        error = None if sync_task.cancelled() else sync_task.exception()
        if error is not None:
            raise error
