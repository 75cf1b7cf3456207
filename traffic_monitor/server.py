import asyncio
import datetime
import logging
import time

from aiohttp import web

from .state import app_state
from .tasks import start_background_tasks, cleanup_background_tasks
from .database import blocking_get_monthly_traffic
from .config import TrafficConfig

log = logging.getLogger("TrafficMonitor.Server")


def parse_period(query) -> tuple:
    """Reads month/year from the query string, defaulting to the current month."""
    now = datetime.datetime.now()
    try:
        month = int(query.get("month", now.month))
        year = int(query.get("year", now.year))
    except ValueError:
        raise web.HTTPBadRequest(text="month and year must be integers")
    if not 1 <= month <= 12:
        raise web.HTTPBadRequest(text="month must be between 1 and 12")
    return month, year


async def handle_traffic(request):
    app = request.app
    cfg = app["config"]
    month, year = parse_period(request.query)

    loop = asyncio.get_running_loop()
    buckets = await loop.run_in_executor(
        app["db_executor"], blocking_get_monthly_traffic, cfg.database.path, month, year, cfg.database.timeout
    )
    return web.json_response({
        "month": month,
        "year": year,
        "buckets": buckets,
        "total_bytes": sum(b["bytes"] for b in buckets),
        "pending": app_state["aggregator"].pending(),
    })


async def handle_status(request):
    last_flush = app_state["last_flush"]
    return web.json_response({
        "uptime_seconds": int(time.time() - request.app["start_time"]),
        "followers": [follower.status() for follower in app_state["followers"].values()],
        "last_flush": last_flush.to_payload() if last_flush else None,
    })


def create_app(cfg: TrafficConfig) -> web.Application:
    app = web.Application()
    app["config"] = cfg
    app["start_time"] = time.time()

    app.on_startup.append(start_background_tasks)
    app.on_cleanup.append(cleanup_background_tasks)
    app.router.add_get("/api/traffic", handle_traffic)
    app.router.add_get("/api/status", handle_status)
    return app


def run_server(cfg: TrafficConfig):
    app = create_app(cfg)
    log.info(f"Status API starting on http://{cfg.server.host}:{cfg.server.port}")
    log.info(f"Following log files: {[lf.path for lf in cfg.logfiles]}")
    web.run_app(app, host=cfg.server.host, port=cfg.server.port)
