import asyncio
import concurrent.futures
import datetime
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from .state import app_state
from .config import DB_THREAD_POOL_SIZE, HEARTBEAT_INTERVAL_SECONDS
from .database import blocking_flush_traffic, blocking_load_offsets, blocking_save_offsets
from .follower import FileFollower

log = logging.getLogger("TrafficMonitor.Tasks")


@dataclass
class FlushResult:
    month: int
    year: int
    written: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, int] = field(default_factory=dict)
    finished_at: Optional[datetime.datetime] = None

    def to_payload(self) -> dict:
        return {
            "month": self.month,
            "year": self.year,
            "written": self.written,
            "failed": self.failed,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


async def flush_traffic(app, now: Optional[datetime.datetime] = None) -> FlushResult:
    """
    Drains the aggregator into the current month's buckets.

    The month is fixed before the snapshot is taken, so a flush running across
    a month boundary attributes everything to the month it started in.
    Hostnames whose write fails are put back into the aggregator and retried
    on the next flush.
    """
    cfg = app["config"]
    aggregator = app_state["aggregator"]
    loop = asyncio.get_running_loop()

    async with app_state["flush_lock"]:
        now = now or datetime.datetime.now()
        month, year = now.month, now.year
        drained, offsets = aggregator.drain()
        totals = {host: count for host, count in drained.items() if count > 0}
        result = FlushResult(month=month, year=year)

        if totals:
            log.info(f"[FLUSHER] Writing traffic for {len(totals)} host(s) into {year}-{month:02d}.")
            try:
                result.written, result.failed = await loop.run_in_executor(
                    app["db_executor"], blocking_flush_traffic, cfg.database.path, totals, month, year,
                    cfg.database.timeout, result.written
                )
            except Exception:
                log.error("Error during blocking traffic flush execution:", exc_info=True)
                result.failed = {host: count for host, count in totals.items() if host not in result.written}

            if result.failed:
                aggregator.restore(result.failed)
                log.warning(f"[FLUSHER] Requeued {len(result.failed)} host(s) for the next flush: "
                            f"{', '.join(sorted(result.failed))}")

        # Only the positions drained with the counters above; later ones may cover unflushed bytes
        if offsets:
            try:
                await loop.run_in_executor(
                    app["db_executor"], blocking_save_offsets, cfg.database.path, offsets, cfg.database.timeout
                )
            except Exception:
                log.error("Error while saving follower offsets:", exc_info=True)

        result.finished_at = datetime.datetime.now(datetime.timezone.utc)
        app_state["last_flush"] = result
        return result


async def traffic_flusher_task(app):
    interval = app["config"].update_interval
    log.info(f"Traffic flusher task started (interval {interval}s).")
    while True:
        await asyncio.sleep(interval)
        try:
            # A flush cancelled at shutdown still finishes, so its failed hosts are requeued
            # before the final flush takes the lock
            await asyncio.shield(flush_traffic(app))
        except Exception:
            log.error("Error in traffic flusher task:", exc_info=True)


async def heartbeat_task(app):
    log.info("Heartbeat task started.")
    while True:
        await asyncio.sleep(HEARTBEAT_INTERVAL_SECONDS)
        pending = app_state["aggregator"].pending()
        log.info(f"[HEARTBEAT] Pending hosts: {len(pending)}, Pending bytes: {sum(pending.values())}")
        for path, follower in app_state["followers"].items():
            status = follower.status()
            log.info(f"  -> '{path}': {status['state']} at offset {status['offset']}, "
                     f"{status['parse_failures']} malformed line(s)")


def _resolve_start_position(logfile, stored_offsets):
    """Maps a configured start position to what FileFollower expects: 'end', 'start' or an int offset."""
    if logfile.start_position != "resume":
        return logfile.start_position, None
    if logfile.path not in stored_offsets:
        log.info(f"No stored offset for '{logfile.path}'. Starting at the end.")
        return "end", None
    inode, offset = stored_offsets[logfile.path]
    return offset, inode


async def start_background_tasks(app):
    cfg = app["config"]
    log.info("Starting background tasks...")

    app["db_executor"] = concurrent.futures.ThreadPoolExecutor(max_workers=DB_THREAD_POOL_SIZE)
    log.info(f"Database thread pool initialized with {DB_THREAD_POOL_SIZE} workers")
    app["log_executor"] = concurrent.futures.ThreadPoolExecutor(max_workers=len(cfg.logfiles))
    app["tasks"] = []
    app["follower_futures"] = []

    loop = asyncio.get_running_loop()

    stored_offsets = {}
    if any(lf.start_position == "resume" for lf in cfg.logfiles):
        stored_offsets = await loop.run_in_executor(
            app["db_executor"], blocking_load_offsets, cfg.database.path, cfg.database.timeout
        )

    aggregator = app_state["aggregator"]
    for logfile in cfg.logfiles:
        start_position, inode = _resolve_start_position(logfile, stored_offsets)
        follower = FileFollower(logfile.path, aggregator, start_position=start_position, expected_inode=inode,
                                max_line_bytes=cfg.max_line_bytes)
        app_state["followers"][logfile.path] = follower
        app["follower_futures"].append(loop.run_in_executor(app["log_executor"], follower.run))

    app["tasks"].extend(
        [
            asyncio.create_task(traffic_flusher_task(app)),
            asyncio.create_task(heartbeat_task(app)),
        ]
    )
    log.info(f"Following {len(cfg.logfiles)} log file(s).")


async def cleanup_background_tasks(app):
    log.warning("Application cleanup started.")

    # Cancel all background tasks
    for task in app.get("tasks", []):
        task.cancel()
    if "tasks" in app:
        await asyncio.gather(*app["tasks"], return_exceptions=True)
    log.info("Asyncio background tasks cancelled.")

    # Stop follower threads and wait for them to release their files
    for follower in app_state["followers"].values():
        follower.stop()
    if "follower_futures" in app:
        await asyncio.gather(*app["follower_futures"], return_exceptions=True)
    log.info("Followers stopped.")

    # Persist whatever was counted since the last tick
    if "db_executor" in app:
        try:
            await flush_traffic(app)
        except Exception:
            log.error("Final flush failed:", exc_info=True)

    # Shutdown executors
    for executor_name in ["db_executor", "log_executor"]:
        if executor_name in app and app[executor_name]:
            app[executor_name].shutdown(wait=True)
            log.info(f"{executor_name} shut down.")
