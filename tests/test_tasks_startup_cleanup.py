import asyncio
import concurrent.futures
import dataclasses
import os
import threading
import time
from unittest.mock import patch

import pytest

from traffic_monitor import database
from traffic_monitor.config import DatabaseConfig, LogFileConfig, TrafficConfig
from traffic_monitor.follower import FollowerState
from traffic_monitor.state import app_state


@pytest.mark.asyncio
async def test_start_and_cleanup_background_tasks_minimal(traffic_config, log_path, traffic_rows):
    from traffic_monitor.tasks import start_background_tasks, cleanup_background_tasks

    app = {"config": traffic_config}

    await start_background_tasks(app)

    assert len(app["tasks"]) == 2
    assert list(app_state["followers"]) == [log_path]
    follower = app_state["followers"][log_path]

    # Counted after the last tick; must still reach the database on shutdown
    app_state["aggregator"].increment("late.example", 7)

    await cleanup_background_tasks(app)

    for t in app["tasks"]:
        assert t.cancelled() or t.done()
    assert follower.state is FollowerState.STOPPED
    rows = traffic_rows(traffic_config.database.path)
    assert [(host, count) for host, _, _, count in rows] == [("late.example", 7)]
    assert app_state["aggregator"].pending() == {}


@pytest.mark.asyncio
async def test_resume_uses_stored_offset(temp_db, log_path):
    from traffic_monitor.tasks import start_background_tasks, cleanup_background_tasks

    with open(log_path, "wb") as f:
        f.write(b"seen 1 1\n")
    inode = os.stat(log_path).st_ino
    database.blocking_save_offsets(temp_db, {log_path: (inode, 9)})

    cfg = TrafficConfig(
        logfiles=[LogFileConfig(path=log_path, start_position="resume")],
        database=DatabaseConfig(path=temp_db, timeout=5.0),
    )
    app = {"config": cfg}
    await start_background_tasks(app)
    follower = app_state["followers"][log_path]
    try:
        assert follower.start_position == 9
        assert follower.expected_inode == inode
    finally:
        await cleanup_background_tasks(app)


def test_resolve_start_position():
    from traffic_monitor.tasks import _resolve_start_position

    stored = {"/a.log": (5, 100)}
    assert _resolve_start_position(LogFileConfig("/a.log", "end"), stored) == ("end", None)
    assert _resolve_start_position(LogFileConfig("/a.log", "start"), stored) == ("start", None)
    assert _resolve_start_position(LogFileConfig("/a.log", "resume"), stored) == (100, 5)
    assert _resolve_start_position(LogFileConfig("/b.log", "resume"), stored) == ("end", None)


@pytest.mark.asyncio
async def test_cleanup_during_flush_keeps_failed_hosts_for_final_flush(traffic_config, traffic_rows):
    from traffic_monitor.tasks import cleanup_background_tasks, traffic_flusher_task

    real_flush = database.blocking_flush_traffic
    started = threading.Event()

    def slow_failing_then_real(db_path, totals, month, year, timeout, written=None):
        if not started.is_set():
            started.set()
            time.sleep(0.2)
            return {}, dict(totals)
        return real_flush(db_path, totals, month, year, timeout, written)

    cfg = dataclasses.replace(traffic_config, update_interval=0.01)
    app = {"config": cfg, "db_executor": concurrent.futures.ThreadPoolExecutor(max_workers=1)}
    app_state["aggregator"].increment("a.example", 11)

    with patch("traffic_monitor.tasks.blocking_flush_traffic", side_effect=slow_failing_then_real):
        app["tasks"] = [asyncio.create_task(traffic_flusher_task(app))]
        for _ in range(500):
            if started.is_set():
                break
            await asyncio.sleep(0.01)
        assert started.is_set()

        # Shutdown arrives while the first write is still running
        await cleanup_background_tasks(app)

    rows = traffic_rows(cfg.database.path)
    assert [(host, count) for host, _, _, count in rows] == [("a.example", 11)]
    assert app_state["aggregator"].pending() == {}
