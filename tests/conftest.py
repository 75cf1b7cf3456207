"""
Shared fixtures for Traffic Monitor tests.
"""

import asyncio
import builtins
import concurrent.futures
import contextlib
import os
import tempfile

import pytest

from traffic_monitor.config import DatabaseConfig, LogFileConfig, TrafficConfig
from traffic_monitor.state import HostByteAggregator, app_state


@pytest.fixture(autouse=True)
def fresh_app_state():
    """Give every test its own aggregator, follower registry and flush lock."""
    app_state["aggregator"] = HostByteAggregator()
    app_state["followers"] = {}
    app_state["flush_lock"] = asyncio.Lock()
    app_state["last_flush"] = None
    yield


@pytest.fixture
def temp_db():
    """Create temporary test database with full schema."""
    import traffic_monitor.database as database

    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    try:
        database.init_db(path)
        yield path
    finally:
        for suffix in ("", "-wal", "-shm"):
            with contextlib.suppress(builtins.BaseException):
                os.unlink(path + suffix)


@pytest.fixture
def log_path(tmp_path):
    """Path of an (initially absent) log file in a private directory."""
    return str(tmp_path / "access.log")


@pytest.fixture
def traffic_config(temp_db, log_path):
    return TrafficConfig(
        logfiles=[LogFileConfig(path=log_path)],
        database=DatabaseConfig(path=temp_db, timeout=5.0),
        update_interval=60,
    )


@pytest.fixture
def mock_app(traffic_config):
    """Minimal app mapping with a real database executor."""
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    app = {"config": traffic_config, "db_executor": executor}
    yield app
    executor.shutdown(wait=True)


def read_traffic_rows(db_path):
    import sqlite3

    with contextlib.closing(sqlite3.connect(db_path)) as conn:
        rows = conn.execute("SELECT hostname, month, year, bytes FROM traffic ORDER BY hostname, year, month")
        return [tuple(row) for row in rows.fetchall()]


@pytest.fixture
def traffic_rows():
    """Reads every row of the traffic table as (hostname, month, year, bytes) tuples."""
    return read_traffic_rows
