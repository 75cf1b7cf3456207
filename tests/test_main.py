import sqlite3
from unittest.mock import patch

import pytest

from traffic_monitor.__main__ import main


def test_invalid_config_exits_with_status_1(tmp_path):
    with patch("traffic_monitor.server.run_server") as run_server:
        with pytest.raises(SystemExit) as exc:
            main(["--config", str(tmp_path / "absent.yaml")])

    assert exc.value.code == 1
    run_server.assert_not_called()


def test_unusable_database_exits_with_status_1(tmp_path, log_path):
    cfg_path = tmp_path / "traffic.yaml"
    cfg_path.write_text(f"logfiles: [{log_path}]\n")

    with patch("traffic_monitor.database.init_db", side_effect=sqlite3.OperationalError("unable to open database file")), \
            patch("traffic_monitor.server.run_server") as run_server:
        with pytest.raises(SystemExit) as exc:
            main(["--config", str(cfg_path)])

    assert exc.value.code == 1
    run_server.assert_not_called()


def test_command_line_logfiles_start_the_server(tmp_path, log_path):
    cfg_path = tmp_path / "traffic.yaml"
    cfg_path.write_text(f"database:\n  path: {tmp_path / 'traffic.db'}\n")

    with patch("traffic_monitor.server.run_server") as run_server:
        main(["--config", str(cfg_path), log_path])

    run_server.assert_called_once()
    cfg = run_server.call_args[0][0]
    assert [lf.path for lf in cfg.logfiles] == [log_path]
    assert (tmp_path / "traffic.db").exists()
