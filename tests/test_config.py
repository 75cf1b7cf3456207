"""
Tests for configuration loading and validation.
"""

import pytest

from traffic_monitor import config
from traffic_monitor.config import ConfigError, LogFileConfig, load_config, parse_config


def test_default_configuration_values():
    assert config.SERVER_PORT == 8766
    assert config.UPDATE_INTERVAL_SECONDS == 60
    assert config.MAX_HOSTNAME_LENGTH == 200
    assert config.MAX_BYTE_COUNT == 2 ** 63 - 1
    assert config.DEFAULT_START_POSITION == "end"


def test_load_full_yaml(tmp_path):
    path = tmp_path / "traffic.yaml"
    path.write_text(
        """
logfiles:
  - /var/log/a.log
  - path: /var/log/b.log
    start_position: resume
database:
  path: /tmp/traffic.db
  timeout: 10
update_interval: 15
max_line_bytes: 4096
server:
  host: 0.0.0.0
  port: 9000
"""
    )
    cfg = load_config(str(path))

    assert cfg.logfiles == [
        LogFileConfig(path="/var/log/a.log", start_position="end"),
        LogFileConfig(path="/var/log/b.log", start_position="resume"),
    ]
    assert cfg.database.path == "/tmp/traffic.db"
    assert cfg.database.timeout == 10.0
    assert cfg.update_interval == 15.0
    assert cfg.max_line_bytes == 4096
    assert cfg.server.host == "0.0.0.0"
    assert cfg.server.port == 9000


def test_defaults_apply_for_missing_sections():
    cfg = parse_config({"logfiles": ["/var/log/a.log"]})
    assert cfg.database.path == config.DATABASE_FILE
    assert cfg.database.timeout == config.DB_CONNECTION_TIMEOUT
    assert cfg.update_interval == config.UPDATE_INTERVAL_SECONDS
    assert cfg.server.port == config.SERVER_PORT


def test_command_line_logfiles_replace_configured_ones():
    cfg = parse_config({"logfiles": ["/var/log/a.log"]}, logfiles=["/tmp/x.log", "/tmp/y.log"])
    assert [lf.path for lf in cfg.logfiles] == ["/tmp/x.log", "/tmp/y.log"]


def test_missing_file_is_fine_with_command_line_logfiles(tmp_path):
    cfg = load_config(str(tmp_path / "absent.yaml"), logfiles=["/tmp/x.log"])
    assert cfg.logfiles == [LogFileConfig(path="/tmp/x.log")]


def test_missing_file_without_logfiles_is_an_error(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(str(tmp_path / "absent.yaml"))


def test_invalid_yaml(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("logfiles: [unclosed\n")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(str(path))


@pytest.mark.parametrize(
    "data, message",
    [
        ({}, "No log files"),
        ({"logfiles": "/var/log/a.log"}, "must be a list"),
        ({"logfiles": [42]}, "Invalid logfiles entry"),
        ({"logfiles": [{"start_position": "end"}]}, "'path' must be"),
        ({"logfiles": [{"path": "/a", "start_position": "middle"}]}, "Invalid start_position"),
        ({"logfiles": ["/a", "/a"]}, "more than once"),
        ({"logfiles": ["/a"], "update_interval": 0}, "greater than zero"),
        ({"logfiles": ["/a"], "update_interval": "soon"}, "must be a number"),
        ({"logfiles": ["/a"], "update_interval": True}, "must be a number"),
        ({"logfiles": ["/a"], "database": {"path": ""}}, "database.path"),
        ({"logfiles": ["/a"], "database": {"timeout": -1}}, "greater than zero"),
        ({"logfiles": ["/a"], "server": {"port": 70000}}, "server.port"),
        ({"logfiles": ["/a"], "server": []}, "'server' must be a mapping"),
    ],
)
def test_invalid_values_raise_config_error(data, message):
    with pytest.raises(ConfigError, match=message):
        parse_config(data)


def test_non_mapping_root_is_rejected():
    with pytest.raises(ConfigError, match="root must be a mapping"):
        parse_config(["/var/log/a.log"])
