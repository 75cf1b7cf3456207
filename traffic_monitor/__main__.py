import argparse
import logging
import os
import sqlite3
import sys

# This boilerplate allows the script to be run directly (e.g., `python traffic_monitor`)
# by adding the project root to the Python path, so the absolute imports below resolve
# regardless of the execution method.
if __package__ is None or __package__ == '':
    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)
    sys.path.insert(0, project_root)

from traffic_monitor import server, database, config

# --- Centralized Logging Configuration ---
log = logging.getLogger("TrafficMonitor")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Traffic Monitor - follows access logs and keeps monthly per-host traffic totals",
        epilog="""
Examples:
  # Follow the files listed in traffic.yaml
  %(prog)s

  # Follow two files, ignoring the configured list
  %(prog)s /var/log/nginx/traffic.log /var/log/nginx/other.log

  # Use another configuration file
  %(prog)s --config /etc/traffic-monitor/traffic.yaml
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('logfiles', nargs='*', metavar='LOGFILE',
                        help="Log file to follow. Can be given multiple times; replaces 'logfiles' from the config.")
    parser.add_argument('--config', default=None,
                        help=f"Path to the YAML configuration file (default: {config.CONFIG_FILE}).")
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    try:
        cfg = config.load_config(args.config, args.logfiles)
    except config.ConfigError as e:
        log.critical(f"Invalid configuration: {e}")
        sys.exit(1)

    for logfile in cfg.logfiles:
        if os.path.exists(logfile.path):
            log.info(f"Configured log file '{logfile.path}' (start: {logfile.start_position}).")
        else:
            log.warning(f"Log file does not currently exist at '{logfile.path}' (may be created later).")

    try:
        database.init_db(cfg.database.path, cfg.database.timeout)
    except sqlite3.Error as e:
        log.critical(f"Cannot prepare database '{cfg.database.path}': {e}")
        sys.exit(1)

    server.run_server(cfg)


if __name__ == "__main__":
    main()
