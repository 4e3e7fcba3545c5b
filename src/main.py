#!/usr/bin/env python3
"""
Bastion
A log-watching intrusion detection daemon that blocks offending addresses
in the host firewall.
"""

import argparse
import logging
import os
import signal
import sys
from pathlib import Path

import sentry_sdk
from dotenv import load_dotenv

# Ensure src is in python path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from const import (APP_NAME, APP_VERSION, DEFAULT_CONFIG, EXIT_CONFIG_ERROR, EXIT_FATAL,  # noqa: E402
                   EXIT_OK, LOGGER_PREFIX)
from utils.logger import setup_exception_logging, setup_logging  # noqa: E402
from utils.settings import ConfigError, Settings  # noqa: E402

# Load environment variables from .env file
load_dotenv()


if os.getenv("SENTRY_DSN"):
    sentry_sdk.init(
        dsn=os.getenv("SENTRY_DSN"),
        traces_sample_rate=1.0,
    )


def write_pid_file(path: str) -> None:
    pid_path = Path(path)
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(f"{os.getpid()}\n", encoding="utf-8")


def remove_pid_file(path: str) -> None:
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass


def install_signal_handlers(dispatcher) -> None:
    """SIGHUP reloads, SIGTERM/SIGINT stop after the current cycle."""
    signal.signal(signal.SIGHUP, lambda signum, frame: dispatcher.request_reload())
    signal.signal(signal.SIGTERM, lambda signum, frame: dispatcher.request_stop())
    signal.signal(signal.SIGINT, lambda signum, frame: dispatcher.request_stop())


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=f"{APP_NAME} - block attackers found in your logs")
    parser.add_argument(
        "-c", "--config", default=DEFAULT_CONFIG, help=f"Path to configuration file (default: {DEFAULT_CONFIG})"
    )
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {APP_VERSION}")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--once", action="store_true", help="Run a single detection cycle and exit")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    # Configure logging
    log_level = logging.DEBUG if args.debug else logging.INFO
    setup_logging(level=log_level)
    setup_exception_logging()
    logger = logging.getLogger(f"{LOGGER_PREFIX}.main")

    # Lazy import engine - keeps --version and --help fast
    from engine import build_dispatcher  # noqa: E402

    try:
        settings = Settings.load(args.config)
        dispatcher = build_dispatcher(settings)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        logger.critical(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    logger.info(f"========== Starting {APP_NAME} {APP_VERSION} ==========")

    if args.once:
        try:
            dispatcher.start()
            stats = dispatcher.run_cycle()
        except Exception as e:
            logger.critical(f"Fatal error: {e}", exc_info=True)
            return EXIT_FATAL
        finally:
            dispatcher.close(settings.get_float("alerts.timeout", 5))
        logger.info(f"Single cycle done: {stats}")
        return EXIT_OK

    pid_file = settings.get_str("daemon.pid_file")
    install_signal_handlers(dispatcher)
    try:
        if pid_file:
            write_pid_file(pid_file)
        code = dispatcher.run_forever()
    except OSError as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        code = EXIT_FATAL
    finally:
        if pid_file:
            remove_pid_file(pid_file)

    logger.info(f"{APP_NAME} stopped (exit code {code})")
    return code


if __name__ == "__main__":
    sys.exit(main())
