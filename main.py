"""
Main entry point for the meter2mqtt bridge.

This script orchestrates the entire application lifecycle:
- Loads configuration and validates it.
- Sets up logging.
- Creates the shared SnapshotStore and PowerOverrideArbiter.
- Loads the meter plugin and starts the polling thread.
- Starts the MQTT publisher and the Shelly Pro 3EM UDP emulator.
- Handles graceful shutdown on SIGINT/SIGTERM signals.
"""

import argparse
import logging
from logging.handlers import RotatingFileHandler
import pathlib
import sys
import signal
import time
from typing import Callable, List, Optional

from core.app_state import AppState
from core.config_loader import load_configuration, validate_core_config
from core.constants import CONFIG_FILE_NAME, CORE_LOGGER_NAME, LOG_FILE_NAME
from core.meter_poller import MeterPoller
from core.override_arbiter import PowerOverrideArbiter
from core.plugin_manager import load_plugin_instance
from core.snapshot_store import SnapshotStore
from services.mqtt_service import MqttService
from services.shelly_emu_service import ShellyEmuService
from utils.helpers import format_time_ago

# Application version
__version__ = "1.0.0"

# Seconds between the periodic status lines written by the main loop.
STATUS_LOG_INTERVAL = 300


def setup_logging(app_state: AppState):
    """
    Sets up logging to console and, optionally, a rotating file.

    Args:
        app_state: The application state object containing the loaded config.
    """
    log_level_str = (app_state.log_level or "INFO").upper()

    log_levels = {
        "DEBUG": logging.DEBUG, "INFO": logging.INFO,
        "WARNING": logging.WARNING, "ERROR": logging.ERROR, "CRITICAL": logging.CRITICAL,
    }
    effective_log_level = log_levels.get(log_level_str, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(effective_log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if app_state.log_to_file:
        log_file_path = pathlib.Path(__file__).parent / LOG_FILE_NAME

        file_handler = RotatingFileHandler(
            log_file_path, maxBytes=5*1024*1024, backupCount=3, encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        logging.info(f"Logging to file: {log_file_path}")

    if log_level_str not in log_levels:
        logging.warning(f"Unknown log level '{log_level_str}'. Falling back to INFO.")
        log_level_str = "INFO"
    logging.info(f"Logging level set to {log_level_str}.")


def graceful_exit(app_state: AppState) -> Callable[[int, object], None]:
    """
    Creates a signal handler function to ensure a clean shutdown.

    This function, when called by a signal (like SIGINT/Ctrl-C), will set
    the application's running flag to False, triggering a coordinated shutdown
    of all threads and services.

    Args:
        app_state: The global application state.

    Returns:
        A signal handler function.
    """
    def handler(signum, frame):
        if not app_state.running:
            return
        logger = logging.getLogger(CORE_LOGGER_NAME)
        logger.warning(f"Shutdown signal ({signal.Signals(signum).name}) received. Cleaning up...")
        app_state.running = False
        app_state.main_threads_stop_event.set()
    return handler


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    script_dir = pathlib.Path(__file__).parent.resolve()
    parser = argparse.ArgumentParser(description="Bridge a Modbus energy meter to MQTT and answer Shelly Pro 3EM queries.")
    parser.add_argument("--config", default=str(script_dir / CONFIG_FILE_NAME),
                        help=f"Path to the configuration file (default: {CONFIG_FILE_NAME} next to main.py)")
    return parser.parse_args(argv)


def log_status(logger: logging.Logger, snapshot_store: SnapshotStore, poller: MeterPoller, arbiter: PowerOverrideArbiter):
    """Writes one summary line about the bridge's health."""
    age = snapshot_store.age_seconds()
    override = arbiter.current_override()
    logger.info(
        f"Status: last successful poll {format_time_ago(age)}, "
        f"consecutive poll failures {poller.consecutive_failures}, "
        f"override {'active (' + str(override.total) + 'W)' if override else 'inactive'}."
    )


def main(argv: Optional[List[str]] = None) -> int:
    # --- 1. Initial Setup ---
    args = parse_args(argv)
    app_state = AppState(version=__version__)
    load_configuration(args.config, app_state)

    setup_logging(app_state)
    logger = logging.getLogger(CORE_LOGGER_NAME)
    logger.info(f"--- Starting meter2mqtt v{__version__} ---")

    # Validate critical configuration settings. This will exit if config is invalid.
    validate_core_config(app_state)

    # --- 2. Shared State ---
    snapshot_store = SnapshotStore()
    arbiter = PowerOverrideArbiter(ttl_seconds=app_state.override_ttl_seconds)

    # --- 3. Load Meter Plugin ---
    plugin = load_plugin_instance(app_state.plugin_type, app_state.identifier, app_state)
    if plugin is None:
        logger.critical(f"Meter plugin '{app_state.plugin_type}' could not be loaded. Exiting.")
        return 1

    # --- 4. Initialize Services ---
    logger.info("Initializing services...")
    poller = MeterPoller(plugin, snapshot_store, app_state.poll_interval)
    mqtt_service = MqttService(app_state, arbiter)
    shelly_emu_service = ShellyEmuService(app_state, arbiter, snapshot_store)
    if app_state.enable_mqtt:
        poller.subscribe(mqtt_service.on_measurements)

    # --- 5. Setup Graceful Shutdown ---
    signal.signal(signal.SIGINT, graceful_exit(app_state))  # Handle Ctrl-C
    signal.signal(signal.SIGTERM, graceful_exit(app_state)) # Handle systemctl stop, docker stop

    # --- 6. Start Services and Threads ---
    mqtt_service.start()
    shelly_emu_service.start()
    poller.start()
    logger.info("All services started. Main loop is running.")

    try:
        last_status = time.monotonic()
        while not app_state.main_threads_stop_event.wait(timeout=1.0):
            if time.monotonic() - last_status >= STATUS_LOG_INTERVAL:
                log_status(logger, snapshot_store, poller, arbiter)
                last_status = time.monotonic()
    except KeyboardInterrupt:
        logger.warning("Ctrl+C detected, initiating graceful shutdown...")
        app_state.running = False
        app_state.main_threads_stop_event.set()
    finally:
        logger.warning("=== SHUTDOWN IN PROGRESS ===")
        logger.info("Stopping meter poller...")
        poller.stop()

        logger.info("Stopping Shelly emulator...")
        shelly_emu_service.stop()

        logger.info("Stopping MQTT service...")
        mqtt_service.stop()

        arbiter.stop()
        logger.warning("=== SHUTDOWN COMPLETE ===")
        logger.info(f"--- meter2mqtt v{__version__} Finished ---")
    return 0


if __name__ == "__main__":
    sys.exit(main())
