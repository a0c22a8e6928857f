# core/config_loader.py
import configparser
import logging
import os
import sys
from typing import Any, Type, Tuple
from urllib.parse import urlparse

from core.app_state import AppState
from core.exceptions import ConfigurationError
from core.constants import (
    DEFAULT_POLL_INTERVAL, DEFAULT_MODBUS_TIMEOUT_SECONDS, DEFAULT_IDENTIFIER, DEFAULT_PLUGIN_TYPE,
    DEFAULT_MQTT_BROKER_URL, DEFAULT_HA_DISCOVERY_PREFIX, SHELLY_EMU_DEFAULT_PORT,
    SHELLY_EMU_DEFAULT_BIND_ADDRESS, SHELLY_EMU_VARIANT_LEGACY, SHELLY_EMU_VARIANTS,
    DEFAULT_OVERRIDE_TTL_SECONDS,
)

logger = logging.getLogger(__name__)

# Poll intervals above this are taken to be milliseconds (the legacy unit).
_LEGACY_MS_THRESHOLD = 1000

_PLAIN_SCHEMES = ("mqtt", "tcp")
_TLS_SCHEMES = ("mqtts", "ssl", "tls")


def parse_broker_url(url: str) -> Tuple[str, int, bool]:
    """
    Splits an MQTT broker URL into (host, port, use_tls).

    Accepts ``mqtt://host:port``, ``mqtts://host:port`` and bare ``host[:port]``.
    The port defaults to 1883, or 8883 for ``mqtts``.

    Raises:
        ConfigurationError: For unsupported schemes, a missing host or a bad port.
    """
    if "://" not in url:
        url = f"mqtt://{url}"
    parsed = urlparse(url)
    if parsed.scheme not in _PLAIN_SCHEMES + _TLS_SCHEMES:
        raise ConfigurationError(f"Unsupported MQTT broker URL scheme '{parsed.scheme}' in '{url}'")
    if not parsed.hostname:
        raise ConfigurationError(f"MQTT broker URL '{url}' has no host")
    try:
        explicit_port = parsed.port
    except ValueError as e:
        raise ConfigurationError(f"MQTT broker URL '{url}' has an invalid port: {e}") from None
    use_tls = parsed.scheme in _TLS_SCHEMES
    host = parsed.hostname
    port = explicit_port or (8883 if use_tls else 1883)
    return host, port, use_tls


def load_configuration(config_path: str, app_state: AppState):
    """
    Loads configuration from a .ini file and environment variables, populating the AppState object.

    The precedence is:
    1. Environment variable (e.g., `POLL_IP`)
    2. Value from config file (e.g., `POLL_IP` in `[GENERAL]`)
    3. Default value specified in the code.

    Args:
        config_path (str): The path to the configuration file.
        app_state (AppState): The central application state object to be populated.
    """
    config = configparser.ConfigParser(interpolation=None)
    if os.path.exists(config_path):
        config.read(config_path, encoding='utf-8')
        logger.info(f"Successfully read configuration from {config_path}")
    else:
        logger.warning(f"Config file not found at {config_path}. Using defaults and environment variables.")

    app_state.config = config

    def get_config_value(var_name: str, return_type: Type = str, default: Any = None, section: str = 'DEFAULT') -> Any:
        """
        Retrieves and converts a configuration value with environment variable override support.

        Args:
            var_name: The configuration variable name
            return_type: The expected type for conversion (str, int, float, bool)
            default: Default value if not found in env or config
            section: Configuration file section name

        Returns:
            The configuration value converted to the specified type
        """
        env_value = os.environ.get(var_name.upper())
        config_value = config.get(section, var_name, fallback=None) if config.has_option(section, var_name) else None

        value_to_cast = env_value if env_value is not None else config_value
        if value_to_cast is None:
            return default

        if isinstance(value_to_cast, str):
            value_to_cast = value_to_cast.strip().strip("'\"")
            if value_to_cast == "":
                return default

        try:
            if return_type == bool:
                return value_to_cast.lower() in ['true', '1', 'yes', 'on']
            return return_type(value_to_cast)
        except (ValueError, TypeError):
            logger.warning(f"Could not cast '{value_to_cast}' for '{var_name}' to {return_type.__name__}. Using default: {default}")
            return default

    # General / Meter
    app_state.plugin_type = get_config_value("PLUGIN_TYPE", str, DEFAULT_PLUGIN_TYPE, section='GENERAL')
    app_state.poll_ip = get_config_value("POLL_IP", str, None, section='GENERAL')
    app_state.poll_port = get_config_value("POLL_PORT", int, 502, section='GENERAL')
    app_state.poll_slave_id = get_config_value("POLL_SLAVE_ID", int, 1, section='GENERAL')
    app_state.modbus_timeout_seconds = get_config_value("MODBUS_TIMEOUT_SECONDS", float, DEFAULT_MODBUS_TIMEOUT_SECONDS, section='GENERAL')
    app_state.identifier = get_config_value("IDENTIFIER", str, DEFAULT_IDENTIFIER, section='GENERAL')

    poll_interval = get_config_value("POLL_INTERVAL", float, DEFAULT_POLL_INTERVAL, section='GENERAL')
    if poll_interval > _LEGACY_MS_THRESHOLD:
        logger.info(f"POLL_INTERVAL {poll_interval} looks like milliseconds. Using {poll_interval / 1000.0}s.")
        poll_interval = poll_interval / 1000.0
    app_state.poll_interval = poll_interval

    # MQTT
    app_state.enable_mqtt = get_config_value("ENABLE_MQTT", bool, True, section='MQTT')
    app_state.mqtt_broker_url = get_config_value("MQTT_BROKER_URL", str, DEFAULT_MQTT_BROKER_URL, section='MQTT')
    app_state.mqtt_username = get_config_value("MQTT_USERNAME", str, None, section='MQTT')
    app_state.mqtt_password = get_config_value("MQTT_PASSWORD", str, None, section='MQTT')
    app_state.mqtt_client_id = get_config_value("MQTT_CLIENT_ID", str, None, section='MQTT')
    app_state.oversampling_factor = get_config_value("OVERSAMPLING_FACTOR", int, 1, section='MQTT')
    app_state.enable_ha_discovery = get_config_value("ENABLE_HA_DISCOVERY", bool, True, section='MQTT')
    app_state.ha_discovery_prefix = get_config_value("HA_DISCOVERY_PREFIX", str, DEFAULT_HA_DISCOVERY_PREFIX, section='MQTT')
    app_state.enable_override_topic = get_config_value("ENABLE_OVERRIDE_TOPIC", bool, True, section='MQTT')

    if app_state.oversampling_factor < 1:
        logger.warning(f"OVERSAMPLING_FACTOR must be >= 1, got {app_state.oversampling_factor}. Using 1.")
        app_state.oversampling_factor = 1

    # Shelly emulation
    app_state.enable_shelly_emu = get_config_value("ENABLE_SHELLY_EMU", bool, True, section='SHELLY_EMU')
    app_state.shelly_emu_port = get_config_value("SHELLY_EMU_PORT", int, SHELLY_EMU_DEFAULT_PORT, section='SHELLY_EMU')
    app_state.shelly_emu_bind_address = get_config_value("SHELLY_EMU_BIND_ADDRESS", str, SHELLY_EMU_DEFAULT_BIND_ADDRESS, section='SHELLY_EMU')
    app_state.shelly_emu_variant = get_config_value("SHELLY_EMU_VARIANT", str, SHELLY_EMU_VARIANT_LEGACY, section='SHELLY_EMU').lower()
    app_state.override_ttl_seconds = get_config_value("OVERRIDE_TTL_SECONDS", float, DEFAULT_OVERRIDE_TTL_SECONDS, section='SHELLY_EMU')

    # Logging (LOGLEVEL is the legacy environment name)
    app_state.log_level = get_config_value("LOG_LEVEL", str, None, section='LOGGING') or os.environ.get("LOGLEVEL", "INFO")
    app_state.log_to_file = get_config_value("LOG_TO_FILE", bool, False, section='LOGGING')

    logger.info("Configuration loading complete.")


def validate_core_config(app_state: AppState):
    """
    Validates critical configuration settings after they have been loaded.

    Verifies that:
    - `POLL_IP` is set.
    - `POLL_INTERVAL` and `OVERRIDE_TTL_SECONDS` are positive.
    - `MQTT_PASSWORD` is only given together with `MQTT_USERNAME`.
    - `MQTT_BROKER_URL` can be parsed.
    - `SHELLY_EMU_VARIANT` is a known variant.

    If any of these checks fail, it logs a critical error message detailing the
    problems and terminates the application with `sys.exit(1)`.
    """
    errors = []
    if not app_state.poll_ip:
        errors.append("POLL_IP is not set.")

    if app_state.poll_interval <= 0:
        errors.append("POLL_INTERVAL must be > 0.")

    if app_state.enable_mqtt and app_state.mqtt_password and not app_state.mqtt_username:
        errors.append("MQTT_PASSWORD is set but MQTT_USERNAME is not. MQTT_USERNAME must be set if MQTT_PASSWORD is set.")

    if app_state.enable_mqtt:
        try:
            parse_broker_url(app_state.mqtt_broker_url)
        except ConfigurationError as e:
            errors.append(f"MQTT_BROKER_URL is invalid: {e}")

    if app_state.enable_shelly_emu:
        if app_state.shelly_emu_variant not in SHELLY_EMU_VARIANTS:
            errors.append(f"SHELLY_EMU_VARIANT must be one of {', '.join(SHELLY_EMU_VARIANTS)}, got '{app_state.shelly_emu_variant}'.")
        if app_state.override_ttl_seconds <= 0:
            errors.append("OVERRIDE_TTL_SECONDS must be > 0.")

    if errors:
        logger.critical("Core Configuration Errors: " + " ".join(errors) + " Exiting.")
        sys.exit(1)

    logger.info("Core configuration validated successfully.")
