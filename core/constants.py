"""
Centralized constants for the meter2mqtt bridge.

This module defines constants used throughout the application to avoid magic
strings and provide a single source of truth for default values.
"""

# Application Details
LOG_FILE_NAME = "meter2mqtt.log"
CONFIG_FILE_NAME = "config.ini"

# Logger Names
CORE_LOGGER_NAME = "Meter2MqttCore"

# Thread Names
METER_POLL_THREAD_NAME = "MeterPoll"
MQTT_SERVICE_THREAD_NAME = "MqttService"
SHELLY_EMU_THREAD_NAME = "ShellyEmu"

# Polling
DEFAULT_PLUGIN_TYPE = "meter.em24_modbus"
DEFAULT_POLL_INTERVAL = 5.0  # seconds
DEFAULT_MODBUS_TIMEOUT_SECONDS = 3
DEFAULT_IDENTIFIER = "Main"

# MQTT
TOPIC_PREFIX = "meter2mqtt"
DEFAULT_MQTT_BROKER_URL = "mqtt://localhost:1883"
DEFAULT_HA_DISCOVERY_PREFIX = "homeassistant"
HA_DISCOVERY_REFRESH_SECONDS = 4 * 60 * 60
HA_EXPIRE_AFTER_SECONDS = 300
OVERRIDE_TOPIC_SUFFIX = "marstek_shelly_emu/set/power"

# Shelly Pro 3EM emulation
SHELLY_EMU_DEFAULT_PORT = 1010
SHELLY_EMU_DEFAULT_BIND_ADDRESS = "0.0.0.0"
SHELLY_EMU_QUERY_MARKER = "EM.GetStatus"
SHELLY_EMU_VARIANT_LEGACY = "legacy"
SHELLY_EMU_VARIANT_THREE_PHASE = "three_phase"
SHELLY_EMU_VARIANTS = (SHELLY_EMU_VARIANT_LEGACY, SHELLY_EMU_VARIANT_THREE_PHASE)
SHELLY_EMU_MAX_DATAGRAM = 2048

# Matches the appliance's query cadence, so a controller must keep refreshing.
DEFAULT_OVERRIDE_TTL_SECONDS = 30.0
