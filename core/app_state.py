# core/app_state.py
import threading
from typing import Optional

from core.constants import (
    DEFAULT_POLL_INTERVAL, DEFAULT_MODBUS_TIMEOUT_SECONDS, DEFAULT_IDENTIFIER,
    DEFAULT_PLUGIN_TYPE, DEFAULT_MQTT_BROKER_URL, DEFAULT_HA_DISCOVERY_PREFIX,
    SHELLY_EMU_DEFAULT_PORT, SHELLY_EMU_DEFAULT_BIND_ADDRESS, SHELLY_EMU_VARIANT_LEGACY,
    DEFAULT_OVERRIDE_TTL_SECONDS, TOPIC_PREFIX,
)


class AppState:
    """
    Configuration and lifecycle flags shared by the application components.

    Populated once by `core.config_loader.load_configuration` and read by the
    services afterwards. Live measurement and override state is
    not kept here; it lives in the SnapshotStore and PowerOverrideArbiter
    instances that `main.py` hands to each component.
    """
    def __init__(self, version: str):
        # Version and Lifecycle
        self.version = version
        self.running = True
        self.main_threads_stop_event = threading.Event()

        # Configuration (will be populated by config_loader)
        self.config = None

        # Meter / Polling
        self.plugin_type = DEFAULT_PLUGIN_TYPE
        self.poll_ip: Optional[str] = None
        self.poll_port = 502
        self.poll_slave_id = 1
        self.poll_interval = DEFAULT_POLL_INTERVAL
        self.modbus_timeout_seconds = DEFAULT_MODBUS_TIMEOUT_SECONDS
        self.identifier = DEFAULT_IDENTIFIER

        # MQTT State
        self.enable_mqtt = True
        self.mqtt_broker_url = DEFAULT_MQTT_BROKER_URL
        self.mqtt_username: Optional[str] = None
        self.mqtt_password: Optional[str] = None
        self.mqtt_client_id: Optional[str] = None
        self.mqtt_last_state: Optional[str] = None
        self.oversampling_factor = 1
        self.enable_ha_discovery = True
        self.ha_discovery_prefix = DEFAULT_HA_DISCOVERY_PREFIX
        self.enable_override_topic = True

        # Shelly emulation
        self.enable_shelly_emu = True
        self.shelly_emu_port = SHELLY_EMU_DEFAULT_PORT
        self.shelly_emu_bind_address = SHELLY_EMU_DEFAULT_BIND_ADDRESS
        self.shelly_emu_variant = SHELLY_EMU_VARIANT_LEGACY
        self.override_ttl_seconds = DEFAULT_OVERRIDE_TTL_SECONDS

        # Logging
        self.log_level = "INFO"
        self.log_to_file = False

    @property
    def base_topic(self) -> str:
        return f"{TOPIC_PREFIX}/{self.identifier}"
