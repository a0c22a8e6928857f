# plugins/plugin_interface.py
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import logging

def parse_config_int(config_dict: Dict[str, Any], key: str, default: int) -> int:
    """
    Parse an integer configuration value, handling comments and whitespace.

    Example:
        # Handles values like "502 ; comment" or "502"
        tcp_port = parse_config_int(config, "tcp_port", 502)
    """
    value_str = str(config_dict.get(key, default))
    clean_value = value_str.split(';')[0].strip()
    return int(clean_value)

def parse_config_float(config_dict: Dict[str, Any], key: str, default: float) -> float:
    """Parse a float configuration value, handling comments and whitespace."""
    value_str = str(config_dict.get(key, default))
    clean_value = value_str.split(';')[0].strip()
    return float(clean_value)

def parse_config_str(config_dict: Dict[str, Any], key: str, default: Optional[str] = None) -> Optional[str]:
    """Parse a string configuration value, handling comments and whitespace. Empty values become None."""
    value = config_dict.get(key, default)
    if value is None:
        return None
    clean_value = str(value).split(';')[0].strip()
    return clean_value if clean_value else None


class DevicePlugin(ABC):
    """
    Abstract Base Class for meter plugins (the register source).

    A plugin owns the transport to one meter and hands out raw register
    blocks; decoding is done by the poller using the plugin's register map,
    so a plugin never returns partially interpreted data.
    """
    def __init__(self, instance_name: str, plugin_specific_config: Dict[str, Any], main_logger: logging.Logger):
        """
        'instance_name' is a unique identifier for this plugin instance (e.g., "Main").
        'plugin_specific_config' holds connection settings (tcp_host, tcp_port, slave_address, ...).
        """
        self.instance_name = instance_name
        self.plugin_config = plugin_specific_config
        self.logger = main_logger
        self.client: Optional[Any] = None # Plugin-specific client (e.g., Modbus client)
        self._is_connected_flag: bool = False # Common flag, managed by plugin's connect/disconnect
        self.connection_status: str = "Initializing"
        self.last_error_message: Optional[str] = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the unique type name of this plugin (e.g., 'em24_modbus')."""
        pass

    @property
    @abstractmethod
    def pretty_name(self) -> str:
        """Return a human-friendly name for the plugin type (e.g., 'Carlo Gavazzi EM24')."""
        pass

    @property
    @abstractmethod
    def register_map(self) -> Dict[str, Dict[str, Any]]:
        """The field definitions used to decode blocks returned by read_register_block()."""
        pass

    @property
    def is_connected(self) -> bool:
        """Check if currently connected to the device."""
        return self._is_connected_flag

    @abstractmethod
    def connect(self) -> bool:
        """
        Establish connection to the device.
        MUST set self._is_connected_flag = True on success.
        Returns True on success, False on failure.
        """
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """
        Disconnect from the device.
        MUST set self._is_connected_flag = False.
        """
        pass

    @abstractmethod
    def read_register_block(self) -> bytes:
        """
        Read one raw register block from the device.

        Raises:
            TransportFailureError: On timeouts, connection loss or Modbus exception responses.
        """
        pass
