# plugins/meter/em24_modbus_plugin.py
"""
Carlo Gavazzi EM24 Modbus Meter Plugin

Reads the EM24 three-phase energy meter over Modbus TCP. Each read returns the
82-register instantaneous/energy block as raw bytes; the meter poller decodes
it with `EM24_REGISTERS`.

Features:
- Pre-connection TCP port check for quicker diagnosis of network problems
- Single block read per poll cycle
- Compatible with pymodbus 3.x keyword changes (`slave` / `device_id`)
"""

import logging
from typing import Any, Dict, List

from pymodbus.client import ModbusTcpClient
from pymodbus.exceptions import ModbusException
from pymodbus.pdu import ExceptionResponse

from core.exceptions import TransportFailureError
from plugins.plugin_interface import DevicePlugin, parse_config_int, parse_config_float, parse_config_str
from plugins.plugin_utils import check_tcp_port
from plugins.register_decoder import registers_to_bytes
from .em24_modbus_constants import (
    EM24_REGISTERS,
    EM24_BLOCK_START_ADDRESS,
    EM24_BLOCK_REGISTER_COUNT,
    EM24_DEFAULT_PORT,
    EM24_DEFAULT_SLAVE_ID,
)


class Em24ModbusPlugin(DevicePlugin):
    """
    Register source for a Carlo Gavazzi EM24 reachable via Modbus TCP.

    The plugin does not reconnect on its own. The poller calls `connect()` at
    the start of a cycle whenever `is_connected` is False, so a dead link is
    retried once per poll interval.
    """

    def __init__(self, instance_name: str, plugin_specific_config: Dict[str, Any], main_logger: logging.Logger):
        super().__init__(instance_name, plugin_specific_config, main_logger)

        self.tcp_host = parse_config_str(self.plugin_config, "tcp_host")
        self.tcp_port = parse_config_int(self.plugin_config, "tcp_port", EM24_DEFAULT_PORT)
        self.slave_address = parse_config_int(self.plugin_config, "slave_address", EM24_DEFAULT_SLAVE_ID)
        self.modbus_timeout_seconds = parse_config_float(self.plugin_config, "modbus_timeout_seconds", 3.0)

        self.logger.info(f"EM24 Plugin '{self.instance_name}': Initialized. Target: {self.tcp_host}:{self.tcp_port}, SlaveID: {self.slave_address}.")

    @property
    def name(self) -> str:
        return "em24_modbus"

    @property
    def pretty_name(self) -> str:
        return "Carlo Gavazzi EM24"

    @property
    def register_map(self) -> Dict[str, Dict[str, Any]]:
        return EM24_REGISTERS

    def connect(self) -> bool:
        """
        Establishes a Modbus TCP connection to the meter.

        Returns:
            True if the connection was successful, False otherwise.
        """
        if self._is_connected_flag and self.client:
            return True
        if self.client:
            self.disconnect()
        self.last_error_message = None

        port_open, _, err_msg = check_tcp_port(self.tcp_host, self.tcp_port, logger_instance=self.logger)
        if not port_open:
            self.last_error_message = f"Pre-check failed: TCP port {self.tcp_port} on {self.tcp_host} is not open. Error: {err_msg}"
            self.logger.error(f"EM24 Plugin '{self.instance_name}': {self.last_error_message}")
            self.connection_status = "Connect Failed"
            return False

        try:
            self.client = ModbusTcpClient(host=self.tcp_host, port=self.tcp_port, timeout=self.modbus_timeout_seconds)
            if self.client.connect():
                self._is_connected_flag = True
                self.connection_status = "connected"
                self.logger.info(f"EM24 Plugin '{self.instance_name}': Connected to {self.tcp_host}:{self.tcp_port}.")
                return True
            self.last_error_message = "Pymodbus client.connect() returned False."
        except (ModbusException, OSError) as e:
            self.last_error_message = f"Connection exception: {e}"
            self.logger.error(f"EM24 Plugin '{self.instance_name}': {self.last_error_message}")

        if self.client:
            self.client.close()
        self.client = None
        self._is_connected_flag = False
        self.connection_status = "Connect Failed"
        return False

    def disconnect(self) -> None:
        """Closes the Modbus connection and resets the client."""
        if self.client:
            self.logger.info(f"EM24 Plugin '{self.instance_name}': Disconnecting client.")
            try:
                self.client.close()
            except (ModbusException, OSError) as e:
                self.logger.error(f"EM24 Plugin '{self.instance_name}': Error closing Modbus connection: {e}")
        self.client = None
        self._is_connected_flag = False
        self.connection_status = "disconnected"

    def _read_holding_registers(self, address: int, count: int):
        # pymodbus < 3.7 swallows unknown keywords, so `slave` must be tried first.
        # 3.10 renamed it to `device_id` and rejects `slave` with a TypeError.
        try:
            return self.client.read_holding_registers(address, count=count, slave=self.slave_address)
        except TypeError:
            return self.client.read_holding_registers(address, count=count, device_id=self.slave_address)

    def read_register_block(self) -> bytes:
        """
        Reads the measurement block from the meter.

        Returns:
            The block as big-endian bytes (2 bytes per register).

        Raises:
            TransportFailureError: If not connected, on I/O errors, or on a Modbus error response.
        """
        if not self.is_connected or not self.client:
            raise TransportFailureError(f"EM24 '{self.instance_name}' is not connected.")

        try:
            result = self._read_holding_registers(EM24_BLOCK_START_ADDRESS, EM24_BLOCK_REGISTER_COUNT)
        except (ModbusException, OSError) as e:
            self.last_error_message = f"Communication error: {e}"
            self.disconnect()
            raise TransportFailureError(self.last_error_message) from e

        if result.isError() or isinstance(result, ExceptionResponse):
            self.last_error_message = f"Modbus error reading measurement block: {result}"
            raise TransportFailureError(self.last_error_message)

        registers: List[int] = list(result.registers)
        return registers_to_bytes(registers)
