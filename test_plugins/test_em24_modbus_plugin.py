#!/usr/bin/env python3
"""
Test suite for the Carlo Gavazzi EM24 Modbus plugin and plugin loading.

The pymodbus client and the TCP pre-check are patched out.
"""

import sys
import os
import logging
import unittest
from unittest.mock import Mock, MagicMock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pymodbus.client import ModbusTcpClient
from pymodbus.exceptions import ModbusIOException

from core.app_state import AppState
from core.exceptions import TransportFailureError
from core.plugin_manager import build_plugin_config, load_plugin_instance
from plugins.meter.em24_modbus_plugin import Em24ModbusPlugin
from plugins.meter.em24_modbus_constants import EM24_BLOCK_REGISTER_COUNT, EM24_REGISTERS

PLUGIN_MODULE = "plugins.meter.em24_modbus_plugin"


def ok_response(registers):
    response = MagicMock()
    response.isError.return_value = False
    response.registers = registers
    return response


class TestEm24ModbusPlugin(unittest.TestCase):

    def setUp(self):
        self.config = {
            "tcp_host": "192.168.1.20",
            "tcp_port": "502 ; meter port",
            "slave_address": 1,
            "modbus_timeout_seconds": 3,
        }
        self.plugin = Em24ModbusPlugin("Main", self.config, logging.getLogger("test_em24"))

        check_patcher = patch(f"{PLUGIN_MODULE}.check_tcp_port", return_value=(True, 1.0, None))
        client_patcher = patch(f"{PLUGIN_MODULE}.ModbusTcpClient")
        self.mock_check = check_patcher.start()
        self.mock_client_cls = client_patcher.start()
        self.addCleanup(check_patcher.stop)
        self.addCleanup(client_patcher.stop)
        self.mock_client = self.mock_client_cls.return_value
        self.mock_client.connect.return_value = True

    def test_initialization(self):
        self.assertEqual(self.plugin.tcp_port, 502)
        self.assertEqual(self.plugin.name, "em24_modbus")
        self.assertIs(self.plugin.register_map, EM24_REGISTERS)
        self.assertFalse(self.plugin.is_connected)

    def test_connect(self):
        self.assertTrue(self.plugin.connect())
        self.mock_client_cls.assert_called_once_with(host="192.168.1.20", port=502, timeout=3.0)
        self.assertTrue(self.plugin.is_connected)

    def test_connect_precheck_failure(self):
        self.mock_check.return_value = (False, -1.0, "Timeout")
        self.assertFalse(self.plugin.connect())
        self.assertIn("Timeout", self.plugin.last_error_message)
        self.mock_client_cls.assert_not_called()

    def test_read_block(self):
        self.mock_client.read_holding_registers.return_value = ok_response([0x0102] * EM24_BLOCK_REGISTER_COUNT)
        self.plugin.connect()
        raw = self.plugin.read_register_block()
        self.assertEqual(len(raw), EM24_BLOCK_REGISTER_COUNT * 2)
        self.assertEqual(raw[:2], b"\x01\x02")
        self.mock_client.read_holding_registers.assert_called_once_with(0, count=EM24_BLOCK_REGISTER_COUNT, slave=1)

    def test_read_falls_back_to_device_id_keyword(self):
        def newer_api(address, count, **kwargs):
            if "slave" in kwargs:
                raise TypeError("unexpected keyword argument 'slave'")
            return ok_response([0] * count)
        self.mock_client.read_holding_registers.side_effect = newer_api
        self.plugin.connect()
        self.assertEqual(len(self.plugin.read_register_block()), EM24_BLOCK_REGISTER_COUNT * 2)
        self.assertEqual(self.mock_client.read_holding_registers.call_args.kwargs["device_id"], 1)

    def test_read_when_disconnected(self):
        with self.assertRaises(TransportFailureError):
            self.plugin.read_register_block()

    def test_read_io_error_disconnects(self):
        self.mock_client.read_holding_registers.side_effect = ModbusIOException("timed out")
        self.plugin.connect()
        with self.assertRaises(TransportFailureError):
            self.plugin.read_register_block()
        self.assertFalse(self.plugin.is_connected)
        self.mock_client.close.assert_called()

    def test_error_response(self):
        response = ok_response([])
        response.isError.return_value = True
        self.mock_client.read_holding_registers.return_value = response
        self.plugin.connect()
        with self.assertRaises(TransportFailureError):
            self.plugin.read_register_block()


class TestEm24UnitAddressing(unittest.TestCase):
    """Runs the request through a real pymodbus client to see which unit id goes on the wire."""

    def test_request_carries_configured_slave_address(self):
        config = {"tcp_host": "127.0.0.1", "tcp_port": 5020, "slave_address": 7}
        plugin = Em24ModbusPlugin("Main", config, logging.getLogger("test_em24"))
        plugin.client = ModbusTcpClient(host="127.0.0.1", port=5020)
        plugin._is_connected_flag = True

        requests = []

        def capture(*args, **kwargs):
            requests.extend(arg for arg in list(args) + list(kwargs.values()) if hasattr(arg, "function_code"))
            return ok_response([0] * EM24_BLOCK_REGISTER_COUNT)

        with patch.object(plugin.client, "execute", side_effect=capture):
            plugin._read_holding_registers(0, EM24_BLOCK_REGISTER_COUNT)

        self.assertEqual(len(requests), 1)
        request = requests[0]
        unit_id = next(getattr(request, attr) for attr in ("dev_id", "slave_id", "unit_id") if hasattr(request, attr))
        self.assertEqual(unit_id, 7)
        self.assertEqual(request.count, EM24_BLOCK_REGISTER_COUNT)


class TestPluginManager(unittest.TestCase):

    def setUp(self):
        self.app_state = AppState(version="test")
        self.app_state.poll_ip = "192.168.1.20"
        self.app_state.poll_port = 5020

    def test_build_plugin_config(self):
        config = build_plugin_config(self.app_state)
        self.assertEqual(config["tcp_host"], "192.168.1.20")
        self.assertEqual(config["tcp_port"], 5020)

    def test_load_em24(self):
        plugin = load_plugin_instance("meter.em24_modbus", "Main", self.app_state)
        self.assertIsInstance(plugin, Em24ModbusPlugin)
        self.assertEqual(plugin.tcp_port, 5020)

    def test_load_invalid(self):
        self.assertIsNone(load_plugin_instance("em24_modbus", "Main", self.app_state))
        self.assertIsNone(load_plugin_instance("meter.does_not_exist", "Main", self.app_state))


if __name__ == '__main__':
    unittest.main()
