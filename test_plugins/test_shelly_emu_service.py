#!/usr/bin/env python3
"""
Tests for the Shelly Pro 3EM UDP emulator.

Reply formatting and datagram handling are tested directly; the socket tests
bind to an ephemeral port on the loopback interface.
"""

import sys
import os
import socket
import unittest
from unittest.mock import Mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.app_state import AppState
from core.exceptions import BindFailureError, SendFailureError
from core.measurements import ActivePowerTriple, MeasurementSet
from core.override_arbiter import PowerOverrideArbiter
from core.snapshot_store import SnapshotStore
from services.shelly_emu_service import (
    ShellyEmuService, build_response, format_whole_watts, is_status_query,
)

QUERY = b'{"id":1,"method":"EM.GetStatus","params":{"id":0}}'
ADDR = ("192.168.1.50", 30000)


def make_app_state(variant="legacy", port=0) -> AppState:
    app_state = AppState(version="test")
    app_state.shelly_emu_bind_address = "127.0.0.1"
    app_state.shelly_emu_port = port
    app_state.shelly_emu_variant = variant
    return app_state


def live_set(l1, l2, l3, total) -> MeasurementSet:
    return MeasurementSet({"W_L1": l1, "W_L2": l2, "W_L3": l3, "W_TOTAL": total}, timestamp=1.0)


class TestFormatting(unittest.TestCase):

    def test_marker_anywhere(self):
        self.assertTrue(is_status_query(QUERY))
        self.assertTrue(is_status_query(b"xxEM.GetStatusyy"))
        self.assertFalse(is_status_query(b'{"method":"Shelly.GetStatus"}'))
        self.assertFalse(is_status_query(b""))

    def test_whole_watts_rounds_half_away_from_zero(self):
        self.assertEqual(format_whole_watts(1530.25), "1530")
        self.assertEqual(format_whole_watts(1530.5), "1531")
        self.assertEqual(format_whole_watts(-2.5), "-3")
        self.assertEqual(format_whole_watts(0.0), "0")

    def test_legacy_response(self):
        power = ActivePowerTriple(1530.25, 0.0, 0.0, 1530.25)
        self.assertEqual(build_response(power, "legacy"),
                         "a_act_power==1530,b_act_power==0,c_act_power==0,total_act_power==1530")

    def test_legacy_reports_total_on_phase_a(self):
        power = ActivePowerTriple(100.0, 200.0, 300.0, 600.0)
        self.assertEqual(build_response(power, "legacy"),
                         "a_act_power==600,b_act_power==0,c_act_power==0,total_act_power==600")

    def test_three_phase_response(self):
        power = ActivePowerTriple(1530.25, 0.0, 0.0, 1530.25)
        self.assertEqual(build_response(power, "three_phase"),
                         "a_act_power==1530.25,b_act_power==0,c_act_power==0,total_act_power==1530.25")

    def test_three_phase_small_values_fixed_point(self):
        power = ActivePowerTriple(0.00001, 0.0, 0.0, 0.00001)
        self.assertEqual(build_response(power, "three_phase"),
                         "a_act_power==0.00001,b_act_power==0,c_act_power==0,total_act_power==0.00001")

    def test_unknown_variant(self):
        with self.assertRaises(ValueError):
            build_response(ActivePowerTriple.zero(), "pro_em")


class TestHandleDatagram(unittest.TestCase):

    def setUp(self):
        self.store = SnapshotStore()
        self.arbiter = PowerOverrideArbiter(ttl_seconds=30.0, timer_factory=Mock())
        self.service = ShellyEmuService(make_app_state("three_phase"), self.arbiter, self.store)
        self.service.sock = Mock()

    def test_zero_before_first_poll(self):
        payload = self.service.handle_datagram(QUERY, ADDR)
        self.assertEqual(payload, "a_act_power==0,b_act_power==0,c_act_power==0,total_act_power==0")

    def test_live_value_replied_once(self):
        self.store.publish(live_set(1530.25, 0.0, 0.0, 1530.25))
        payload = self.service.handle_datagram(QUERY, ADDR)
        self.service.sock.sendto.assert_called_once_with(payload.encode("ascii"), ADDR)
        self.assertIn("total_act_power==1530.25", payload)

    def test_no_reply_without_marker(self):
        self.assertIsNone(self.service.handle_datagram(b"hello", ADDR))
        self.service.sock.sendto.assert_not_called()

    def test_override_wins_over_live(self):
        self.store.publish(live_set(1530.25, 0.0, 0.0, 1530.25))
        self.arbiter.set_override(ActivePowerTriple.single_phase(500.0))
        self.store.publish(live_set(42.0, 0.0, 0.0, 42.0))
        payload = self.service.handle_datagram(QUERY, ADDR)
        self.assertEqual(payload, "a_act_power==500,b_act_power==0,c_act_power==0,total_act_power==500")

    def test_send_failure(self):
        self.service.sock.sendto.side_effect = OSError("Network is unreachable")
        with self.assertRaises(SendFailureError):
            self.service.handle_datagram(QUERY, ADDR)


class TestShellyEmuSocket(unittest.TestCase):

    def setUp(self):
        self.store = SnapshotStore()
        self.store.publish(live_set(1530.25, 0.0, 0.0, 1530.25))
        self.arbiter = PowerOverrideArbiter(ttl_seconds=30.0, timer_factory=Mock())
        self.client = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.client.settimeout(3.0)

    def tearDown(self):
        self.client.close()

    def test_roundtrip_over_loopback(self):
        service = ShellyEmuService(make_app_state("legacy"), self.arbiter, self.store)
        self.assertTrue(service.start())
        try:
            self.client.sendto(QUERY, service.bound_address)
            reply, _ = self.client.recvfrom(1024)
            self.assertEqual(reply, b"a_act_power==1530,b_act_power==0,c_act_power==0,total_act_power==1530")
        finally:
            service.stop()

    def test_bind_failure_disables_responder_only(self):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        blocker.bind(("127.0.0.1", 0))
        try:
            port = blocker.getsockname()[1]
            service = ShellyEmuService(make_app_state(port=port), self.arbiter, self.store)
            with self.assertRaises(BindFailureError) as ctx:
                service.bind()
            self.assertEqual(ctx.exception.port, port)
            with self.assertLogs("services.shelly_emu_service", level="CRITICAL") as logs:
                self.assertFalse(service.start())
            self.assertIn("BIND FAILURE", logs.output[0])
        finally:
            blocker.close()

    def test_stop_closes_socket_after_thread_exit(self):
        service = ShellyEmuService(make_app_state(), self.arbiter, self.store)
        self.assertTrue(service.start())
        service.stop_event.set()
        service._thread.join(timeout=5)
        self.assertFalse(service._thread.is_alive())
        sock = service.sock
        service.stop()
        self.assertIsNone(service.sock)
        self.assertEqual(sock.fileno(), -1)

    def test_stop_closes_socket_without_thread(self):
        service = ShellyEmuService(make_app_state(), self.arbiter, self.store)
        service.bind()
        sock = service.sock
        service.stop()
        self.assertEqual(sock.fileno(), -1)

    def test_disabled(self):
        app_state = make_app_state()
        app_state.enable_shelly_emu = False
        service = ShellyEmuService(app_state, self.arbiter, self.store)
        self.assertFalse(service.start())
        self.assertIsNone(service.sock)


if __name__ == '__main__':
    unittest.main()
