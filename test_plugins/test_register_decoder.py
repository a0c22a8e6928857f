#!/usr/bin/env python3
"""
Test suite for the register block decoder and the EM24 register map.

Usage:
    python -m pytest test_plugins/test_register_decoder.py
"""

import sys
import os
import struct
import unittest

# Add the project root to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.exceptions import MalformedDataError
from plugins.register_decoder import (
    registers_to_bytes,
    decode_int32_word_swapped,
    decode_int16,
    decode_register_block,
    required_block_length,
)
from plugins.meter.em24_modbus_constants import EM24_REGISTERS, EM24_BLOCK_REGISTER_COUNT


def put_int32_ws(buf: bytearray, offset: int, value: int):
    """Writes a signed 32-bit value low word first, the way the EM24 stores it."""
    packed = struct.pack(">i", value)
    buf[offset:offset + 2] = packed[2:4]
    buf[offset + 2:offset + 4] = packed[0:2]


def put_int16(buf: bytearray, offset: int, value: int):
    buf[offset:offset + 2] = struct.pack(">h", value)


def build_em24_block() -> bytearray:
    buf = bytearray(EM24_BLOCK_REGISTER_COUNT * 2)
    put_int32_ws(buf, EM24_REGISTERS["V_L1_N"]["offset"], 2305)
    put_int32_ws(buf, EM24_REGISTERS["A_L1"]["offset"], 6652)
    put_int32_ws(buf, EM24_REGISTERS["W_L1"]["offset"], 15302)
    put_int32_ws(buf, EM24_REGISTERS["W_TOTAL"]["offset"], -12345)
    put_int16(buf, EM24_REGISTERS["PF_L1"]["offset"], -950)
    put_int16(buf, EM24_REGISTERS["HZ"]["offset"], 500)
    put_int32_ws(buf, EM24_REGISTERS["KWH_IN_TOTAL"]["offset"], 1234567)
    put_int32_ws(buf, EM24_REGISTERS["KVARH_OUT_TOTAL"]["offset"], 42)
    return buf


class TestPrimitives(unittest.TestCase):

    def test_registers_to_bytes_is_big_endian(self):
        self.assertEqual(registers_to_bytes([0x1234, 0xFFFF]), b"\x12\x34\xff\xff")

    def test_int32_low_word_first(self):
        # 0x00010002 stored as [0x0002, 0x0001]
        raw = registers_to_bytes([0x0002, 0x0001])
        self.assertEqual(decode_int32_word_swapped(raw, 0), 65538)

    def test_int32_negative(self):
        buf = bytearray(4)
        put_int32_ws(buf, 0, -1)
        self.assertEqual(decode_int32_word_swapped(bytes(buf), 0), -1)

    def test_int16_signed(self):
        self.assertEqual(decode_int16(b"\xff\x9c", 0), -100)

    def test_short_reads_raise(self):
        with self.assertRaises(MalformedDataError):
            decode_int32_word_swapped(b"\x00\x01\x02", 0)
        with self.assertRaises(MalformedDataError):
            decode_int16(b"\x00", 0)


class TestDecodeRegisterBlock(unittest.TestCase):

    def test_em24_block_fits_map(self):
        self.assertEqual(required_block_length(EM24_REGISTERS), EM24_BLOCK_REGISTER_COUNT * 2)

    def test_known_values(self):
        values = decode_register_block(bytes(build_em24_block()), EM24_REGISTERS)
        self.assertEqual(set(values), set(EM24_REGISTERS))
        self.assertAlmostEqual(values["V_L1_N"], 230.5)
        self.assertAlmostEqual(values["A_L1"], 6.652)
        self.assertAlmostEqual(values["W_L1"], 1530.2)
        self.assertAlmostEqual(values["W_TOTAL"], -1234.5)
        self.assertAlmostEqual(values["PF_L1"], -0.95)
        self.assertAlmostEqual(values["HZ"], 50.0)
        self.assertAlmostEqual(values["KWH_IN_TOTAL"], 123456.7)
        self.assertAlmostEqual(values["KVARH_OUT_TOTAL"], 4.2)
        self.assertEqual(values["V_L2_N"], 0)

    def test_decode_is_deterministic(self):
        raw = bytes(build_em24_block())
        self.assertEqual(decode_register_block(raw, EM24_REGISTERS), decode_register_block(raw, EM24_REGISTERS))

    def test_short_block_raises(self):
        raw = bytes(build_em24_block())[:-2]
        with self.assertRaises(MalformedDataError):
            decode_register_block(raw, EM24_REGISTERS)

    def test_empty_block_raises(self):
        with self.assertRaises(MalformedDataError):
            decode_register_block(b"", EM24_REGISTERS)

    def test_fractional_watts_with_custom_scale(self):
        register_map = {"W_TOTAL": {"offset": 0, "len": 4, "type": "int32_ws", "scale": 0.01, "precision": 5}}
        buf = bytearray(4)
        put_int32_ws(buf, 0, 153025)
        self.assertEqual(decode_register_block(bytes(buf), register_map), {"W_TOTAL": 1530.25})

    def test_inconsistent_map_raises(self):
        bad_len = {"X": {"offset": 0, "len": 2, "type": "int32_ws"}}
        unknown_type = {"X": {"offset": 0, "len": 4, "type": "float32"}}
        with self.assertRaises(MalformedDataError):
            decode_register_block(b"\x00" * 4, bad_len)
        with self.assertRaises(MalformedDataError):
            decode_register_block(b"\x00" * 4, unknown_type)


if __name__ == '__main__':
    unittest.main()
