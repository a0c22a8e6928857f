# plugins/register_decoder.py
"""
Pure functions that turn a raw Modbus register block into scaled measurements.

A register map is a dictionary of field name -> definition, e.g.::

    {"W_TOTAL": {"offset": 80, "len": 4, "type": "int32_ws", "scale": 0.1, "precision": 5}}

`offset` and `len` are in bytes relative to the start of the block. Supported
types:

- ``int32_ws``: 32-bit signed value stored as two 16-bit words, low word first.
- ``int16``: plain 16-bit signed big-endian value.
"""

import struct
from typing import Any, Dict, List

from core.exceptions import MalformedDataError

TYPE_INT32_WORD_SWAPPED = "int32_ws"
TYPE_INT16 = "int16"

TYPE_WIDTHS: Dict[str, int] = {
    TYPE_INT32_WORD_SWAPPED: 4,
    TYPE_INT16: 2,
}


def registers_to_bytes(registers: List[int]) -> bytes:
    """Packs 16-bit register values (as returned by pymodbus) into a big-endian byte block."""
    return struct.pack(f">{len(registers)}H", *(reg & 0xFFFF for reg in registers))


def decode_int32_word_swapped(raw: bytes, offset: int) -> int:
    """Decodes a signed 32-bit value whose low word is stored first."""
    if offset < 0 or offset + 4 > len(raw):
        raise MalformedDataError(f"Need 4 bytes at offset {offset}, block has {len(raw)}")
    low_word = raw[offset:offset + 2]
    high_word = raw[offset + 2:offset + 4]
    return struct.unpack(">i", high_word + low_word)[0]


def decode_int16(raw: bytes, offset: int) -> int:
    """Decodes a signed big-endian 16-bit value."""
    if offset < 0 or offset + 2 > len(raw):
        raise MalformedDataError(f"Need 2 bytes at offset {offset}, block has {len(raw)}")
    return struct.unpack_from(">h", raw, offset)[0]


_DECODERS = {
    TYPE_INT32_WORD_SWAPPED: decode_int32_word_swapped,
    TYPE_INT16: decode_int16,
}


def required_block_length(register_map: Dict[str, Dict[str, Any]]) -> int:
    """Returns the number of bytes a block must have to satisfy every field of the map."""
    return max((info["offset"] + info["len"] for info in register_map.values()), default=0)


def decode_register_block(raw: bytes, register_map: Dict[str, Dict[str, Any]]) -> Dict[str, float]:
    """
    Decodes every field of `register_map` from `raw`.

    The result is either complete or not produced at all: any field that
    cannot be satisfied raises MalformedDataError before anything is returned.

    Args:
        raw: The register block, big-endian words.
        register_map: Field definitions (see module docstring).

    Returns:
        A new dictionary of field name -> scaled, rounded float.

    Raises:
        MalformedDataError: If the block is too short or the map is inconsistent.
    """
    needed = required_block_length(register_map)
    if len(raw) < needed:
        raise MalformedDataError(f"Register block too short: got {len(raw)} bytes, need {needed}")

    decoded: Dict[str, float] = {}
    for key, info in register_map.items():
        value_type = info.get("type", TYPE_INT32_WORD_SWAPPED)
        decoder = _DECODERS.get(value_type)
        if decoder is None:
            raise MalformedDataError(f"Unknown register type '{value_type}' for field '{key}'")
        if info["len"] != TYPE_WIDTHS[value_type]:
            raise MalformedDataError(f"Field '{key}' declares {info['len']} bytes but type '{value_type}' needs {TYPE_WIDTHS[value_type]}")

        raw_value = decoder(raw, info["offset"])
        decoded[key] = round(raw_value * info.get("scale", 1.0), info.get("precision", 5))
    return decoded
