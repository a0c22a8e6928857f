# plugins/meter/em24_modbus_constants.py
"""
Carlo Gavazzi EM24 Modbus Constants and Register Definitions

The EM24 exposes its instantaneous variables and energy counters as holding
registers starting at address 0x0000. One block read of 82 registers covers
everything the bridge publishes.

Offsets below are byte offsets inside that block (register address * 2).
32-bit values are INT32 with the least significant word first; power factors
and frequency are INT16.

Protocol Reference: Carlo Gavazzi EM24 DIN Communication Protocol
"""

from typing import Dict, Any

EM24_BLOCK_START_ADDRESS = 0x0000
EM24_BLOCK_REGISTER_COUNT = 82
EM24_DEFAULT_PORT = 502
EM24_DEFAULT_SLAVE_ID = 1

_PRECISION = 5

def _int32(offset: int, scale: float = 0.1) -> Dict[str, Any]:
    return {"offset": offset, "len": 4, "type": "int32_ws", "scale": scale, "precision": _PRECISION}

def _int16(offset: int, scale: float) -> Dict[str, Any]:
    return {"offset": offset, "len": 2, "type": "int16", "scale": scale, "precision": _PRECISION}

EM24_REGISTERS: Dict[str, Dict[str, Any]] = {
    # Voltages (V)
    "V_L1_N": _int32(0),
    "V_L2_N": _int32(4),
    "V_L3_N": _int32(8),
    "V_L1_L2": _int32(12),
    "V_L2_L3": _int32(16),
    "V_L3_L1": _int32(20),

    # Currents (A)
    "A_L1": _int32(24, 0.001),
    "A_L2": _int32(28, 0.001),
    "A_L3": _int32(32, 0.001),

    # Active power (W)
    "W_L1": _int32(36),
    "W_L2": _int32(40),
    "W_L3": _int32(44),

    # Apparent power (VA)
    "VA_L1": _int32(48),
    "VA_L2": _int32(52),
    "VA_L3": _int32(56),

    # Reactive power (var)
    "VAR_L1": _int32(60),
    "VAR_L2": _int32(64),
    "VAR_L3": _int32(68),

    "V_L_N_AVG": _int32(72),
    "V_L_L_AVG": _int32(76),

    "W_TOTAL": _int32(80),
    "VA_TOTAL": _int32(84),
    "VAR_TOTAL": _int32(88),

    # Power factors: negative is lead, positive is lag
    "PF_L1": _int16(92, 0.001),
    "PF_L2": _int16(94, 0.001),
    "PF_L3": _int16(96, 0.001),
    "PF_SUM": _int16(98, 0.001),

    # 100: phase sequence, not decoded

    "HZ": _int16(102, 0.1),

    # Energy counters (kWh / kvarh)
    "KWH_IN_TOTAL": _int32(104),
    "KVARH_IN_TOTAL": _int32(108),

    # Demand (W)
    "DMD_W": _int32(112),
    "DMD_W_MAX": _int32(116),

    "KWH_OUT_TOTAL": _int32(156),
    "KVARH_OUT_TOTAL": _int32(160),
}
