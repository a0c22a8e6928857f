# core/measurements.py
"""
Value types shared by the poller, the snapshot store, the override arbiter
and the consumers.

Both types are immutable so that a reference to one can be handed between
threads and replaced wholesale without locking.
"""

import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, NamedTuple, Optional, Callable

# Keys of the fields that make up the appliance-facing active power view.
ACTIVE_POWER_L1_KEY = "W_L1"
ACTIVE_POWER_L2_KEY = "W_L2"
ACTIVE_POWER_L3_KEY = "W_L3"
ACTIVE_POWER_TOTAL_KEY = "W_TOTAL"


class ActivePowerTriple(NamedTuple):
    """Per-phase and total active power in watts."""
    l1: float
    l2: float
    l3: float
    total: float

    @classmethod
    def zero(cls) -> "ActivePowerTriple":
        return cls(0.0, 0.0, 0.0, 0.0)

    @classmethod
    def single_phase(cls, watts: float) -> "ActivePowerTriple":
        """All power on L1, the way single-phase storage expects it."""
        return cls(watts, 0.0, 0.0, watts)


@dataclass(frozen=True)
class MeasurementSet:
    """
    One complete, decoded reading of the meter.

    `values` maps quantity names (e.g. ``V_L1_N``, ``W_TOTAL``) to floats and
    is exposed read-only. `timestamp` is the wall-clock time of the poll.
    """
    values: Mapping[str, float]
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def get(self, key: str, default: Optional[float] = None) -> Optional[float]:
        return self.values.get(key, default)

    def active_power(self) -> Optional[ActivePowerTriple]:
        """Returns the active power triple, or None if the set lacks any of its fields."""
        try:
            return ActivePowerTriple(
                self.values[ACTIVE_POWER_L1_KEY],
                self.values[ACTIVE_POWER_L2_KEY],
                self.values[ACTIVE_POWER_L3_KEY],
                self.values[ACTIVE_POWER_TOTAL_KEY],
            )
        except KeyError:
            return None


# Consumers registered with the poller receive every new set.
MeasurementListener = Callable[[MeasurementSet], None]
