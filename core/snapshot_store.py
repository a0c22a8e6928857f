# core/snapshot_store.py
import logging
import time
from typing import Optional, Union

from core.measurements import ActivePowerTriple, MeasurementSet

logger = logging.getLogger(__name__)


class _NoData:
    """Sentinel type returned by SnapshotStore.current() before the first successful poll."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_DATA"


NO_DATA = _NoData()


class SnapshotStore:
    """
    Latest-value cell for the most recent MeasurementSet.

    There is exactly one writer (the meter poller). Publishing is a single
    reference assignment of an immutable set, so readers on other threads see
    either the previous or the new snapshot, never a mix, and never block.
    """
    def __init__(self):
        self._snapshot: Union[MeasurementSet, _NoData] = NO_DATA

    def publish(self, measurement_set: MeasurementSet) -> None:
        """Replaces the visible snapshot."""
        self._snapshot = measurement_set
        logger.debug(f"Snapshot published (timestamp {measurement_set.timestamp:.3f}).")

    def current(self) -> Union[MeasurementSet, _NoData]:
        """Returns the latest snapshot, or NO_DATA if nothing has been published yet."""
        return self._snapshot

    def latest_active_power(self) -> Optional[ActivePowerTriple]:
        snapshot = self._snapshot
        if snapshot is NO_DATA:
            return None
        return snapshot.active_power()

    @property
    def last_success_timestamp(self) -> Optional[float]:
        snapshot = self._snapshot
        return None if snapshot is NO_DATA else snapshot.timestamp

    def age_seconds(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds since the current snapshot was taken, or None without data."""
        last = self.last_success_timestamp
        if last is None:
            return None
        return (time.time() if now is None else now) - last
