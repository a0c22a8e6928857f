# core/meter_poller.py
import logging
import threading
import time
from typing import Callable, List, Optional

from core.constants import METER_POLL_THREAD_NAME
from core.exceptions import MalformedDataError, TransportFailureError
from core.measurements import MeasurementListener, MeasurementSet
from core.snapshot_store import SnapshotStore
from plugins.plugin_interface import DevicePlugin
from plugins.register_decoder import decode_register_block

logger = logging.getLogger(__name__)


def seconds_until_next_tick(interval: float, now: float) -> float:
    """
    Returns the delay until the next multiple of `interval` on the wall clock.

    Ticks are aligned to absolute time rather than to the start of the last
    cycle, so a slow or failed cycle never shifts the following ones.
    """
    return interval - (now % interval)


class MeterPoller:
    """
    Periodic acquisition loop for one meter.

    Each cycle reads one raw register block from the plugin, decodes it with
    the plugin's register map, publishes the resulting MeasurementSet to the
    SnapshotStore and then hands it to every subscribed listener.

    A cycle that fails (transport or decode) is logged and skipped; the
    previous snapshot stays visible and the next cycle is scheduled as usual.
    """
    def __init__(self,
                 plugin: DevicePlugin,
                 snapshot_store: SnapshotStore,
                 poll_interval: float,
                 stop_event: Optional[threading.Event] = None,
                 wall_clock: Callable[[], float] = time.time):
        self.plugin = plugin
        self.snapshot_store = snapshot_store
        self.poll_interval = poll_interval
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self._wall_clock = wall_clock
        self._listeners: List[MeasurementListener] = []
        self._thread: Optional[threading.Thread] = None
        self.consecutive_failures = 0
        self.last_error: Optional[str] = None

    def subscribe(self, listener: MeasurementListener) -> None:
        """Registers a consumer that is called with every newly published MeasurementSet."""
        self._listeners.append(listener)

    def _ensure_connected(self) -> None:
        if self.plugin.is_connected:
            return
        logger.info(f"Connecting to {self.plugin.pretty_name} '{self.plugin.instance_name}'...")
        if not self.plugin.connect():
            raise TransportFailureError(self.plugin.last_error_message or "connect() returned False")

    def _notify(self, measurement_set: MeasurementSet) -> None:
        for listener in list(self._listeners):
            try:
                listener(measurement_set)
            except Exception as e:
                logger.error(f"Measurement listener {listener!r} failed: {e}", exc_info=True)

    def poll_once(self) -> bool:
        """
        Runs a single acquisition cycle.

        Returns:
            True if a new snapshot was published, False if the cycle was skipped.
        """
        try:
            self._ensure_connected()
            raw = self.plugin.read_register_block()
            values = decode_register_block(raw, self.plugin.register_map)
        except TransportFailureError as e:
            self._record_failure(f"Error while polling: {e}")
            return False
        except MalformedDataError as e:
            self._record_failure(f"Error during poll, discarding malformed data: {e}")
            return False

        measurement_set = MeasurementSet(values, timestamp=self._wall_clock())
        self.snapshot_store.publish(measurement_set)
        if self.consecutive_failures:
            logger.info(f"Poll recovered after {self.consecutive_failures} failed cycle(s).")
        self.consecutive_failures = 0
        self.last_error = None
        self._notify(measurement_set)
        return True

    def _record_failure(self, message: str) -> None:
        self.consecutive_failures += 1
        self.last_error = message
        logger.warning(f"{message} (consecutive failures: {self.consecutive_failures})")

    def run(self) -> None:
        """Thread body: polls until the stop event is set."""
        logger.info(f"Polling loop started (interval {self.poll_interval}s).")
        while not self.stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Unhandled exception in poll loop: {e}", exc_info=True)

            delay = seconds_until_next_tick(self.poll_interval, self._wall_clock())
            self.stop_event.wait(timeout=delay)

        logger.info("Stop event received, disconnecting meter...")
        try:
            self.plugin.disconnect()
        except Exception as e:
            logger.error(f"Error during disconnect: {e}")
        logger.info("Polling loop stopped.")

    def start(self) -> None:
        self._thread = threading.Thread(target=self.run, name=METER_POLL_THREAD_NAME, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self.stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Thread {self._thread.name} did not stop gracefully")
