# services/shelly_emu_service.py
import logging
import socket
import threading
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple, Union

from core.app_state import AppState
from core.constants import (
    SHELLY_EMU_THREAD_NAME, SHELLY_EMU_QUERY_MARKER, SHELLY_EMU_VARIANT_LEGACY,
    SHELLY_EMU_VARIANT_THREE_PHASE, SHELLY_EMU_MAX_DATAGRAM,
)
from core.exceptions import BindFailureError, SendFailureError
from core.measurements import ActivePowerTriple
from core.override_arbiter import PowerOverrideArbiter
from core.snapshot_store import SnapshotStore
from utils.helpers import format_number

logger = logging.getLogger(__name__)


def format_whole_watts(value: float) -> str:
    """Rounds to whole watts, halves away from zero (1530.5 -> "1531", -2.5 -> "-3")."""
    return str(Decimal(repr(float(value))).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def is_status_query(datagram: Union[bytes, str]) -> bool:
    """Any datagram containing the EM.GetStatus marker counts as a status query."""
    if isinstance(datagram, bytes):
        datagram = datagram.decode("utf-8", errors="replace")
    return SHELLY_EMU_QUERY_MARKER in datagram


def build_response(power: ActivePowerTriple, variant: str = SHELLY_EMU_VARIANT_LEGACY) -> str:
    """
    Formats the reply understood by the battery firmware.

    This is not the real Shelly JSON reply; it is the minimal form the
    firmware's parser accepts.

    - legacy: single-phase storage that cannot parse floats. The total is
      reported on phase A in whole watts, B and C are zero.
    - three_phase: all four values as raw numbers.
    """
    if variant == SHELLY_EMU_VARIANT_THREE_PHASE:
        a, b, c, total = (format_number(v) for v in power)
    elif variant == SHELLY_EMU_VARIANT_LEGACY:
        total = format_whole_watts(power.total)
        a, b, c = total, "0", "0"
    else:
        raise ValueError(f"Unknown Shelly emulation variant '{variant}'")
    return f"a_act_power=={a},b_act_power=={b},c_act_power=={c},total_act_power=={total}"


class ShellyEmuService:
    """
    UDP responder emulating the Shelly Pro 3EM `EM.GetStatus` query.

    The service runs in a dedicated thread. For every datagram containing the
    query marker it resolves the current power (override if active, else the
    latest snapshot, else zero) and sends one reply back to the sender. The
    appliance re-queries on its own cadence, so send errors are logged and
    never retried.
    """
    def __init__(self, app_state: AppState, arbiter: PowerOverrideArbiter, snapshot_store: SnapshotStore):
        self.app_state = app_state
        self.arbiter = arbiter
        self.snapshot_store = snapshot_store
        self.variant = app_state.shelly_emu_variant
        self.sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self.stop_event = threading.Event()

    @property
    def bound_address(self) -> Optional[Tuple[str, int]]:
        return self.sock.getsockname() if self.sock else None

    def bind(self) -> None:
        """
        Opens and binds the UDP socket.

        Raises:
            BindFailureError: If the port cannot be acquired.
        """
        address = (self.app_state.shelly_emu_bind_address, self.app_state.shelly_emu_port)
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind(address)
        except OSError as e:
            sock.close()
            raise BindFailureError(f"Failed to bind Shelly emulator to {address[0]}:{address[1]}: {e}", address[1]) from e
        sock.settimeout(1.0)
        self.sock = sock

    def start(self) -> bool:
        """
        Binds the socket and starts the responder thread.

        A bind failure disables this service only; the rest of the bridge keeps running.

        Returns:
            True if the responder is running.
        """
        if not self.app_state.enable_shelly_emu:
            logger.warning("Shelly Emulator: Disabled by configuration. Appliance queries will not be answered.")
            return False
        try:
            self.bind()
        except BindFailureError as e:
            logger.critical(f"Shelly Emulator: BIND FAILURE on UDP port {e.port}. Responder disabled. {e}")
            return False

        host, port = self.bound_address
        logger.info(f"Shelly Emulator: Listening on UDP {host}:{port} (variant: {self.variant}).")
        self._thread = threading.Thread(target=self._run, name=SHELLY_EMU_THREAD_NAME, daemon=True)
        self._thread.start()
        return True

    def stop(self):
        self.stop_event.set()
        if self._thread and self._thread.is_alive():
            logger.info("Shelly Emulator: Stopping...")
            self._thread.join(timeout=5)
        if self.sock:
            self.sock.close()
            self.sock = None
        logger.info("Shelly Emulator: Stopped.")

    def _run(self):
        while not self.stop_event.is_set():
            try:
                data, addr = self.sock.recvfrom(SHELLY_EMU_MAX_DATAGRAM)
            except socket.timeout:
                continue
            except OSError as e:
                if self.stop_event.is_set():
                    break
                logger.error(f"Shelly Emulator: Receive error: {e}")
                self.stop_event.wait(1.0)
                continue

            try:
                self.handle_datagram(data, addr)
            except SendFailureError as e:
                logger.warning(f"Shelly Emulator TX Error: {e}")
            except Exception as e:
                logger.error(f"Shelly Emulator: Unhandled exception while handling datagram from {addr}: {e}", exc_info=True)

    def current_power(self) -> ActivePowerTriple:
        return self.arbiter.resolve(self.snapshot_store.latest_active_power())

    def handle_datagram(self, data: bytes, addr: Tuple[str, int]) -> Optional[str]:
        """
        Answers `data` if it is a status query.

        Returns:
            The reply payload that was sent, or None for ignored datagrams.

        Raises:
            SendFailureError: If the reply could not be transmitted.
        """
        if not is_status_query(data):
            logger.debug(f"Shelly Emulator: Ignoring datagram from {addr[0]}:{addr[1]}.")
            return None

        payload = build_response(self.current_power(), self.variant)
        logger.debug(f"Shelly Emulator: Request from {addr[0]}:{addr[1]}, replying with {payload}")
        try:
            self.sock.sendto(payload.encode("ascii"), addr)
        except OSError as e:
            raise SendFailureError(f"Could not send reply to {addr[0]}:{addr[1]}: {e}") from e
        return payload
