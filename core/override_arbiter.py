# core/override_arbiter.py
import json
import logging
import math
import threading
import time
from typing import Any, Callable, NamedTuple, Optional, Union

from core.constants import DEFAULT_OVERRIDE_TTL_SECONDS
from core.exceptions import InvalidControlValueError
from core.measurements import ActivePowerTriple

logger = logging.getLogger(__name__)


class _ActiveOverride(NamedTuple):
    value: ActivePowerTriple
    deadline: float
    generation: int


def _finite_float(raw: Any, what: str) -> float:
    if isinstance(raw, bool):
        raise InvalidControlValueError(f"{what} must be numeric, got {raw!r}")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InvalidControlValueError(f"{what} must be numeric, got {raw!r}") from None
    if not math.isfinite(value):
        raise InvalidControlValueError(f"{what} must be finite, got {raw!r}")
    return value


def parse_override_command(payload: Union[bytes, str]) -> ActivePowerTriple:
    """
    Converts a control command payload into an ActivePowerTriple.

    Accepted forms:
    - a plain number (``"500"``, ``"-120.5"``): reported entirely on L1.
    - a JSON object with ``l1``, ``l2``, ``l3`` and optionally ``total``
      (defaults to the sum of the phases).

    Raises:
        InvalidControlValueError: For anything else, including NaN and infinities.
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidControlValueError(f"Payload is not valid UTF-8: {payload!r}") from None

    text = payload.strip()
    if not text:
        raise InvalidControlValueError("Empty override payload")

    if text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidControlValueError(f"Invalid JSON override payload: {e}") from None
        missing = [phase for phase in ("l1", "l2", "l3") if phase not in data]
        if missing:
            raise InvalidControlValueError(f"Per-phase override is missing {', '.join(missing)}")
        l1 = _finite_float(data["l1"], "l1")
        l2 = _finite_float(data["l2"], "l2")
        l3 = _finite_float(data["l3"], "l3")
        total = _finite_float(data["total"], "total") if "total" in data else l1 + l2 + l3
        return ActivePowerTriple(l1, l2, l3, total)

    return ActivePowerTriple.single_phase(_finite_float(text, "Override value"))


class PowerOverrideArbiter:
    """
    Holds an optional externally commanded power value with a time-to-live.

    State is either empty or an immutable (value, deadline, generation) tuple.
    `set_override` and the expiry callback are serialised by a lock; every
    override bumps the generation, so an expiry timer that fires after a newer
    override was installed finds a different generation and does nothing.
    `resolve` only reads the current tuple and never blocks.
    """
    def __init__(self,
                 ttl_seconds: float = DEFAULT_OVERRIDE_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic,
                 timer_factory: Callable[..., Any] = threading.Timer):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._state: Optional[_ActiveOverride] = None
        self._generation = 0
        self._timer = None

    def set_override(self, value: ActivePowerTriple) -> None:
        """Installs `value` and restarts the expiry timer, cancelling any previous one."""
        with self._lock:
            self._generation += 1
            generation = self._generation
            if self._timer is not None:
                self._timer.cancel()
            self._state = _ActiveOverride(value, self._clock() + self.ttl_seconds, generation)
            self._timer = self._timer_factory(self.ttl_seconds, self._clear_on_expiry, args=(generation,))
            self._timer.daemon = True
            self._timer.start()
        logger.debug(f"Received override value of {value.total}W (generation {generation}, expires in {self.ttl_seconds}s).")

    def _clear_on_expiry(self, generation: int) -> None:
        with self._lock:
            state = self._state
            if state is None or state.generation != generation:
                logger.debug(f"Ignoring stale override expiry (generation {generation}).")
                return
            self._state = None
            self._timer = None
        logger.debug("Override expired.")

    def current_override(self) -> Optional[ActivePowerTriple]:
        """Returns the active override value, or None if there is none or it has lapsed."""
        state = self._state
        if state is None or self._clock() >= state.deadline:
            return None
        return state.value

    def resolve(self, live: Optional[ActivePowerTriple]) -> ActivePowerTriple:
        """Returns the override if active, else `live`, else the zero triple."""
        override = self.current_override()
        if override is not None:
            return override
        if live is not None:
            return live
        return ActivePowerTriple.zero()

    def stop(self) -> None:
        """Cancels a pending expiry timer. The current override is left in place."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
