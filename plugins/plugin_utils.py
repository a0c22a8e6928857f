# plugins/plugin_utils.py
import time
import socket
import logging
from typing import Tuple, Optional

def check_tcp_port(host: str, port: int, timeout: float = 2.0, logger_instance: Optional[logging.Logger] = None) -> Tuple[bool, float, Optional[str]]:
    """
    Checks if a TCP port is open on a given host by attempting a connection.

    Used before opening a Modbus TCP session so that firewall or addressing
    problems show up as a clear log line instead of a protocol timeout.

    Returns:
        A tuple of (port_open, latency_ms or -1.0, error message or None).
    """
    effective_logger = logger_instance if logger_instance else logging.getLogger(__name__)
    effective_logger.debug(f"TCP Check (util): Attempting to connect to {host}:{port} with timeout {timeout}s")
    start_time = time.monotonic()
    try:
        with socket.create_connection((host, port), timeout=timeout):
            latency_ms = (time.monotonic() - start_time) * 1000
            effective_logger.debug(f"TCP Check (util): {host}:{port} success. Latency: {latency_ms:.2f} ms")
            return True, latency_ms, None
    except socket.timeout:
        effective_logger.debug(f"TCP Check (util): {host}:{port} timeout.")
        return False, -1.0, "Timeout"
    except OSError as e:
        effective_logger.debug(f"TCP Check (util): {host}:{port} socket error: {e}")
        return False, -1.0, str(e)
