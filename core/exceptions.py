# core/exceptions.py
"""
Error taxonomy for the meter bridge.

Poll-cycle and responder errors are caught and logged where they happen; only
configuration errors found at startup terminate the process.
"""


class MeterBridgeError(Exception):
    """Base exception for the meter bridge."""
    pass


class TransportFailureError(MeterBridgeError):
    """The register source could not be reached or timed out."""
    pass


class MalformedDataError(MeterBridgeError):
    """A register block could not satisfy the register map."""
    pass


class InvalidControlValueError(MeterBridgeError):
    """An override command did not carry a usable power value."""
    pass


class BindFailureError(MeterBridgeError):
    """The query responder could not acquire its UDP port."""

    def __init__(self, message: str, port: int):
        super().__init__(message)
        self.port = port


class SendFailureError(MeterBridgeError):
    """A response datagram could not be transmitted."""
    pass


class ConfigurationError(MeterBridgeError):
    """Mandatory configuration is missing or invalid."""
    pass
