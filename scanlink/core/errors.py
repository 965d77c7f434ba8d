# scanlink/core/errors.py


class ScanLinkError(Exception):
    """Base class for link, protocol and planning errors."""


class NotConnectedError(ScanLinkError):
    """Operation attempted without a ready link."""

    def __init__(self, operation="operation"):
        super().__init__(f"Cannot perform {operation}: no device connected")
        self.operation = operation


class AlreadyConnectedError(ScanLinkError):
    """A second connection was requested while one is ready."""


class ScanTimeoutError(ScanLinkError):
    """No peer advertising the target name was found before the scan ended."""

    def __init__(self, target_name, timeout_s):
        super().__init__(f"Device '{target_name}' not found within {timeout_s:.1f}s")
        self.target_name = target_name
        self.timeout_s = timeout_s


class CapabilityUnsupportedError(ScanLinkError):
    """Characteristic lacks notify/indicate support. Not retried."""

    def __init__(self, characteristic_uuid):
        super().__init__(f"Characteristic {characteristic_uuid} does not support notifications")
        self.characteristic_uuid = characteristic_uuid


class TransportWriteError(ScanLinkError):
    """The radio stack rejected a write."""


class MalformedTelemetryError(ScanLinkError):
    """A telemetry line did not match KEY:value."""


class PlanningCancelled(ScanLinkError):
    """A coverage planning job was superseded or cancelled."""
