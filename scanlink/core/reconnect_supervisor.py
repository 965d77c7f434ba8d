# scanlink/core/reconnect_supervisor.py

import logging
from PySide6.QtCore import QObject, Signal, Slot, QTimer

from scanlink.core.clock import MonotonicClock


class ReconnectSupervisor(QObject):
    """Re-scans for the peer after a disconnect until the link is Ready again.

    The loop is a small state machine: one next-wake time and the time of
    the last scan start. A QTimer drives tick() in production; tests call
    tick() directly with a fake clock. The supervisor never touches the
    connection handle, it only asks the transport to scan.
    """

    reconnect_started = Signal()
    reconnect_stopped = Signal()

    def __init__(self, transport, config: dict, clock=None):
        super().__init__()
        reconnect_config = config.get("reconnect", {})
        self.interval_s = reconnect_config.get("interval_s", 5.0)
        self.debounce_s = reconnect_config.get("debounce_s", 3.0)
        self.scan_timeout_s = config.get("ble", {}).get("scan_timeout_s", 4.0)

        self.transport = transport
        self.clock = clock or MonotonicClock()
        self.logger = logging.getLogger("SCANLINK.ReconnectSupervisor")

        self.active = False
        self.next_wake = None
        self.last_scan_at = None
        self.scan_count = 0

        self.timer = QTimer(self)
        self.timer.setInterval(reconnect_config.get("tick_ms", 250))
        self.timer.timeout.connect(self.tick)

    @Slot(str, str)
    def notify_disconnected(self, device_id="", reason=""):
        """Begin retrying. Repeated disconnect events while active are absorbed."""
        if self.active:
            self.logger.debug("Reconnect already active")
            return

        self.logger.info(f"Auto reconnect started ({reason or 'not connected'})")
        self.active = True
        self.next_wake = self.clock.now()
        self.timer.start()
        self.reconnect_started.emit()
        self.tick()

    def start(self):
        self.notify_disconnected("", "startup")

    @Slot(object)
    def on_connection_state(self, connection_state):
        if connection_state.is_connected:
            self.notify_connected()

    @Slot()
    def notify_connected(self):
        if self.active:
            self.logger.info("Link ready, auto reconnect stopped")
        self.stop()

    def stop(self):
        was_active = self.active
        self.active = False
        self.next_wake = None
        self.timer.stop()
        if was_active:
            self.reconnect_stopped.emit()

    @Slot()
    def tick(self):
        """Advance the loop: at most one scan start per call."""
        if not self.active:
            return

        if self.transport.is_connected():
            self.notify_connected()
            return

        now = self.clock.now()
        if now < self.next_wake:
            return

        if self.last_scan_at is not None and now - self.last_scan_at < self.debounce_s:
            self.next_wake = self.last_scan_at + self.debounce_s
            return

        self.logger.info("Not connected, starting scan")
        self.transport.start_scan(self.scan_timeout_s)
        self.last_scan_at = now
        self.scan_count += 1
        self.next_wake = now + self.interval_s
