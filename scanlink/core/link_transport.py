# scanlink/core/link_transport.py

import asyncio
import concurrent.futures
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from PySide6.QtCore import QObject, Signal

from scanlink.core.ble_backend import BleakBackend, ENABLE_INDICATION_VALUE, ENABLE_NOTIFICATION_VALUE
from scanlink.core.errors import (
    AlreadyConnectedError,
    CapabilityUnsupportedError,
    NotConnectedError,
    ScanLinkError,
    ScanTimeoutError,
    TransportWriteError,
)

DEFAULT_TARGET_NAME = "AgriBeacon BLE"
DEFAULT_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
DEFAULT_TX_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"
DEFAULT_RX_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"
MANUAL_DISCONNECT_REASON = "Manual disconnect"
LINK_LOST_REASON = "Link lost"


class LinkState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    DISCOVERING = "discovering"
    READY = "ready"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class ConnectionState:
    device_id: Optional[str]
    is_connected: bool
    mtu: Optional[int] = None
    error: Optional[str] = None


def _completed(result=None, exc=None):
    future = concurrent.futures.Future()
    if exc is not None:
        future.set_exception(exc)
    else:
        future.set_result(result)
    return future


class LinkTransport(QObject):
    """Owns the single BLE connection.

    Radio work runs as coroutines on a private asyncio loop in a daemon
    thread. Every public operation returns a concurrent.futures.Future;
    connect, scan, write, read and notification setup share one asyncio
    lock so they never interleave on the radio. Signals are emitted from
    the loop thread.
    """

    connection_state_changed = Signal(object)   # ConnectionState
    link_state_changed = Signal(str)            # LinkState value
    scan_started = Signal()
    scan_stopped = Signal()
    device_discovered = Signal(str, str)        # device_id, name
    data_received = Signal(str)                 # decoded notification text
    error_occurred = Signal(str, str)           # context, message
    link_lost = Signal(str, str)                # device_id, reason

    def __init__(self, config: dict, backend=None):
        super().__init__()
        ble_config = config.get("ble", {})
        self.target_name = ble_config.get("target_device_name", DEFAULT_TARGET_NAME)
        self.service_uuid = ble_config.get("service_uuid", DEFAULT_SERVICE_UUID)
        self.tx_uuid = ble_config.get("tx_characteristic_uuid", DEFAULT_TX_UUID)
        self.rx_uuid = ble_config.get("rx_characteristic_uuid", DEFAULT_RX_UUID)
        self.scan_timeout_s = ble_config.get("scan_timeout_s", 4.0)
        self.connect_timeout_s = ble_config.get("connect_timeout_s", 10.0)
        self.requested_mtu = ble_config.get("requested_mtu", 512)

        self.backend = backend if backend is not None else BleakBackend()
        self.logger = logging.getLogger("SCANLINK.LinkTransport")

        self.loop = None
        self.thread = None
        self.running = False
        self._loop_ready = threading.Event()
        self._op_lock = None        # asyncio.Lock, created on the loop thread

        self._lock = threading.RLock()
        self._state = LinkState.IDLE
        self._scanning = False
        self._scan_token = 0
        self._scan_future = None
        self._device_id = None
        self._mtu = None
        self._manual_disconnect = False

        self.services = {}
        self.connection_state = ConnectionState(None, False)

    # Lifecycle

    def start(self):
        """Start the background event loop thread."""
        if self.running:
            return
        self.loop = asyncio.new_event_loop()
        self._loop_ready.clear()
        self.running = True
        self.thread = threading.Thread(target=self._run_loop, daemon=True, name="LinkTransport")
        self.thread.start()
        self._loop_ready.wait()
        self.logger.info(f"Link transport started (target: {self.target_name})")

    def stop(self, timeout=5.0):
        if not self.running:
            return

        if self.is_connected():
            try:
                self.disconnect().result(timeout=timeout)
            except Exception as e:
                self.logger.warning(f"Disconnect during shutdown failed: {e}")
        self.stop_scan()

        self.running = False
        self.loop.call_soon_threadsafe(self.loop.stop)
        if self.thread:
            self.thread.join(timeout)
        self.logger.info("Link transport stopped")

    def _run_loop(self):
        asyncio.set_event_loop(self.loop)
        self._op_lock = asyncio.Lock()
        self._loop_ready.set()
        self.loop.run_forever()

        pending = asyncio.all_tasks(self.loop)
        for task in pending:
            task.cancel()
        if pending:
            self.loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        self.loop.close()

    def _submit(self, coro, operation):
        if not self.running:
            coro.close()
            return _completed(exc=NotConnectedError(operation))
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    # State

    @property
    def state(self):
        return self._state

    @property
    def device_id(self):
        return self._device_id

    @property
    def mtu(self):
        return self._mtu

    def is_connected(self):
        return self._state == LinkState.READY

    def is_scanning(self):
        return self._scanning

    def _set_state(self, state):
        with self._lock:
            if self._state == state:
                return
            self._state = state
        self.logger.debug(f"Link state -> {state.value}")
        self.link_state_changed.emit(state.value)

    def _publish(self, connection_state):
        self.connection_state = connection_state
        self.connection_state_changed.emit(connection_state)

    def _require_ready(self, operation):
        if self._state != LinkState.READY:
            raise NotConnectedError(operation)

    # Scanning

    def start_scan(self, timeout=None, force=False):
        """Scan for the target peer and connect to it when found.

        No-op (resolves False) while a scan is running or a link is ready,
        unless force is set, in which case any in-flight scan is cancelled
        first. Resolves True once a target was found; carries
        ScanTimeoutError if none was.
        """
        with self._lock:
            if not force and (self._scanning or self._state == LinkState.READY):
                self.logger.debug("Scan request ignored (already scanning or connected)")
                return _completed(False)
            previous = self._scan_future
            self._scan_token += 1
            token = self._scan_token
            self._scanning = True

        if previous is not None and not previous.done():
            previous.cancel()

        future = self._submit(self._scan(token, timeout or self.scan_timeout_s), "scan")
        with self._lock:
            if token == self._scan_token:
                self._scan_future = future
            if future.done() and token == self._scan_token:
                self._scanning = False
        return future

    def stop_scan(self):
        with self._lock:
            future = self._scan_future
            self._scan_future = None
            self._scan_token += 1
            self._scanning = False
        if future is not None and not future.done():
            future.cancel()

    def _on_seen(self, device_id, name):
        self.logger.debug(f"Advertisement: {name} ({device_id})")

    async def _scan(self, token, timeout):
        async with self._op_lock:
            restore = self._state
            if restore != LinkState.READY:
                self._set_state(LinkState.SCANNING)
            self.scan_started.emit()
            self.logger.info(f"Scanning for '{self.target_name}' ({timeout:.1f}s)")

            try:
                found = await self.backend.find_device(self.target_name, timeout, on_seen=self._on_seen)
            except asyncio.CancelledError:
                if self._state == LinkState.SCANNING:
                    self._set_state(restore)
                raise
            finally:
                with self._lock:
                    if token == self._scan_token:
                        self._scanning = False
                self.scan_stopped.emit()

            if found is None:
                if self._state == LinkState.SCANNING:
                    self._set_state(restore)
                self.logger.info(f"Target '{self.target_name}' not found")
                raise ScanTimeoutError(self.target_name, timeout)

            device_id, name = found
            self.logger.info(f"Target found: {name} ({device_id})")
            self.device_discovered.emit(device_id, name)

            if self._state == LinkState.READY:
                return True
            await self._do_connect(device_id)
            return True

    # Connection

    def connect(self, device_id):
        """Open the link to device_id. Rejected without side effects while Ready."""
        with self._lock:
            if self._state == LinkState.READY:
                self.logger.warning(f"Connect to {device_id} rejected: already connected to {self._device_id}")
                return _completed(exc=AlreadyConnectedError(f"Already connected to {self._device_id}"))
        return self._submit(self._connect(device_id), "connect")

    async def _connect(self, device_id):
        async with self._op_lock:
            await self._do_connect(device_id)
            return True

    async def _do_connect(self, device_id):
        if self._state == LinkState.READY:
            raise AlreadyConnectedError(f"Already connected to {self._device_id}")

        self._manual_disconnect = False
        self._set_state(LinkState.CONNECTING)
        self.logger.info(f"Connecting to {device_id} (timeout {self.connect_timeout_s}s)")

        try:
            await asyncio.wait_for(
                self.backend.connect(device_id, self._handle_backend_disconnect, self.connect_timeout_s),
                self.connect_timeout_s,
            )
            self._set_state(LinkState.DISCOVERING)
            self.services = await self.backend.discover()
        except asyncio.CancelledError:
            await self._abandon_connection()
            self._set_state(LinkState.IDLE)
            raise
        except Exception as e:
            message = str(e) or f"Connection timed out after {self.connect_timeout_s}s"
            self.logger.error(f"Connection to {device_id} failed: {message}")
            await self._abandon_connection()
            self._set_state(LinkState.DISCONNECTED)
            self._publish(ConnectionState(device_id, False, error=message))
            self.error_occurred.emit("connect", message)
            raise

        for service_uuid, characteristics in self.services.items():
            self.logger.debug(f"Service {service_uuid}: {len(characteristics)} characteristics")

        mtu = None
        try:
            mtu = await self.backend.request_mtu(self.requested_mtu)
            self.logger.info(f"MTU negotiated: requested {self.requested_mtu}, granted {mtu}")
        except Exception as e:
            self.logger.warning(f"MTU request failed, continuing with default: {e}")

        with self._lock:
            self._device_id = device_id
            self._mtu = mtu
        self._set_state(LinkState.READY)
        self._publish(ConnectionState(device_id, True, mtu))
        self.logger.info(f"Connected to {device_id}")

    async def _abandon_connection(self):
        try:
            await self.backend.disconnect()
        except Exception as e:
            self.logger.debug(f"Cleanup after failed connect: {e}")

    def _handle_backend_disconnect(self, device_id):
        """Unsolicited disconnect reported by the backend, on the loop thread."""
        with self._lock:
            if self._manual_disconnect or self._state != LinkState.READY:
                return
            self._device_id = None
            self._mtu = None
        self.services = {}

        self.logger.warning(f"Device {device_id} disconnected: {LINK_LOST_REASON}")
        self._set_state(LinkState.DISCONNECTED)
        self._publish(ConnectionState(device_id, False, error=LINK_LOST_REASON))
        self.link_lost.emit(device_id, LINK_LOST_REASON)

    def disconnect(self):
        """Manual disconnect. Does not count as link loss."""
        return self._submit(self._disconnect(), "disconnect")

    async def _disconnect(self):
        async with self._op_lock:
            if self._state != LinkState.READY:
                self.logger.info("No device connected to disconnect")
                return False

            device_id = self._device_id
            self._manual_disconnect = True
            self.logger.info(f"Manual disconnect from {device_id}")
            try:
                await self.backend.disconnect()
            except Exception as e:
                self.logger.error(f"Disconnect error: {e}")
                self.error_occurred.emit("disconnect", str(e))

            with self._lock:
                self._device_id = None
                self._mtu = None
            self.services = {}
            self._set_state(LinkState.IDLE)
            self._publish(ConnectionState(device_id, False, error=MANUAL_DISCONNECT_REASON))
            return True

    # Notifications

    def enable_notifications(self, characteristic_uuid=None):
        """Subscribe to a notify/indicate characteristic (RX by default)."""
        uuid = characteristic_uuid or self.rx_uuid
        return self._submit(self._enable_notifications(uuid), "enable notifications")

    async def _enable_notifications(self, uuid):
        async with self._op_lock:
            self._require_ready("enable notifications")

            properties = await self.backend.characteristic_properties(uuid)
            if not properties or not ("notify" in properties or "indicate" in properties):
                error = CapabilityUnsupportedError(uuid)
                self.logger.error(str(error))
                self.error_occurred.emit("enable_notifications", str(error))
                raise error

            value = ENABLE_INDICATION_VALUE if "indicate" in properties else ENABLE_NOTIFICATION_VALUE
            try:
                await self.backend.write_cccd(uuid, value)
                self.logger.debug(f"Configuration descriptor enabled on {uuid}")
            except Exception as e:
                # Some peers enable notifications on their own.
                self.logger.warning(f"Could not write configuration descriptor on {uuid}: {e}")

            await self.backend.start_notify(uuid, self._handle_notification)
            self.logger.info(f"Notifications enabled on {uuid}")
            return True

    def _handle_notification(self, data):
        text = data.decode("utf-8", errors="replace")
        if not text.strip():
            return
        self.logger.debug(f"Data: {text.strip()[:50]}")
        self.data_received.emit(text)

    # Read / write

    def write(self, data, characteristic_uuid=None):
        """Write to the TX characteristic (with response)."""
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        uuid = characteristic_uuid or self.tx_uuid
        return self._submit(self._write(uuid, payload), "write")

    async def _write(self, uuid, payload):
        async with self._op_lock:
            self._require_ready("write")
            try:
                await self.backend.write(uuid, payload)
            except ScanLinkError:
                raise
            except Exception as e:
                self.logger.error(f"Write to {uuid} failed: {e}")
                raise TransportWriteError(str(e) or "Write rejected") from e
            self.logger.debug(f"Wrote {len(payload)} bytes to {uuid}")
            return True

    def read(self, characteristic_uuid=None):
        uuid = characteristic_uuid or self.rx_uuid
        return self._submit(self._read(uuid), "read")

    async def _read(self, uuid):
        async with self._op_lock:
            self._require_ready("read")
            return await self.backend.read(uuid)
