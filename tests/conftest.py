import asyncio
import concurrent.futures
import threading
import time

import pytest
from PySide6.QtCore import QCoreApplication

from scanlink.core.link_transport import DEFAULT_RX_UUID, DEFAULT_SERVICE_UUID, DEFAULT_TX_UUID, LinkTransport

TARGET_NAME = "AgriBeacon BLE"
TARGET_ADDRESS = "C0:FF:EE:00:00:01"


@pytest.fixture(scope="session", autouse=True)
def qapp():
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


def wait_for(predicate, timeout=2.0):
    """Pump the Qt event queue until predicate() is true or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        QCoreApplication.processEvents()
        if predicate():
            return True
        time.sleep(0.005)
    QCoreApplication.processEvents()
    return predicate()


class FakeClock:
    def __init__(self, start=1000.0):
        self.t = start

    def now(self):
        return self.t

    def advance(self, seconds):
        self.t += seconds


class FakeBackend:
    """In-memory stand-in for BleakBackend."""

    def __init__(self):
        self.devices = {"11:22:33:44:55:66": "Other", TARGET_ADDRESS: TARGET_NAME}
        self.properties = {
            DEFAULT_RX_UUID: ["notify"],
            DEFAULT_TX_UUID: ["write"],
        }
        self.granted_mtu = 247
        self.scan_delay = 0.0

        self.fail_connect = None
        self.fail_mtu = False
        self.fail_cccd = False
        self.fail_write = None

        self.find_calls = 0
        self.connect_calls = []
        self.cccd_writes = []
        self.writes = []
        self.notify_callbacks = {}
        self.connected = None
        self.on_disconnect = None
        self.loop = None
        self._lock = threading.Lock()

    async def find_device(self, target_name, timeout, on_seen=None):
        self.find_calls += 1
        if self.scan_delay:
            await asyncio.sleep(self.scan_delay)
        for address, name in self.devices.items():
            if on_seen is not None:
                on_seen(address, name)
            if name == target_name:
                return address, name
        return None

    async def connect(self, device_id, on_disconnect, timeout):
        self.connect_calls.append(device_id)
        if self.fail_connect is not None:
            raise self.fail_connect
        self.loop = asyncio.get_running_loop()
        self.on_disconnect = on_disconnect
        self.connected = device_id

    async def discover(self):
        return {DEFAULT_SERVICE_UUID: [(uuid, props) for uuid, props in self.properties.items()]}

    async def request_mtu(self, requested):
        if self.fail_mtu:
            raise RuntimeError("MTU exchange not supported")
        return min(self.granted_mtu, requested)

    async def characteristic_properties(self, uuid):
        return self.properties.get(uuid)

    async def write_cccd(self, uuid, value):
        if self.fail_cccd:
            raise LookupError("No configuration descriptor")
        self.cccd_writes.append((uuid, value))

    async def start_notify(self, uuid, callback):
        self.notify_callbacks[uuid] = callback

    async def write(self, uuid, data):
        if self.fail_write is not None:
            raise self.fail_write
        with self._lock:
            self.writes.append((uuid, data))

    async def read(self, uuid):
        return b"STATUS:1"

    async def disconnect(self):
        self.connected = None

    # Test controls

    def drop_link(self):
        device_id, self.connected = self.connected, None
        self.loop.call_soon_threadsafe(self.on_disconnect, device_id)

    def notify(self, uuid, data):
        self.loop.call_soon_threadsafe(self.notify_callbacks[uuid], data)


class FakeTransport:
    """Synchronous transport double for the supervisor and uploader."""

    def __init__(self, connected=True):
        self.connected = connected
        self.scan_calls = []
        self.writes = []
        self.write_error = None
        self.clock = None

    def is_connected(self):
        return self.connected

    def start_scan(self, timeout=None, force=False):
        self.scan_calls.append(self.clock.now() if self.clock else timeout)
        future = concurrent.futures.Future()
        future.set_result(False)
        return future

    def write(self, data, characteristic_uuid=None):
        self.writes.append(data)
        future = concurrent.futures.Future()
        if self.write_error is not None:
            future.set_exception(self.write_error)
        else:
            future.set_result(True)
        return future


@pytest.fixture
def config():
    return {
        "ble": {"target_device_name": TARGET_NAME, "scan_timeout_s": 1.0, "connect_timeout_s": 2.0},
        "reconnect": {"interval_s": 5, "debounce_s": 3, "tick_ms": 250},
        "telemetry": {"progress_key": "WP", "queue_size": 8},
        "upload": {"ack_delay_s": 3, "poll_interval_s": 1},
        "mission": {"field_of_view_deg": 23.0, "overlap": 0.2, "photo_buffer_m": 50,
                    "photo_altitude_m": 300, "photo_heading_deg": 0},
    }


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def transport(config, fake_backend):
    link = LinkTransport(config, fake_backend)
    link.start()
    yield link
    link.stop()


@pytest.fixture
def connected_transport(transport):
    assert transport.start_scan().result(timeout=2.0) is True
    assert transport.is_connected()
    return transport
