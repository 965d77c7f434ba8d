# scanlink/core/ble_backend.py

import logging

from bleak import BleakClient, BleakScanner

CCCD_UUID = "00002902-0000-1000-8000-00805f9b34fb"
ENABLE_NOTIFICATION_VALUE = b"\x01\x00"
ENABLE_INDICATION_VALUE = b"\x02\x00"


class BleakBackend:
    """Coroutine-level access to one BLE peripheral through bleak.

    LinkTransport drives this from its own event loop and serializes every
    call, so nothing here locks. Tests substitute an in-memory object with
    the same coroutine methods.
    """

    def __init__(self):
        self.client = None
        self._devices = {}      # address -> BLEDevice seen during the last scan
        self.logger = logging.getLogger("SCANLINK.BleakBackend")

    async def find_device(self, target_name, timeout, on_seen=None):
        """Scan until a peer advertises target_name. Returns (address, name) or None."""
        def _match(device, adv):
            name = device.name or adv.local_name
            if on_seen is not None and name:
                on_seen(device.address, name)
            return name == target_name

        device = await BleakScanner.find_device_by_filter(_match, timeout=timeout)
        if device is None:
            return None

        self._devices[device.address] = device
        return device.address, device.name or target_name

    async def connect(self, device_id, on_disconnect, timeout):
        # Prefer the BLEDevice from the scan; bleak re-scans when given a bare address.
        target = self._devices.get(device_id, device_id)

        def _disconnected(client):
            # A newer connect may already have replaced this client.
            if self.client is client:
                self.client = None
            on_disconnect(device_id)

        self.client = BleakClient(target, disconnected_callback=_disconnected, timeout=timeout)
        await self.client.connect()

    async def discover(self):
        """Service uuid -> list of (characteristic uuid, properties)."""
        services = {}
        for service in self.client.services:
            services[service.uuid] = [(c.uuid, list(c.properties)) for c in service.characteristics]
        return services

    async def request_mtu(self, requested):
        # BlueZ only reports the negotiated MTU after an explicit acquire.
        backend = getattr(self.client, "_backend", None)
        acquire = getattr(backend, "_acquire_mtu", None)
        if acquire is not None:
            await acquire()
        return min(self.client.mtu_size, requested)

    def _characteristic(self, uuid):
        if self.client is None:
            return None
        return self.client.services.get_characteristic(uuid)

    async def characteristic_properties(self, uuid):
        char = self._characteristic(uuid)
        if char is None:
            return None
        return list(char.properties)

    async def write_cccd(self, uuid, value):
        char = self._characteristic(uuid)
        descriptor = None
        if char is not None:
            descriptor = next((d for d in char.descriptors if d.uuid.lower() == CCCD_UUID), None)
        if descriptor is None:
            raise LookupError(f"No configuration descriptor on {uuid}")
        await self.client.write_gatt_descriptor(descriptor.handle, value)

    async def start_notify(self, uuid, callback):
        def _handler(_sender, data):
            callback(bytes(data))

        await self.client.start_notify(uuid, _handler)

    async def write(self, uuid, data):
        await self.client.write_gatt_char(uuid, data, response=True)

    async def read(self, uuid):
        return bytes(await self.client.read_gatt_char(uuid))

    async def disconnect(self):
        if self.client is not None:
            client, self.client = self.client, None
            await client.disconnect()
