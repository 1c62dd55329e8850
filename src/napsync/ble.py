"""BLE transport between the wrist unit and the controller.

The wrist unit exposes a GATT service with one writable characteristic
(controller -> wrist) and one or more notify characteristics
(wrist -> controller).  Frames from :mod:`napsync.protocol` are written in
MTU-sized chunks and reassembled by the link channel, so notifications may
split or merge frames freely.
"""

from __future__ import annotations

import asyncio
import logging

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

from napsync.exceptions import NapSyncError
from napsync.link.transport import Transport

logger = logging.getLogger(__name__)

NAPSYNC_NAME_PREFIX = "NAPSYNC"

# Service suffix pattern: 0001=service, 0002=to wrist, 0003=from wrist
_SERVICE_PREFIX = "4e500"
NAPSYNC_SERVICE_UUID = "4e500001-7a1c-4b5e-9d3f-2c6a8e0b1f47"
TO_WRIST_UUID = "4e500002-7a1c-4b5e-9d3f-2c6a8e0b1f47"
FROM_WRIST_UUID = "4e500003-7a1c-4b5e-9d3f-2c6a8e0b1f47"

_CHAR_ROLES = {
    TO_WRIST_UUID: "TO_WRIST",
    FROM_WRIST_UUID: "FROM_WRIST",
}

# ATT header overhead per write
_ATT_OVERHEAD = 3


def is_napsync_uuid(uuid: str) -> bool:
    return uuid.lower().startswith(_SERVICE_PREFIX)


def char_role(uuid: str) -> str | None:
    return _CHAR_ROLES.get(uuid.lower())


def find_write_char(client: BleakClient) -> str | None:
    """Find the writable characteristic on the napsync service.

    Returns the UUID string, or None if not found.
    """
    for service in client.services:
        if is_napsync_uuid(service.uuid):
            for char in service.characteristics:
                if "write" in char.properties or "write-without-response" in char.properties:
                    return char.uuid
    return None


def find_notify_chars(client: BleakClient) -> list[tuple[str, str]]:
    """Find all notify-capable characteristics on the napsync service.

    Returns a list of (uuid, friendly_name) tuples.
    """
    result: list[tuple[str, str]] = []
    for service in client.services:
        if is_napsync_uuid(service.uuid):
            for char in service.characteristics:
                if "notify" in char.properties:
                    name = char_role(char.uuid) or char.uuid[:12] + "..."
                    result.append((char.uuid, name))
    return result


class BleakTransport(Transport):
    """:class:`Transport` over a connected :class:`BleakClient`.

    Call :meth:`open` once the client is connected to locate the
    characteristics and subscribe to notifications.
    """

    def __init__(self, client: BleakClient, response: bool = False) -> None:
        super().__init__()
        self.client = client
        self.response = response
        self.write_uuid: str | None = None
        self.notify_uuids: list[str] = []

    @property
    def chunk_size(self) -> int:
        mtu = getattr(self.client, "mtu_size", None) or 23
        return max(mtu - _ATT_OVERHEAD, 1)

    def _on_notification(self, _char: BleakGATTCharacteristic, data: bytearray) -> None:
        self._dispatch(bytes(data))

    async def open(self) -> None:
        self.write_uuid = find_write_char(self.client)
        if self.write_uuid is None:
            raise NapSyncError("no writable napsync characteristic found")

        for uuid, name in find_notify_chars(self.client):
            try:
                await self.client.start_notify(uuid, self._on_notification)
            except Exception as e:
                logger.warning("failed to subscribe %s: %s", name, e)
                continue
            self.notify_uuids.append(uuid)

        if not self.notify_uuids:
            raise NapSyncError("no notify characteristics found on napsync service")
        logger.info("subscribed to %d characteristic(s), chunk size %d",
                    len(self.notify_uuids), self.chunk_size)

    async def write(self, data: bytes) -> None:
        if self.write_uuid is None:
            raise NapSyncError("transport not opened")
        size = self.chunk_size
        for i in range(0, len(data), size):
            await self.client.write_gatt_char(self.write_uuid, data[i:i + size], response=self.response)

    async def close(self) -> None:
        for uuid in self.notify_uuids:
            try:
                await self.client.stop_notify(uuid)
            except Exception as e:
                logger.debug("stop_notify %s failed: %s", uuid, e)
        self.notify_uuids.clear()
        await super().close()


async def scan(timeout: float = 10.0) -> list[tuple[BLEDevice, AdvertisementData]]:
    """Scan for nearby napsync peers.

    Returns a list of (device, advertisement_data) tuples for devices
    whose name starts with 'NAPSYNC'.
    """
    results: list[tuple[BLEDevice, AdvertisementData]] = []

    def _callback(device: BLEDevice, adv: AdvertisementData) -> None:
        name = adv.local_name or device.name or ""
        if not name.upper().startswith(NAPSYNC_NAME_PREFIX):
            return
        if any(d.address == device.address for d, _ in results):
            return
        results.append((device, adv))
        logger.info("found %s [%s] RSSI=%s dBm", name, device.address, adv.rssi)

    scanner = BleakScanner(detection_callback=_callback)
    logger.debug("scanning for napsync peers (%.1fs)", timeout)
    await scanner.start()
    await asyncio.sleep(timeout)
    await scanner.stop()
    return results


async def find_peer(timeout: float = 10.0) -> BLEDevice | None:
    """Find the first napsync peer and return it."""
    results = await scan(timeout)
    if results:
        return results[0][0]
    return None
