"""
DeviceGateway over bleak: scan for a heart-rate sensor, connect, and stream
Heart Rate Measurement notifications to the controller.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

logger = logging.getLogger(__name__)

# GATT Heart Rate service and Heart Rate Measurement characteristic (standard 16-bit UUIDs)
HR_SERVICE_UUID = "0000180d-0000-1000-8000-00805f9b34fb"
HRM_CHAR_UUID = "00002a37-0000-1000-8000-00805f9b34fb"


@dataclass
class SensorLink:
    """Handle for one connected sensor."""

    device: BLEDevice
    client: BleakClient
    on_disconnect: Callable[[], None] | None = None
    notifying: bool = False
    released: bool = field(default=False)

    @property
    def name(self) -> str:
        return self.device.name or self.device.address


class BleakGateway:
    def __init__(
        self,
        device_name: str | None = None,
        name_filter: str | None = None,
        scan_timeout: float = 10.0,
        connect_timeout: float = 30.0,
    ):
        self.device_name = device_name
        self.name_filter = name_filter
        self.scan_timeout = scan_timeout
        self.connect_timeout = connect_timeout

    def _matches(self, device: BLEDevice, adv: AdvertisementData) -> bool:
        if self.name_filter:
            name = device.name or adv.local_name or ""
            return self.name_filter.lower() in name.lower()
        return HR_SERVICE_UUID in [u.lower() for u in adv.service_uuids]

    async def _scan(self) -> BLEDevice | None:
        if self.device_name:
            logger.debug("Looking for device by name: %r", self.device_name)
            return await BleakScanner.find_device_by_name(self.device_name, timeout=self.scan_timeout)
        logger.debug("Scanning %.0fs for heart rate sensors", self.scan_timeout)
        return await BleakScanner.find_device_by_filter(self._matches, timeout=self.scan_timeout)

    async def find_sensor(self) -> SensorLink | None:
        """Scan and connect. Returns None when no matching sensor advertises."""
        device = await self._scan()
        if device is None:
            logger.info("No heart rate sensor found.")
            return None
        logger.info("Found device: %s (%s)", device.name, device.address)

        link: SensorLink

        def disconnected(_client: BleakClient) -> None:
            logger.debug("Link to %s dropped", link.name)
            if link.on_disconnect is not None and not link.released:
                link.on_disconnect()

        client = BleakClient(device, disconnected_callback=disconnected, timeout=self.connect_timeout)
        link = SensorLink(device=device, client=client)
        logger.info("Connecting to %s (timeout %.0fs)...", link.name, self.connect_timeout)
        await client.connect()
        return link

    async def subscribe(
        self,
        link: SensorLink,
        on_notification: Callable[[bytes], None],
        on_disconnect: Callable[[], None],
    ) -> None:
        if not link.client.is_connected:
            raise BleakError(f"{link.name} is not connected")

        def callback(_sender: BleakGATTCharacteristic, data: bytearray) -> None:
            on_notification(bytes(data))

        link.on_disconnect = on_disconnect
        await link.client.start_notify(HRM_CHAR_UUID, callback)
        link.notifying = True

    async def release(self, link: SensorLink) -> None:
        if link.released:
            return
        link.released = True
        if not link.client.is_connected:
            return
        if link.notifying:
            try:
                await link.client.stop_notify(HRM_CHAR_UUID)
            except BleakError as e:
                logger.debug("stop_notify on %s failed: %s", link.name, e)
        await link.client.disconnect()
        logger.info("Disconnected from %s", link.name)
