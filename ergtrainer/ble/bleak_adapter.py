"""Radio adapter backed by bleak."""

from __future__ import annotations

import logging
from typing import Any, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from ergtrainer.ble.adapter import (
    AdapterState,
    Advertisement,
    AdvertisementCallback,
    DisconnectCallback,
    NotificationCallback,
)
from ergtrainer.ble.constants import normalize_uuid
from ergtrainer.errors import AdapterUnavailable, NotReady

logger = logging.getLogger(__name__)


class BleakRadioAdapter:
    """Thin bleak wrapper exposing scan/connect/discover/subscribe/write."""

    def __init__(self, pair: bool = True) -> None:
        self._pair = pair
        self._state = AdapterState.POWERED_ON
        self._scanner: Optional[BleakScanner] = None
        self._scan_cache: dict[str, BLEDevice] = {}
        self._clients: dict[str, BleakClient] = {}

    @property
    def state(self) -> AdapterState:
        return self._state

    async def wait_until_ready(self) -> None:
        # bleak has no portable power-state query; a powered-off radio shows
        # up as a BleakError when the scan starts.
        if self._state.is_fatal:
            raise AdapterUnavailable(self._state.value)

    async def start_scan(
        self,
        on_advertisement: AdvertisementCallback,
        service_uuids: Optional[list[str]] = None,
    ) -> None:
        await self.stop_scan()

        def detection_callback(device: BLEDevice, adv_data: AdvertisementData) -> None:
            self._scan_cache[device.address] = device
            on_advertisement(
                Advertisement(
                    peripheral_id=device.address,
                    name=adv_data.local_name or device.name,
                    service_uuids=tuple(normalize_uuid(u) for u in adv_data.service_uuids or []),
                    rssi=adv_data.rssi,
                    manufacturer_data=dict(adv_data.manufacturer_data or {}),
                )
            )

        scanner = BleakScanner(
            detection_callback=detection_callback,
            service_uuids=service_uuids or None,
        )
        try:
            await scanner.start()
        except BleakError as exc:
            self._state = AdapterState.POWERED_OFF
            raise AdapterUnavailable(f"{self._state.value} ({exc})") from exc
        self._state = AdapterState.POWERED_ON
        self._scanner = scanner

    async def stop_scan(self) -> None:
        scanner = self._scanner
        self._scanner = None
        if scanner is not None:
            await scanner.stop()

    async def connect(
        self,
        peripheral_id: str,
        on_disconnect: DisconnectCallback,
        timeout: float,
    ) -> None:
        device: Any = self._scan_cache.get(peripheral_id)
        if device is None:
            device = await BleakScanner.find_device_by_address(peripheral_id, timeout=timeout)
        # Some trainers are powered on but not advertising continuously.
        # BleakClient accepts a direct address string with BlueZ on Linux.
        if device is None:
            device = peripheral_id

        def disconnected_callback(_client: BleakClient) -> None:
            self._clients.pop(peripheral_id, None)
            on_disconnect(peripheral_id)

        client = self._build_client(device, disconnected_callback, timeout, pair=self._pair)
        try:
            await client.connect()
        except Exception:
            # Some platforms/backends/devices don't support pairing from API.
            # Retry once without the pairing request.
            if not self._pair:
                raise
            try:
                await client.disconnect()
            except Exception as exc:
                logger.debug("[BLE] disconnect after failed paired connect: %s", exc)
            client = self._build_client(device, disconnected_callback, timeout, pair=False)
            await client.connect()
        self._clients[peripheral_id] = client

    def _build_client(
        self, device: Any, disconnected_callback: Any, timeout: float, *, pair: bool
    ) -> BleakClient:
        if pair:
            try:
                return BleakClient(
                    device,
                    disconnected_callback=disconnected_callback,
                    timeout=timeout,
                    pair=True,
                )
            except TypeError:
                logger.debug("[BLE] pair=True unsupported by current backend, using plain connect")
        return BleakClient(device, disconnected_callback=disconnected_callback, timeout=timeout)

    async def disconnect(self, peripheral_id: str) -> None:
        client = self._clients.pop(peripheral_id, None)
        if client is not None:
            await client.disconnect()

    async def discover_characteristics(
        self, peripheral_id: str, service_uuid: str
    ) -> set[str]:
        service = self._client(peripheral_id).services.get_service(service_uuid)
        if service is None:
            return set()
        return {normalize_uuid(char.uuid) for char in service.characteristics}

    async def subscribe(
        self, peripheral_id: str, char_uuid: str, callback: NotificationCallback
    ) -> None:
        def handler(_sender: Any, data: bytearray) -> None:
            callback(bytes(data))

        await self._client(peripheral_id).start_notify(char_uuid, handler)

    async def write(self, peripheral_id: str, char_uuid: str, data: bytes) -> None:
        await self._client(peripheral_id).write_gatt_char(char_uuid, data, response=True)

    async def close(self) -> None:
        await self.stop_scan()
        for peripheral_id in list(self._clients):
            try:
                await self.disconnect(peripheral_id)
            except Exception as exc:
                logger.debug("[BLE] close disconnect failed: %s", exc)

    def _client(self, peripheral_id: str) -> BleakClient:
        client = self._clients.get(peripheral_id)
        if client is None or not client.is_connected:
            raise NotReady(f"Peripheral {peripheral_id} is not connected")
        return client
