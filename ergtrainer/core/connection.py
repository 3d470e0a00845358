"""Binding of the control device and the heart rate monitor."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Awaitable, Callable, Optional

from ergtrainer.ble.adapter import Advertisement, RadioAdapter
from ergtrainer.ble.constants import (
    FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID,
    FITNESS_MACHINE_STATUS_CHAR_UUID,
    FTMS_SERVICE_UUID,
    HEART_RATE_MEASUREMENT_CHAR_UUID,
    HEART_RATE_SERVICE_UUID,
    INDOOR_BIKE_DATA_CHAR_UUID,
    parse_indoor_bike_flags,
)
from ergtrainer.ble.protocol import ControlProtocol
from ergtrainer.ble.telemetry import parse_heart_rate_measurement, parse_indoor_bike_data
from ergtrainer.core.config import EngineConfig
from ergtrainer.core.events import TELEMETRY_EVENT, EventBus
from ergtrainer.core.registry import DeviceKind, DeviceRegistry, DiscoveredPeripheral
from ergtrainer.core.state import BoundDevice, BoundHeartRateDevice
from ergtrainer.errors import NotReady, ProtocolMismatch, ScanTimeout

logger = logging.getLogger(__name__)

StatusReporter = Callable[..., None]

_KIND_ALIASES: dict[str, DeviceKind] = {
    "control": DeviceKind.CONTROL_DEVICE,
    "control-device": DeviceKind.CONTROL_DEVICE,
    "trainer": DeviceKind.CONTROL_DEVICE,
    "heart-rate": DeviceKind.HEART_RATE,
    "hr": DeviceKind.HEART_RATE,
}


def parse_kind(kind: DeviceKind | str) -> DeviceKind:
    if isinstance(kind, DeviceKind):
        return kind
    try:
        return _KIND_ALIASES[kind.lower()]
    except KeyError:
        raise ValueError(f"Unsupported device kind {kind!r}") from None


class ConnectionManager:
    """Owns the bound control device and the bound heart rate monitor.

    Each slot holds at most one device. Disconnect callbacks tear a slot down
    synchronously so no later operation can observe half-cleared state.
    """

    def __init__(
        self,
        adapter: RadioAdapter,
        registry: DeviceRegistry,
        bus: EventBus,
        protocol: ControlProtocol,
        report_status: StatusReporter,
        *,
        config: EngineConfig | None = None,
    ) -> None:
        self._adapter = adapter
        self._registry = registry
        self._bus = bus
        self._protocol = protocol
        self._report_status = report_status
        self._config = config or EngineConfig()
        self._control: Optional[BoundDevice] = None
        self._heart_rate: Optional[BoundHeartRateDevice] = None
        self._connect_lock = asyncio.Lock()
        self.on_control_lost: Optional[Callable[[], None]] = None

    @property
    def control(self) -> Optional[BoundDevice]:
        return self._control

    @property
    def heart_rate(self) -> Optional[BoundHeartRateDevice]:
        return self._heart_rate

    def require_control(self) -> BoundDevice:
        if self._control is None:
            raise NotReady("No trainer connected")
        return self._control

    def resolve_kind(
        self, selector: Optional[str], kind: DeviceKind | str | None
    ) -> DeviceKind:
        if kind is not None:
            return parse_kind(kind)
        if selector:
            if self._heart_rate is not None and selector == self._heart_rate.peripheral_id:
                return DeviceKind.HEART_RATE
            if self._registry.kind_of(selector) is DeviceKind.HEART_RATE:
                return DeviceKind.HEART_RATE
        return DeviceKind.CONTROL_DEVICE

    async def connect(
        self,
        selector: Optional[str] = None,
        kind: DeviceKind | str | None = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Bind a device by id or name filter and return its label.

        A selector naming an already-discovered peripheral binds directly;
        anything else runs a bounded scan and binds the first match. Connects
        are serialized since they share the radio's single scan.
        """
        async with self._connect_lock:
            return await self._connect_locked(selector, kind, timeout)

    async def _connect_locked(
        self,
        selector: Optional[str],
        kind: DeviceKind | str | None,
        timeout: Optional[float],
    ) -> str:
        resolved = self.resolve_kind(selector, kind)
        scan_timeout = self._config.scan_timeout if timeout is None else timeout

        if resolved is DeviceKind.HEART_RATE:
            if self._heart_rate is not None:
                return self._heart_rate.label
            peripheral = await self._find_peripheral(
                HEART_RATE_SERVICE_UUID, selector, scan_timeout, "heart rate monitor"
            )
            return await self.bind_heart_rate_device(peripheral)

        if self._control is not None:
            self._report_status(message="Trainer already connected")
            return self._control.label
        peripheral = await self._find_peripheral(
            FTMS_SERVICE_UUID, selector, scan_timeout, "FTMS trainer"
        )
        return await self.bind_control_device(peripheral)

    async def disconnect(
        self,
        selector: Optional[str] = None,
        kind: DeviceKind | str | None = None,
        before_disconnect: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        """Best-effort disconnect; the slot is always cleared afterwards."""
        if self.resolve_kind(selector, kind) is DeviceKind.HEART_RATE:
            heart_rate = self._heart_rate
            if heart_rate is None:
                return
            try:
                await self._adapter.disconnect(heart_rate.peripheral_id)
            except Exception as exc:
                logger.debug("[HR] disconnect failed: %s", exc)
            self._handle_heart_rate_disconnect(heart_rate.peripheral_id)
            return

        device = self._control
        if device is None:
            return
        if before_disconnect is not None:
            try:
                await before_disconnect()
            except Exception as exc:
                logger.debug("[FTMS] pre-disconnect step failed: %s", exc)
        try:
            await self._adapter.disconnect(device.peripheral_id)
        except Exception as exc:
            logger.debug("[FTMS] disconnect failed: %s", exc)
        self._handle_control_disconnect(device.peripheral_id)

    async def bind_control_device(self, peripheral: DiscoveredPeripheral) -> str:
        if self._control is not None:
            return self._control.label

        device = BoundDevice(peripheral_id=peripheral.id, label=peripheral.label)
        self._control = device
        self._registry.mark_connected(peripheral.id)
        try:
            await self._adapter.connect(
                peripheral.id,
                self._handle_control_disconnect,
                timeout=self._config.connect_timeout,
            )
            characteristics = await self._adapter.discover_characteristics(
                peripheral.id, FTMS_SERVICE_UUID
            )
            if (
                FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID not in characteristics
                or INDOOR_BIKE_DATA_CHAR_UUID not in characteristics
            ):
                raise ProtocolMismatch("Trainer does not expose required FTMS characteristics")

            device.control_point_uuid = FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID
            device.data_uuid = INDOOR_BIKE_DATA_CHAR_UUID
            if FITNESS_MACHINE_STATUS_CHAR_UUID in characteristics:
                device.status_uuid = FITNESS_MACHINE_STATUS_CHAR_UUID

            await self._adapter.subscribe(
                peripheral.id,
                device.data_uuid,
                lambda data: self._on_indoor_bike_data(device, data),
            )
            await self._adapter.subscribe(
                peripheral.id,
                device.control_point_uuid,
                lambda data: self._on_control_point(device, data),
            )
            if device.status_uuid is not None:
                await self._adapter.subscribe(
                    peripheral.id,
                    device.status_uuid,
                    lambda data: self._on_machine_status(device, data),
                )
            await self._protocol.request_control(device)
            if not device.active:
                raise NotReady(f"Trainer link lost while binding {peripheral.label}")
        except Exception:
            if self._control is device:
                self._release_control(device)
                try:
                    await self._adapter.disconnect(peripheral.id)
                except Exception as exc:
                    logger.debug("[FTMS] cleanup disconnect failed: %s", exc)
                self._registry.emit()
            raise

        logger.info("[FTMS] connected to %s", device.label)
        self._report_status(message=f"Trainer connected ({device.label})")
        self._registry.emit()
        return device.label

    async def bind_heart_rate_device(self, peripheral: DiscoveredPeripheral) -> str:
        if self._heart_rate is not None:
            return self._heart_rate.label

        device = BoundHeartRateDevice(peripheral_id=peripheral.id, label=peripheral.label)
        self._heart_rate = device
        self._registry.mark_connected(peripheral.id)
        try:
            await self._adapter.connect(
                peripheral.id,
                self._handle_heart_rate_disconnect,
                timeout=self._config.connect_timeout,
            )
            characteristics = await self._adapter.discover_characteristics(
                peripheral.id, HEART_RATE_SERVICE_UUID
            )
            if HEART_RATE_MEASUREMENT_CHAR_UUID not in characteristics:
                raise ProtocolMismatch(
                    "Heart rate monitor does not expose required characteristics"
                )
            device.measurement_uuid = HEART_RATE_MEASUREMENT_CHAR_UUID
            await self._adapter.subscribe(
                peripheral.id,
                device.measurement_uuid,
                lambda data: self._on_heart_rate(device, data),
            )
            if not device.active:
                raise NotReady(f"Heart rate link lost while binding {peripheral.label}")
        except Exception:
            if self._heart_rate is device:
                self._release_heart_rate(device)
                try:
                    await self._adapter.disconnect(peripheral.id)
                except Exception as exc:
                    logger.debug("[HR] cleanup disconnect failed: %s", exc)
                self._registry.emit()
            raise

        logger.info("[HR] connected to %s", device.label)
        self._registry.emit()
        self._report_status(message=f"Heart rate monitor connected ({device.label})")
        return device.label

    async def _find_peripheral(
        self,
        service_uuid: str,
        selector: Optional[str],
        timeout: float,
        description: str,
    ) -> DiscoveredPeripheral:
        if selector:
            known = self._registry.get(selector)
            if known is not None:
                await self._registry.end_scan()
                return known

        await self._adapter.wait_until_ready()
        return await self._scan_for(service_uuid, selector, timeout, description)

    async def _scan_for(
        self,
        service_uuid: str,
        selector: Optional[str],
        timeout: float,
        description: str,
    ) -> DiscoveredPeripheral:
        await self._registry.end_scan()
        found: asyncio.Future[DiscoveredPeripheral] = asyncio.get_running_loop().create_future()
        needle = selector.lower() if selector else None

        def on_advertisement(advertisement: Advertisement) -> None:
            entry = self._registry.on_advertisement(advertisement)
            if found.done() or service_uuid not in entry.service_uuids:
                return
            if needle is not None and entry.id != selector and needle not in (entry.name or "").lower():
                return
            found.set_result(entry)

        await self._adapter.start_scan(on_advertisement, [service_uuid])
        self._report_status(scanning=True, message=f"Scanning for {description}")
        try:
            return await asyncio.wait_for(found, timeout=timeout)
        except asyncio.TimeoutError:
            raise ScanTimeout(f"Timed out searching for {description}") from None
        finally:
            try:
                await self._adapter.stop_scan()
            except Exception as exc:
                logger.debug("[BLE] stop scan failed: %s", exc)
            self._report_status(scanning=False)

    def _release_control(self, device: BoundDevice) -> None:
        device.active = False
        device.controlling = False
        device.control_point_uuid = None
        device.data_uuid = None
        device.status_uuid = None
        if self._control is device:
            self._control = None
        self._registry.mark_disconnected(device.peripheral_id)

    def _release_heart_rate(self, device: BoundHeartRateDevice) -> None:
        device.active = False
        device.measurement_uuid = None
        if self._heart_rate is device:
            self._heart_rate = None
        self._registry.mark_disconnected(device.peripheral_id)

    def _handle_control_disconnect(self, peripheral_id: str) -> None:
        device = self._control
        if device is None or device.peripheral_id != peripheral_id:
            return
        logger.warning("[FTMS] trainer disconnected (%s)", device.label)
        self._release_control(device)
        if self.on_control_lost is not None:
            self.on_control_lost()
        self._registry.emit()
        self._report_status(message=f"Trainer disconnected ({device.label})")

    def _handle_heart_rate_disconnect(self, peripheral_id: str) -> None:
        device = self._heart_rate
        if device is None or device.peripheral_id != peripheral_id:
            return
        logger.warning("[HR] heart rate monitor disconnected (%s)", device.label)
        self._release_heart_rate(device)
        self._registry.emit()
        self._report_status(message=f"Heart rate monitor disconnected ({device.label})")

    def _on_indoor_bike_data(self, device: BoundDevice, data: bytes) -> None:
        if not device.active:
            return
        payload = bytes(data)
        sample = parse_indoor_bike_data(payload)
        if sample is None or sample.is_empty:
            return
        if logger.isEnabledFor(logging.DEBUG):
            raw_flags = int.from_bytes(payload[:2], "little")
            flags_repr = ",".join(
                name for name, enabled in asdict(parse_indoor_bike_flags(raw_flags)).items() if enabled
            ) or "-"
            logger.debug(
                "[FTMS] flags=0x%04X [%s] payload=%s parsed=%s",
                raw_flags,
                flags_repr,
                payload.hex(" "),
                sample.to_dict(),
            )
        self._bus.emit(TELEMETRY_EVENT, sample)

    def _on_heart_rate(self, device: BoundHeartRateDevice, data: bytes) -> None:
        if not device.active:
            return
        payload = bytes(data)
        sample = parse_heart_rate_measurement(payload)
        logger.debug("[HR] payload=%s parsed=%s", payload.hex(" "), sample)
        if sample is not None:
            self._bus.emit(TELEMETRY_EVENT, sample)

    def _on_control_point(self, device: BoundDevice, data: bytes) -> None:
        if not device.active:
            return
        message = self._protocol.handle_control_point(device, bytes(data))
        if message:
            self._report_status(message=message)

    def _on_machine_status(self, device: BoundDevice, data: bytes) -> None:
        if not device.active:
            return
        message = self._protocol.handle_machine_status(device, bytes(data))
        if message:
            self._report_status(message=message)
