"""In-process radio adapter: a simulated home trainer and heart rate monitor.

Used by ``--debug-sim-ht`` and by the test-suite. With ``autorun=True`` a
background loop advertises the simulated devices and streams telemetry that
follows the commanded ERG target; without it every event is scripted by the
caller (``advertise``, ``notify``, ``drop_link``, ``set_state``).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import random
import struct
from dataclasses import dataclass, field
from typing import Optional

from ergtrainer.ble.adapter import (
    AdapterState,
    Advertisement,
    AdvertisementCallback,
    DisconnectCallback,
    NotificationCallback,
)
from ergtrainer.ble.constants import (
    FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID,
    FITNESS_MACHINE_STATUS_CHAR_UUID,
    FLAG_INSTANTANEOUS_CADENCE_PRESENT,
    FLAG_INSTANTANEOUS_POWER_PRESENT,
    FTMS_SERVICE_UUID,
    HEART_RATE_MEASUREMENT_CHAR_UUID,
    HEART_RATE_SERVICE_UUID,
    INDOOR_BIKE_DATA_CHAR_UUID,
    OP_RESPONSE_CODE,
    OP_SET_TARGET_POWER,
    OP_START_RESUME,
    OP_STOP_PAUSE,
    RESULT_SUCCESS,
    normalize_uuid,
)
from ergtrainer.errors import AdapterUnavailable, NotReady

logger = logging.getLogger(__name__)

SIM_TRAINER_ID = "SIM:HT:00:00:00:01"
SIM_HRM_ID = "SIM:HR:00:00:00:02"


@dataclass
class SimPeripheral:
    peripheral_id: str
    name: Optional[str]
    service_uuids: tuple[str, ...]
    characteristics: dict[str, set[str]] = field(default_factory=dict)
    rssi: int = -40
    connectable: bool = True
    manufacturer_data: dict[int, bytes] = field(default_factory=dict)

    def advertisement(self) -> Advertisement:
        return Advertisement(
            peripheral_id=self.peripheral_id,
            name=self.name,
            service_uuids=self.service_uuids,
            rssi=self.rssi,
            connectable=self.connectable,
            manufacturer_data=dict(self.manufacturer_data),
        )


def sim_trainer(
    peripheral_id: str = SIM_TRAINER_ID,
    name: Optional[str] = "Velox Sim HT",
    *,
    with_status: bool = True,
    with_data: bool = True,
    with_control_point: bool = True,
) -> SimPeripheral:
    chars: set[str] = set()
    if with_control_point:
        chars.add(FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID)
    if with_data:
        chars.add(INDOOR_BIKE_DATA_CHAR_UUID)
    if with_status:
        chars.add(FITNESS_MACHINE_STATUS_CHAR_UUID)
    return SimPeripheral(
        peripheral_id=peripheral_id,
        name=name,
        service_uuids=(FTMS_SERVICE_UUID,),
        characteristics={FTMS_SERVICE_UUID: chars},
    )


def sim_heart_rate_monitor(
    peripheral_id: str = SIM_HRM_ID,
    name: Optional[str] = "Sim HRM",
    *,
    with_measurement: bool = True,
) -> SimPeripheral:
    chars = {HEART_RATE_MEASUREMENT_CHAR_UUID} if with_measurement else set()
    return SimPeripheral(
        peripheral_id=peripheral_id,
        name=name,
        service_uuids=(HEART_RATE_SERVICE_UUID,),
        characteristics={HEART_RATE_SERVICE_UUID: chars},
        rssi=-55,
    )


class SimulatedRadioAdapter:
    def __init__(
        self,
        peripherals: Optional[list[SimPeripheral]] = None,
        *,
        autorun: bool = False,
        advertise_on_scan: bool = True,
        state: AdapterState = AdapterState.POWERED_ON,
        tick_seconds: float = 1.0,
    ) -> None:
        if peripherals is None:
            peripherals = [sim_trainer(), sim_heart_rate_monitor()]
        self._peripherals: dict[str, SimPeripheral] = {p.peripheral_id: p for p in peripherals}
        self._autorun = autorun
        self._advertise_on_scan = advertise_on_scan
        self._state = state
        self._state_changed = asyncio.Event()
        self._tick_seconds = tick_seconds
        self._scan_callback: Optional[AdvertisementCallback] = None
        self._scan_filter: Optional[set[str]] = None
        self._connected: dict[str, DisconnectCallback] = {}
        self._subscriptions: dict[tuple[str, str], NotificationCallback] = {}
        self._rejections: dict[int, int] = {}
        self._sim_task: Optional[asyncio.Task[None]] = None
        self._rng = random.Random(20260225)
        self._tick = 0
        self._sim_target_watts = 0
        self._sim_running = False
        self._sim_power = 0.0
        self._sim_cadence = 0.0
        self._sim_heart_rate = 92.0
        self.writes: list[tuple[str, str, bytes]] = []
        self.scan_starts = 0
        self.fail_writes: Optional[Exception] = None
        # When assigned, writes wait on this event before completing.
        self.write_gate: Optional[asyncio.Event] = None

    # -- scripting helpers -------------------------------------------------

    @property
    def scanning(self) -> bool:
        return self._scan_callback is not None

    def add_peripheral(self, peripheral: SimPeripheral) -> None:
        self._peripherals[peripheral.peripheral_id] = peripheral

    def set_state(self, state: AdapterState) -> None:
        self._state = state
        self._state_changed.set()

    def advertise(self, peripheral_id: str) -> None:
        """Deliver one advertisement if a scan is running and its filter matches."""
        peripheral = self._peripherals[peripheral_id]
        callback = self._scan_callback
        if callback is None:
            return
        if self._scan_filter and not self._scan_filter.intersection(peripheral.service_uuids):
            return
        callback(peripheral.advertisement())

    def notify(self, peripheral_id: str, char_uuid: str, data: bytes) -> None:
        callback = self._subscriptions.get((peripheral_id, normalize_uuid(char_uuid)))
        if callback is not None:
            callback(bytes(data))

    def drop_link(self, peripheral_id: str) -> None:
        """Simulate a peripheral-initiated disconnect."""
        on_disconnect = self._forget(peripheral_id)
        if on_disconnect is not None:
            on_disconnect(peripheral_id)

    def reject(self, opcode: int, result: int) -> None:
        """Answer future writes of ``opcode`` with a failing result code."""
        self._rejections[opcode] = result

    def is_connected(self, peripheral_id: str) -> bool:
        return peripheral_id in self._connected

    def written_opcodes(self, peripheral_id: Optional[str] = None) -> list[int]:
        return [
            data[0]
            for pid, char_uuid, data in self.writes
            if char_uuid == FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID
            and (peripheral_id is None or pid == peripheral_id)
        ]

    # -- RadioAdapter ------------------------------------------------------

    @property
    def state(self) -> AdapterState:
        return self._state

    async def wait_until_ready(self) -> None:
        while True:
            if self._state is AdapterState.POWERED_ON:
                return
            if self._state.is_fatal:
                raise AdapterUnavailable(self._state.value)
            self._state_changed.clear()
            await self._state_changed.wait()

    async def start_scan(
        self,
        on_advertisement: AdvertisementCallback,
        service_uuids: Optional[list[str]] = None,
    ) -> None:
        if self._state is not AdapterState.POWERED_ON:
            raise AdapterUnavailable(self._state.value)
        self.scan_starts += 1
        self._scan_callback = on_advertisement
        self._scan_filter = {normalize_uuid(u) for u in service_uuids} if service_uuids else None
        self._ensure_sim_task()
        if self._advertise_on_scan:
            asyncio.get_running_loop().call_soon(self._advertise_all)

    async def stop_scan(self) -> None:
        self._scan_callback = None
        self._scan_filter = None

    async def connect(
        self,
        peripheral_id: str,
        on_disconnect: DisconnectCallback,
        timeout: float,
    ) -> None:
        if peripheral_id not in self._peripherals:
            raise NotReady(f"Peripheral {peripheral_id} not found")
        await asyncio.sleep(0)
        self._connected[peripheral_id] = on_disconnect
        self._ensure_sim_task()
        logger.debug("[SIM-HT] %s connected", peripheral_id)

    async def disconnect(self, peripheral_id: str) -> None:
        await asyncio.sleep(0)
        self.drop_link(peripheral_id)

    async def discover_characteristics(
        self, peripheral_id: str, service_uuid: str
    ) -> set[str]:
        self._require_connected(peripheral_id)
        peripheral = self._peripherals[peripheral_id]
        return set(peripheral.characteristics.get(normalize_uuid(service_uuid), set()))

    async def subscribe(
        self, peripheral_id: str, char_uuid: str, callback: NotificationCallback
    ) -> None:
        self._require_connected(peripheral_id)
        self._subscriptions[(peripheral_id, normalize_uuid(char_uuid))] = callback

    async def write(self, peripheral_id: str, char_uuid: str, data: bytes) -> None:
        self._require_connected(peripheral_id)
        await asyncio.sleep(0)
        if self.write_gate is not None:
            await self.write_gate.wait()
        if self.fail_writes is not None:
            raise self.fail_writes
        char_uuid = normalize_uuid(char_uuid)
        self.writes.append((peripheral_id, char_uuid, bytes(data)))
        if char_uuid != FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID or not data:
            return

        opcode = data[0]
        result = self._rejections.get(opcode, RESULT_SUCCESS)
        if result == RESULT_SUCCESS:
            self._apply_command(opcode, bytes(data))
        indication = bytes([OP_RESPONSE_CODE, opcode, result])
        asyncio.get_running_loop().call_soon(
            self.notify, peripheral_id, FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID, indication
        )

    async def close(self) -> None:
        await self.stop_scan()
        for peripheral_id in list(self._connected):
            self.drop_link(peripheral_id)
        if self._sim_task is not None:
            self._sim_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sim_task
            self._sim_task = None

    # -- internals ---------------------------------------------------------

    def _require_connected(self, peripheral_id: str) -> None:
        if peripheral_id not in self._connected:
            raise NotReady(f"Peripheral {peripheral_id} is not connected")

    def _forget(self, peripheral_id: str) -> Optional[DisconnectCallback]:
        on_disconnect = self._connected.pop(peripheral_id, None)
        for key in [key for key in self._subscriptions if key[0] == peripheral_id]:
            del self._subscriptions[key]
        return on_disconnect

    def _advertise_all(self) -> None:
        for peripheral_id in list(self._peripherals):
            if self._scan_callback is None:
                return
            self.advertise(peripheral_id)

    def _apply_command(self, opcode: int, data: bytes) -> None:
        if opcode == OP_SET_TARGET_POWER and len(data) >= 3:
            self._sim_target_watts = struct.unpack_from("<h", data, 1)[0]
            logger.debug("[SIM-HT] target request=%sW", self._sim_target_watts)
        elif opcode == OP_START_RESUME:
            self._sim_running = True
        elif opcode == OP_STOP_PAUSE:
            self._sim_running = False

    def _ensure_sim_task(self) -> None:
        if not self._autorun:
            return
        if self._sim_task is None or self._sim_task.done():
            self._sim_task = asyncio.ensure_future(self._simulation_loop())

    async def _simulation_loop(self) -> None:
        while True:
            self._tick += 1
            if self._scan_callback is not None:
                self._advertise_all()
            for peripheral_id in list(self._connected):
                peripheral = self._peripherals[peripheral_id]
                if FTMS_SERVICE_UUID in peripheral.service_uuids:
                    self.notify(peripheral_id, INDOOR_BIKE_DATA_CHAR_UUID, self._next_bike_payload())
                elif HEART_RATE_SERVICE_UUID in peripheral.service_uuids:
                    self.notify(
                        peripheral_id,
                        HEART_RATE_MEASUREMENT_CHAR_UUID,
                        bytes([0x00, int(round(self._sim_heart_rate))]),
                    )
            await asyncio.sleep(self._tick_seconds)

    def _next_bike_payload(self) -> bytes:
        target = float(self._sim_target_watts) if self._sim_running else 0.0
        periodic = 0.0
        noise = 0.0
        if target > 0:
            periodic = 6.0 * math.sin(self._tick / 5.0)
            noise = self._rng.uniform(-4.0, 4.0)
        dynamic_target = max(0.0, target + periodic + noise)
        self._sim_power += max(-30.0, min(30.0, (dynamic_target - self._sim_power) * 0.30))

        cadence_target = 70.0 + self._sim_power / 8.8 if self._sim_running else 0.0
        self._sim_cadence += max(-5.5, min(5.5, (cadence_target - self._sim_cadence) * 0.55))
        self._sim_cadence = max(0.0, min(128.0, self._sim_cadence))
        speed_kmh = 14.0 + self._sim_power / 11.0 if self._sim_power > 1.0 else 0.0

        hr_target = 92.0 + self._sim_power / 4.0
        self._sim_heart_rate += max(-2.0, min(2.0, (hr_target - self._sim_heart_rate) * 0.1))

        flags = FLAG_INSTANTANEOUS_CADENCE_PRESENT | FLAG_INSTANTANEOUS_POWER_PRESENT
        return struct.pack(
            "<HHHh",
            flags,
            int(round(speed_kmh * 100)),
            int(round(self._sim_cadence * 2)),
            int(round(self._sim_power)),
        )
