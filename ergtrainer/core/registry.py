"""Registry of peripherals seen while scanning."""

from __future__ import annotations

import enum
import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

from ergtrainer.ble.adapter import Advertisement, RadioAdapter
from ergtrainer.ble.constants import (
    DEVICE_STALE_SECONDS,
    FTMS_SERVICE_UUID,
    HEART_RATE_SERVICE_UUID,
    normalize_uuid,
)
from ergtrainer.core.events import DEVICES_EVENT, EventBus

logger = logging.getLogger(__name__)

_BLE_COMPANY_IDS: dict[int, str] = {
    0x004C: "Apple",
    0x0006: "Microsoft",
    0x000F: "Broadcom",
    0x0075: "Samsung",
    0x0087: "Garmin",
    0x00D2: "Wahoo Fitness",
    0x011F: "Tacx",
    0x04D8: "Elite",
}

_BRAND_HINTS: tuple[tuple[str, str], ...] = (
    ("wahoo", "Wahoo Fitness"),
    ("kickr", "Wahoo Fitness"),
    ("tickr", "Wahoo Fitness"),
    ("elite", "Elite"),
    ("direto", "Elite"),
    ("suito", "Elite"),
    ("tacx", "Tacx"),
    ("garmin", "Garmin"),
    ("polar", "Polar"),
    ("saris", "Saris"),
    ("stages", "Stages"),
    ("zwift", "Zwift"),
)


class DeviceKind(str, enum.Enum):
    CONTROL_DEVICE = "control-device"
    HEART_RATE = "heart-rate"
    UNKNOWN = "unknown"


_KIND_ORDER = {
    DeviceKind.CONTROL_DEVICE: 0,
    DeviceKind.HEART_RATE: 1,
    DeviceKind.UNKNOWN: 2,
}


@dataclass(frozen=True)
class DiscoveredPeripheral:
    id: str
    label: str
    kind: DeviceKind
    last_seen: float
    name: Optional[str] = None
    identifier: Optional[str] = None
    service_uuids: tuple[str, ...] = ()
    rssi: Optional[int] = None
    connectable: bool = True
    connected: bool = False
    manufacturer: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "name": self.name,
            "identifier": self.identifier,
            "services": list(self.service_uuids),
            "rssi": self.rssi,
            "kind": self.kind.value,
            "connectable": self.connectable,
            "connected": self.connected,
            "manufacturer": self.manufacturer,
        }


def format_identifier(raw: Optional[str]) -> Optional[str]:
    """Shorten a radio id to its last three hex octets, e.g. ``AA:BB:CC``."""
    if not raw:
        return None
    cleaned = re.sub(r"[^a-fA-F0-9]", "", raw).lower()
    if not cleaned:
        return None
    tail = cleaned[-6:]
    if len(tail) < 4:
        return cleaned.upper()
    return ":".join(tail[i : i + 2] for i in range(0, len(tail), 2)).upper()


def build_label(name: Optional[str], peripheral_id: str) -> str:
    parts = [(name or "").strip() or "FTMS service 1826"]
    identifier = format_identifier(peripheral_id)
    if identifier:
        parts.append(identifier)
    return " • ".join(parts)


def classify(service_uuids: tuple[str, ...]) -> DeviceKind:
    if FTMS_SERVICE_UUID in service_uuids:
        return DeviceKind.CONTROL_DEVICE
    if HEART_RATE_SERVICE_UUID in service_uuids:
        return DeviceKind.HEART_RATE
    return DeviceKind.UNKNOWN


def resolve_manufacturer(name: str, manufacturer_data: Optional[dict[int, bytes]]) -> Optional[str]:
    if manufacturer_data:
        for key in sorted(manufacturer_data.keys()):
            return _BLE_COMPANY_IDS.get(key, f"MFG 0x{key:04X}")
    lowered = name.lower()
    for hint, brand in _BRAND_HINTS:
        if hint in lowered:
            return brand
    return None


class DeviceRegistry:
    """Tracks advertised peripherals and emits the sorted device list."""

    def __init__(
        self,
        adapter: RadioAdapter,
        bus: EventBus,
        *,
        stale_after: float = DEVICE_STALE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._adapter = adapter
        self._bus = bus
        self._stale_after = stale_after
        self._clock = clock
        self._entries: dict[str, DiscoveredPeripheral] = {}
        self._bound_ids: set[str] = set()
        self._scanning = False

    @property
    def scanning(self) -> bool:
        return self._scanning

    def get(self, peripheral_id: str) -> Optional[DiscoveredPeripheral]:
        return self._entries.get(peripheral_id)

    def kind_of(self, peripheral_id: str) -> Optional[DeviceKind]:
        entry = self._entries.get(peripheral_id)
        return entry.kind if entry is not None else None

    def mark_connected(self, peripheral_id: str) -> None:
        self._bound_ids.add(peripheral_id)

    def mark_disconnected(self, peripheral_id: str) -> None:
        self._bound_ids.discard(peripheral_id)

    async def begin_scan(self) -> None:
        if self._scanning:
            self.emit()
            return

        for peripheral_id in list(self._entries):
            if peripheral_id not in self._bound_ids:
                del self._entries[peripheral_id]
        self.emit()

        await self._adapter.wait_until_ready()
        self._scanning = True
        try:
            await self._adapter.start_scan(self.on_advertisement)
        except Exception:
            self._scanning = False
            raise
        logger.info("[BLE] discovery started")

    async def end_scan(self) -> None:
        if not self._scanning:
            return
        self._scanning = False
        try:
            await self._adapter.stop_scan()
        except Exception as exc:
            logger.debug("[BLE] stop scan failed: %s", exc)
        logger.info("[BLE] discovery stopped")

    def on_advertisement(self, advertisement: Advertisement) -> DiscoveredPeripheral:
        services = tuple(normalize_uuid(u) for u in advertisement.service_uuids)
        previous = self._entries.get(advertisement.peripheral_id)
        name = (advertisement.name or "").strip() or (previous.name if previous else None)
        entry = DiscoveredPeripheral(
            id=advertisement.peripheral_id,
            label=build_label(name, advertisement.peripheral_id),
            kind=classify(services),
            last_seen=self._clock(),
            name=name,
            identifier=format_identifier(advertisement.peripheral_id),
            service_uuids=services,
            rssi=advertisement.rssi,
            connectable=advertisement.connectable,
            connected=advertisement.peripheral_id in self._bound_ids,
            manufacturer=resolve_manufacturer(name or "", advertisement.manufacturer_data),
        )
        if previous is not None and not services:
            # Scan responses often omit the service list the first packet carried.
            entry = replace(entry, kind=previous.kind, service_uuids=previous.service_uuids)
        self._entries[advertisement.peripheral_id] = entry
        self.emit()
        return entry

    def snapshot(self) -> list[DiscoveredPeripheral]:
        """Prune stale entries and return the list in display order."""
        now = self._clock()
        for peripheral_id, entry in list(self._entries.items()):
            if peripheral_id in self._bound_ids:
                continue
            if now - entry.last_seen > self._stale_after:
                del self._entries[peripheral_id]

        devices = [
            replace(entry, connected=entry.id in self._bound_ids)
            for entry in self._entries.values()
        ]
        devices.sort(
            key=lambda d: (not d.connected, _KIND_ORDER[d.kind], d.label.casefold())
        )
        return devices

    def emit(self) -> None:
        self._bus.emit(DEVICES_EVENT, self.snapshot())

    def clear(self) -> None:
        self._entries.clear()
        self._bound_ids.clear()
