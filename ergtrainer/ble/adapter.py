"""Radio adapter capability interface the trainer core is written against."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

AdvertisementCallback = Callable[["Advertisement"], None]
NotificationCallback = Callable[[bytes], None]
DisconnectCallback = Callable[[str], None]


class AdapterState(str, enum.Enum):
    UNKNOWN = "unknown"
    POWERED_OFF = "poweredOff"
    POWERED_ON = "poweredOn"
    UNSUPPORTED = "unsupported"
    UNAUTHORIZED = "unauthorized"

    @property
    def is_fatal(self) -> bool:
        return self in (AdapterState.UNSUPPORTED, AdapterState.UNAUTHORIZED)


@dataclass(frozen=True)
class Advertisement:
    """One advertisement event as reported by the radio."""

    peripheral_id: str
    name: Optional[str] = None
    service_uuids: tuple[str, ...] = ()
    rssi: Optional[int] = None
    connectable: bool = True
    manufacturer_data: dict[int, bytes] = field(default_factory=dict)


class RadioAdapter(Protocol):
    """Scan, connect, discover, subscribe and write over the host radio.

    Callbacks are invoked on the asyncio loop that owns the adapter and must
    not block.
    """

    @property
    def state(self) -> AdapterState: ...

    async def wait_until_ready(self) -> None:
        """Return once the radio is powered on.

        Raises AdapterUnavailable when the adapter reports an unsupported or
        unauthorized state.
        """

    async def start_scan(
        self,
        on_advertisement: AdvertisementCallback,
        service_uuids: Optional[list[str]] = None,
    ) -> None: ...

    async def stop_scan(self) -> None: ...

    async def connect(
        self,
        peripheral_id: str,
        on_disconnect: DisconnectCallback,
        timeout: float,
    ) -> None: ...

    async def disconnect(self, peripheral_id: str) -> None: ...

    async def discover_characteristics(
        self, peripheral_id: str, service_uuid: str
    ) -> set[str]:
        """Return the normalized characteristic UUIDs of ``service_uuid``.

        An empty set means the service is absent.
        """

    async def subscribe(
        self, peripheral_id: str, char_uuid: str, callback: NotificationCallback
    ) -> None: ...

    async def write(self, peripheral_id: str, char_uuid: str, data: bytes) -> None:
        """Write with response."""
