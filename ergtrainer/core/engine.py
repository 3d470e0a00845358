"""Command surface of the trainer core and the status it reports."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from ergtrainer.ble.adapter import RadioAdapter
from ergtrainer.ble.protocol import ControlProtocol
from ergtrainer.core.config import EngineConfig
from ergtrainer.core.connection import ConnectionManager
from ergtrainer.core.events import STATUS_EVENT, EventBus, Listener, StatusUpdate
from ergtrainer.core.registry import DeviceKind, DeviceRegistry
from ergtrainer.core.session import SessionStateMachine
from ergtrainer.core.state import SessionPhase

logger = logging.getLogger(__name__)


class TrainerEngine:
    """Owns registry, connections and session for one radio adapter.

    Everything runs on a single asyncio loop. Collaborators subscribe with
    ``on("devices" | "telemetry" | "status" | "target-watts", callback)`` and
    drive the trainer through the async command methods.
    """

    def __init__(
        self,
        adapter: RadioAdapter | None = None,
        *,
        config: EngineConfig | None = None,
        simulate_ht: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or EngineConfig()
        if adapter is None:
            adapter = self._default_adapter(simulate_ht)
        self.adapter = adapter
        self.events = EventBus()
        self.registry = DeviceRegistry(
            adapter, self.events, stale_after=self.config.stale_after, clock=clock
        )
        self.protocol = ControlProtocol(adapter)
        self.protocol.on_control_acquired = lambda _device: self._emit_status()
        self.connections = ConnectionManager(
            adapter,
            self.registry,
            self.events,
            self.protocol,
            self._emit_status,
            config=self.config,
        )
        self.session = SessionStateMachine(
            self.connections,
            self.protocol,
            self.events,
            self._emit_status,
            ensure_connected=self.connections.connect,
            max_target_watts=self.config.max_target_watts,
            clock=clock,
        )

    def _default_adapter(self, simulate_ht: bool) -> RadioAdapter:
        if simulate_ht:
            from ergtrainer.ble.sim_adapter import SimulatedRadioAdapter

            return SimulatedRadioAdapter(autorun=True)

        from ergtrainer.ble.bleak_adapter import BleakRadioAdapter

        return BleakRadioAdapter(pair=self.config.ble_pair)

    def on(self, event: str, listener: Listener) -> None:
        self.events.on(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        self.events.off(event, listener)

    @property
    def status(self) -> StatusUpdate:
        return self._build_status()

    @property
    def target_watts(self) -> int:
        return self.session.state.target_watts

    @property
    def phase(self) -> SessionPhase:
        return self.session.phase

    async def start_discovery(self) -> None:
        if self.registry.scanning:
            self.registry.emit()
            return
        await self.registry.begin_scan()
        self._emit_status(message="Scanning for devices")

    async def stop_discovery(self) -> None:
        if not self.registry.scanning:
            return
        await self.registry.end_scan()
        self._emit_status(scanning=False)

    async def connect(
        self,
        selector: Optional[str] = None,
        kind: DeviceKind | str | None = None,
        timeout: Optional[float] = None,
    ) -> str:
        return await self.connections.connect(selector, kind, timeout)

    async def disconnect(
        self, selector: Optional[str] = None, kind: DeviceKind | str | None = None
    ) -> None:
        await self.connections.disconnect(selector, kind, before_disconnect=self.session.stop)

    async def start_session(
        self, target_watts: float, duration_seconds: Optional[float] = None
    ) -> None:
        await self.session.start_session(target_watts, duration_seconds)

    async def pause_session(self) -> None:
        await self.session.pause()

    async def resume_session(self) -> None:
        await self.session.resume()

    async def stop_session(self) -> None:
        await self.session.stop()

    async def set_target_watts(self, watts: float) -> int:
        return await self.session.set_target_watts(watts)

    async def nudge_watts(self, delta: float) -> int:
        return await self.session.nudge_watts(delta)

    async def shutdown(self) -> None:
        """Tear everything down; each step is best-effort and never raises."""
        try:
            await self.stop_discovery()
        except Exception as exc:
            logger.debug("[BLE] stop discovery during shutdown failed: %s", exc)
        await self.session.shutdown()
        await self.connections.disconnect(kind=DeviceKind.HEART_RATE)
        await self.connections.disconnect(kind=DeviceKind.CONTROL_DEVICE)
        self.session.reset()
        self.registry.clear()
        self.registry.emit()
        closer = getattr(self.adapter, "close", None)
        if closer is not None:
            try:
                await closer()
            except Exception as exc:
                logger.debug("[BLE] adapter close failed: %s", exc)

    def _build_status(
        self,
        message: Optional[str] = None,
        *,
        connected: Optional[bool] = None,
        controlling: Optional[bool] = None,
        running: Optional[bool] = None,
        paused: Optional[bool] = None,
        scanning: Optional[bool] = None,
    ) -> StatusUpdate:
        device = self.connections.control
        state = self.session.state
        return StatusUpdate(
            connected=device is not None if connected is None else connected,
            controlling=(device is not None and device.controlling)
            if controlling is None
            else controlling,
            running=state.running if running is None else running,
            paused=state.paused if paused is None else paused,
            scanning=self.registry.scanning if scanning is None else scanning,
            device_id=device.peripheral_id if device is not None else None,
            message=message,
        )

    def _emit_status(self, message: Optional[str] = None, **overrides: Optional[bool]) -> None:
        self.events.emit(STATUS_EVENT, self._build_status(message, **overrides))

