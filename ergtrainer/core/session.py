"""ERG session sequencing: request control, set target, start, pause, stop."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from ergtrainer.ble.constants import MAX_TARGET_WATTS, OP_RESET, OP_STOP_PAUSE
from ergtrainer.ble.protocol import ControlProtocol, clamp_target_watts, encode_command
from ergtrainer.core.connection import ConnectionManager, StatusReporter
from ergtrainer.core.events import TARGET_WATTS_EVENT, EventBus
from ergtrainer.core.state import BoundDevice, SessionPhase, SessionState
from ergtrainer.errors import NotReady

logger = logging.getLogger(__name__)


class AutoStopTimer:
    """Cancellable one-shot timer on the running event loop.

    ``arm`` always cancels a pending timer first, so at most one is scheduled.
    """

    def __init__(self, callback: Callable[[], None]) -> None:
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._deadline: Optional[float] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, seconds: float) -> None:
        self.cancel()
        self._loop = asyncio.get_running_loop()
        self._deadline = self._loop.time() + seconds
        self._handle = self._loop.call_later(seconds, self._fire)

    def cancel(self) -> Optional[float]:
        """Cancel the timer and return the seconds that were left, if armed."""
        if self._handle is None or self._loop is None or self._deadline is None:
            return None
        remaining = max(0.0, self._deadline - self._loop.time())
        self._handle.cancel()
        self._handle = None
        self._deadline = None
        return remaining

    def _fire(self) -> None:
        self._handle = None
        self._deadline = None
        self._callback()


class SessionStateMachine:
    """Drives idle -> running -> paused -> stopped against the bound trainer.

    Commands are serialized by one lock; the disconnect path resets the
    session synchronously through ``handle_link_lost``.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        protocol: ControlProtocol,
        bus: EventBus,
        report_status: StatusReporter,
        *,
        ensure_connected: Optional[Callable[[], Awaitable[Any]]] = None,
        max_target_watts: int = MAX_TARGET_WATTS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._connections = connections
        self._protocol = protocol
        self._bus = bus
        self._report_status = report_status
        self._ensure_connected = ensure_connected
        self._max_target_watts = max_target_watts
        self._clock = clock
        self._lock = asyncio.Lock()
        self._timer = AutoStopTimer(self._on_timer_fired)
        self._auto_stop_task: Optional[asyncio.Task[None]] = None
        self.state = SessionState()
        connections.on_control_lost = self.handle_link_lost

    @property
    def phase(self) -> SessionPhase:
        return self.state.phase

    @property
    def timer_armed(self) -> bool:
        return self._timer.armed

    @property
    def auto_stop_pending(self) -> bool:
        task = self._auto_stop_task
        return task is not None and not task.done()

    def elapsed_seconds(self) -> float:
        return self.state.elapsed_seconds(self._clock())

    async def start_session(
        self, target_watts: float, duration_seconds: Optional[float] = None
    ) -> None:
        async with self._lock:
            device = await self._require_device()
            await self._protocol.request_control(device)
            await self._set_target_locked(device, target_watts)
            await self._protocol.start_or_resume(device)

            self._timer.cancel()
            self.state.phase = SessionPhase.RUNNING
            self.state.elapsed_before_segment = 0.0
            self.state.segment_started_at = self._clock()
            self.state.remaining_seconds = (
                float(duration_seconds) if duration_seconds and duration_seconds > 0 else None
            )
            self._arm_timer()
            logger.info(
                "[FTMS] ERG session running at %sW (auto-stop: %s)",
                self.state.target_watts,
                self.state.remaining_seconds,
            )
            self._report_status(message="ERG session running")

    async def pause(self) -> None:
        async with self._lock:
            device = self._connections.control
            if device is None or self.state.phase is not SessionPhase.RUNNING:
                return
            await self._protocol.stop_or_pause(device)

            remaining = self._timer.cancel()
            if remaining is not None:
                self.state.remaining_seconds = remaining
            self._close_segment()
            self.state.phase = SessionPhase.PAUSED
            self._report_status(message="ERG session paused")

    async def resume(self) -> None:
        async with self._lock:
            if self.state.phase is not SessionPhase.PAUSED:
                return
            device = await self._require_device()
            await self._protocol.start_or_resume(device)

            self.state.phase = SessionPhase.RUNNING
            self.state.segment_started_at = self._clock()
            self._arm_timer()
            self._report_status(message="ERG session running")

    async def stop(self) -> None:
        async with self._lock:
            await self._stop_locked("ERG session stopped")

    async def set_target_watts(self, watts: float) -> int:
        async with self._lock:
            device = await self._require_device()
            return await self._set_target_locked(device, watts)

    async def nudge_watts(self, delta: float) -> int:
        async with self._lock:
            device = await self._require_device()
            return await self._set_target_locked(device, self.state.target_watts + delta)

    def handle_link_lost(self) -> None:
        """Reset to idle after the trainer link dropped; no opcode is sent."""
        self._timer.cancel()
        self._close_segment()
        self.state.phase = SessionPhase.IDLE
        self.state.remaining_seconds = None

    async def shutdown(self) -> None:
        """Best-effort stop then reset of the trainer; never raises."""
        self._timer.cancel()
        self._cancel_auto_stop()
        self.state.remaining_seconds = None
        device = self._connections.control
        if device is not None:
            for opcode in (OP_STOP_PAUSE, OP_RESET):
                try:
                    await self._protocol.send(device, encode_command(opcode))
                except Exception as exc:
                    logger.debug("[FTMS] shutdown opcode 0x%02x failed: %s", opcode, exc)
        self.reset()

    def reset(self) -> None:
        self._timer.cancel()
        self._cancel_auto_stop()
        self.state = SessionState()

    async def _stop_locked(self, message: str) -> None:
        device = self._connections.control
        if device is None or self.state.phase not in (SessionPhase.RUNNING, SessionPhase.PAUSED):
            return
        await self._protocol.stop_or_pause(device)

        self._timer.cancel()
        self._close_segment()
        self.state.remaining_seconds = None
        self.state.phase = SessionPhase.STOPPED
        self._report_status(message=message)

    async def _set_target_locked(self, device: BoundDevice, watts: float) -> int:
        safe_watts = clamp_target_watts(watts, self._max_target_watts)
        await self._protocol.set_target_power(device, safe_watts)
        self.state.target_watts = safe_watts
        self._bus.emit(TARGET_WATTS_EVENT, safe_watts)
        if safe_watts != watts:
            logger.info("[FTMS] ERG target %sW clamped to %sW", watts, safe_watts)
        return safe_watts

    async def _require_device(self) -> BoundDevice:
        device = self._connections.control
        if device is None and self._ensure_connected is not None:
            await self._ensure_connected()
            device = self._connections.control
        if device is None:
            raise NotReady("No trainer connected")
        return device

    def _arm_timer(self) -> None:
        remaining = self.state.remaining_seconds
        if remaining is None or remaining <= 0:
            self.state.remaining_seconds = None
            return
        self._timer.arm(remaining)

    def _close_segment(self) -> None:
        if self.state.segment_started_at is None:
            return
        self.state.elapsed_before_segment = self.state.elapsed_seconds(self._clock())
        self.state.segment_started_at = None

    def _cancel_auto_stop(self) -> None:
        task = self._auto_stop_task
        self._auto_stop_task = None
        if task is not None and not task.done():
            task.cancel()

    def _on_timer_fired(self) -> None:
        self.state.remaining_seconds = None
        self._auto_stop_task = asyncio.ensure_future(self._auto_stop())

    async def _auto_stop(self) -> None:
        try:
            async with self._lock:
                await self._stop_locked("ERG session finished")
        except Exception:
            logger.exception("[FTMS] auto-stop failed")
