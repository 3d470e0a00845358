"""FTMS control point encoding and acknowledgment handling."""

from __future__ import annotations

import logging
import math
import struct
from dataclasses import dataclass
from typing import Callable, Optional

from ergtrainer.ble.adapter import RadioAdapter
from ergtrainer.ble.constants import (
    MAX_TARGET_WATTS,
    OP_REQUEST_CONTROL,
    OP_RESET,
    OP_RESPONSE_CODE,
    OP_SET_TARGET_POWER,
    OP_START_RESUME,
    OP_STOP_PAUSE,
    RESULT_SUCCESS,
    STATUS_CONTROL_PERMISSION_LOST,
    STATUS_RESET,
    STATUS_SIMULATION_PARAMETERS_CHANGED,
    STATUS_STARTED_OR_RESUMED_BY_USER,
    STATUS_STOPPED_BY_SAFETY_KEY,
    STATUS_STOPPED_OR_PAUSED_BY_USER,
    STATUS_TARGET_POWER_CHANGED,
    opcode_name,
)
from ergtrainer.core.state import BoundDevice
from ergtrainer.errors import CommandRejected, NotReady

logger = logging.getLogger(__name__)

_MACHINE_STATUS_MESSAGES: dict[int, str] = {
    STATUS_RESET: "Trainer reset",
    STATUS_STOPPED_OR_PAUSED_BY_USER: "Trainer stopped or paused by user",
    STATUS_STOPPED_BY_SAFETY_KEY: "Trainer stopped by safety key",
    STATUS_STARTED_OR_RESUMED_BY_USER: "Trainer started or resumed by user",
    STATUS_SIMULATION_PARAMETERS_CHANGED: "Trainer acknowledged simulation parameter change",
    STATUS_CONTROL_PERMISSION_LOST: "Trainer revoked control permission",
}


def clamp_target_watts(watts: float, max_watts: int = MAX_TARGET_WATTS) -> int:
    # Halves round up (100.5 -> 101), not to even.
    return max(0, min(math.floor(watts + 0.5), max_watts))


def encode_command(opcode: int, payload: bytes = b"") -> bytes:
    return bytes([opcode]) + payload


def encode_set_target_power(watts: int) -> bytes:
    return encode_command(OP_SET_TARGET_POWER, struct.pack("<h", watts))


def decode_set_target_power(command: bytes) -> int:
    if len(command) < 3 or command[0] != OP_SET_TARGET_POWER:
        raise ValueError(f"Not a set-target-power command: {command.hex(' ')}")
    return struct.unpack_from("<h", command, 1)[0]


@dataclass(frozen=True)
class ControlPointResponse:
    request_opcode: int
    result_code: int

    @property
    def succeeded(self) -> bool:
        return self.result_code == RESULT_SUCCESS


def parse_control_point_response(payload: bytes) -> Optional[ControlPointResponse]:
    """Decode a ``0x80, opcode, result`` control point indication."""
    if len(payload) < 3 or payload[0] != OP_RESPONSE_CODE:
        return None
    return ControlPointResponse(request_opcode=payload[1], result_code=payload[2])


def describe_machine_status(payload: bytes) -> Optional[str]:
    if not payload:
        return None
    status_opcode = payload[0]
    if status_opcode == STATUS_TARGET_POWER_CHANGED and len(payload) >= 3:
        watts = struct.unpack_from("<h", payload, 1)[0]
        return f"Trainer target power changed to {watts}W"
    return _MACHINE_STATUS_MESSAGES.get(status_opcode)


class ControlProtocol:
    """Writes control point opcodes and interprets the device's answers.

    Writes use write-with-response; the control point indication that follows
    is not awaited and is only inspected for rejections.
    """

    def __init__(self, adapter: RadioAdapter) -> None:
        self._adapter = adapter
        self.on_control_acquired: Optional[Callable[[BoundDevice], None]] = None

    async def send(self, device: BoundDevice, command: bytes) -> None:
        if not device.active or device.control_point_uuid is None:
            raise NotReady("Control point not ready")
        logger.debug(
            "[FTMS-CP] write %s payload=%s", opcode_name(command[0]), command.hex(" ")
        )
        await self._adapter.write(device.peripheral_id, device.control_point_uuid, command)
        if not device.active:
            raise NotReady(f"Trainer link lost during {opcode_name(command[0])}")

    async def request_control(self, device: BoundDevice) -> bool:
        """Request control unless already held. Returns True when newly acquired."""
        if device.controlling:
            return False
        await self.send(device, encode_command(OP_REQUEST_CONTROL))
        device.controlling = True
        if self.on_control_acquired is not None:
            self.on_control_acquired(device)
        return True

    async def set_target_power(self, device: BoundDevice, watts: int) -> None:
        await self.request_control(device)
        await self.send(device, encode_set_target_power(watts))

    async def start_or_resume(self, device: BoundDevice) -> None:
        await self.request_control(device)
        await self.send(device, encode_command(OP_START_RESUME))

    async def stop_or_pause(self, device: BoundDevice) -> None:
        await self.request_control(device)
        await self.send(device, encode_command(OP_STOP_PAUSE))

    async def reset(self, device: BoundDevice) -> None:
        await self.send(device, encode_command(OP_RESET))

    def handle_control_point(self, device: BoundDevice, payload: bytes) -> Optional[str]:
        """Return a status message when the device rejected a command."""
        logger.debug("[FTMS-CP] indication payload=%s", payload.hex(" "))
        response = parse_control_point_response(payload)
        if response is None or response.succeeded:
            return None
        rejection = CommandRejected(response.request_opcode, response.result_code)
        if response.request_opcode == OP_REQUEST_CONTROL:
            device.controlling = False
        logger.warning("[FTMS-CP] %s (%s)", rejection, opcode_name(response.request_opcode))
        return str(rejection)

    def handle_machine_status(self, device: BoundDevice, payload: bytes) -> Optional[str]:
        logger.debug("[FTMS] machine status payload=%s", payload.hex(" "))
        if payload and payload[0] == STATUS_CONTROL_PERMISSION_LOST:
            device.controlling = False
        return describe_machine_status(payload)
