"""Error taxonomy for the trainer core."""

from __future__ import annotations


class TrainerError(RuntimeError):
    """Base class for every failure raised by the trainer core."""


class AdapterUnavailable(TrainerError):
    """The Bluetooth adapter is powered off, unsupported or unauthorized."""

    def __init__(self, state: str) -> None:
        super().__init__(f"Bluetooth adapter state {state}")
        self.state = state


class ScanTimeout(TrainerError, TimeoutError):
    """A scan or connect exceeded its time bound."""


class ProtocolMismatch(TrainerError):
    """A required GATT characteristic is missing after discovery."""


class NotReady(TrainerError):
    """A command was issued with no bound device (or the link vanished)."""


class CommandRejected(TrainerError):
    """The device answered a control point write with a non-success result."""

    def __init__(self, opcode: int, result: int) -> None:
        super().__init__(
            f"Control point response for opcode 0x{opcode:x} returned status 0x{result:x}"
        )
        self.opcode = opcode
        self.result = result
