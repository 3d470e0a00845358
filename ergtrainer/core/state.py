"""Shared runtime state for bound devices and the ERG session."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


class SessionPhase(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass
class BoundDevice:
    """The connected control device and its FTMS characteristic handles."""

    peripheral_id: str
    label: str
    control_point_uuid: Optional[str] = None
    data_uuid: Optional[str] = None
    status_uuid: Optional[str] = None
    controlling: bool = False
    # Cleared on teardown so in-flight commands can tell the link is gone.
    active: bool = True


@dataclass
class BoundHeartRateDevice:
    peripheral_id: str
    label: str
    measurement_uuid: Optional[str] = None
    active: bool = True


@dataclass
class SessionState:
    phase: SessionPhase = SessionPhase.IDLE
    target_watts: int = 0
    # Running time accumulated before the current run segment.
    elapsed_before_segment: float = 0.0
    segment_started_at: Optional[float] = None
    remaining_seconds: Optional[float] = None

    @property
    def running(self) -> bool:
        return self.phase is SessionPhase.RUNNING

    @property
    def paused(self) -> bool:
        return self.phase is SessionPhase.PAUSED

    def elapsed_seconds(self, now: float) -> float:
        if self.segment_started_at is None:
            return self.elapsed_before_segment
        return self.elapsed_before_segment + max(0.0, now - self.segment_started_at)
