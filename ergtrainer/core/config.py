"""Tunables for the trainer engine."""

from __future__ import annotations

from dataclasses import dataclass

from ergtrainer.ble.constants import (
    DEFAULT_SCAN_TIMEOUT,
    DEVICE_STALE_SECONDS,
    MAX_TARGET_WATTS,
)


@dataclass(frozen=True)
class EngineConfig:
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT
    connect_timeout: float = DEFAULT_SCAN_TIMEOUT
    stale_after: float = DEVICE_STALE_SECONDS
    max_target_watts: int = MAX_TARGET_WATTS
    ble_pair: bool = True
