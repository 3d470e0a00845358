"""Decoders for FTMS Indoor Bike Data (0x2AD2) and Heart Rate Measurement (0x2A37)."""

from __future__ import annotations

import struct
from dataclasses import asdict, dataclass
from typing import Any, Optional

from ergtrainer.ble.constants import (
    FLAG_AVERAGE_CADENCE_PRESENT,
    FLAG_AVERAGE_POWER_PRESENT,
    FLAG_AVERAGE_SPEED_PRESENT,
    FLAG_ELAPSED_TIME_PRESENT,
    FLAG_EXPENDED_ENERGY_PRESENT,
    FLAG_HEART_RATE_PRESENT,
    FLAG_INSTANTANEOUS_CADENCE_PRESENT,
    FLAG_INSTANTANEOUS_POWER_PRESENT,
    FLAG_METABOLIC_EQUIVALENT_PRESENT,
    FLAG_REMAINING_TIME_PRESENT,
    FLAG_RESISTANCE_LEVEL_PRESENT,
    FLAG_TOTAL_DISTANCE_PRESENT,
    HR_FLAG_VALUE_UINT16,
    parse_indoor_bike_flags,
)


@dataclass(frozen=True)
class TelemetrySample:
    power_watts: Optional[int] = None
    cadence_rpm: Optional[float] = None
    speed_kph: Optional[float] = None
    heart_rate_bpm: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        """Return only the fields that were actually decoded."""
        return {key: value for key, value in asdict(self).items() if value is not None}

    @property
    def is_empty(self) -> bool:
        return not self.to_dict()


# Optional Indoor Bike Data fields after instantaneous speed, in wire order.
# The third item names the sample field to fill, or None when the field is skipped.
_INDOOR_BIKE_FIELDS: tuple[tuple[int, int, Optional[str]], ...] = (
    (FLAG_AVERAGE_SPEED_PRESENT, 2, None),
    (FLAG_INSTANTANEOUS_CADENCE_PRESENT, 2, "cadence_rpm"),
    (FLAG_AVERAGE_CADENCE_PRESENT, 2, None),
    (FLAG_TOTAL_DISTANCE_PRESENT, 3, None),
    (FLAG_RESISTANCE_LEVEL_PRESENT, 2, None),
    (FLAG_INSTANTANEOUS_POWER_PRESENT, 2, "power_watts"),
    (FLAG_AVERAGE_POWER_PRESENT, 2, None),
    (FLAG_EXPENDED_ENERGY_PRESENT, 5, None),
    (FLAG_HEART_RATE_PRESENT, 1, "heart_rate_bpm"),
    (FLAG_METABOLIC_EQUIVALENT_PRESENT, 1, None),
    (FLAG_ELAPSED_TIME_PRESENT, 2, None),
    (FLAG_REMAINING_TIME_PRESENT, 2, None),
)


def _fits(payload: bytes, cursor: int, size: int) -> bool:
    return cursor + size <= len(payload)


def _read_field(payload: bytes, cursor: int, field: str) -> int | float:
    if field == "cadence_rpm":
        return struct.unpack_from("<H", payload, cursor)[0] / 2.0
    if field == "power_watts":
        return struct.unpack_from("<h", payload, cursor)[0]
    return payload[cursor]


@dataclass(frozen=True)
class _Decoded:
    sample: TelemetrySample
    cursor: int
    truncated: bool


def _decode_indoor_bike_data(payload: bytes, *, speed_present: bool) -> _Decoded:
    raw_flags = struct.unpack_from("<H", payload, 0)[0]
    cursor = 2
    values: dict[str, int | float] = {}

    if speed_present:
        if not _fits(payload, cursor, 2):
            return _Decoded(TelemetrySample(), cursor, truncated=True)
        values["speed_kph"] = struct.unpack_from("<H", payload, cursor)[0] / 100.0
        cursor += 2

    for flag, size, field in _INDOOR_BIKE_FIELDS:
        if not raw_flags & flag:
            continue
        if not _fits(payload, cursor, size):
            return _Decoded(TelemetrySample(**values), cursor, truncated=True)
        if field is not None:
            values[field] = _read_field(payload, cursor, field)
        cursor += size

    return _Decoded(TelemetrySample(**values), cursor, truncated=False)


def _plausibility_score(sample: TelemetrySample) -> int:
    score = 0
    if sample.cadence_rpm is not None and not 0 <= sample.cadence_rpm <= 220:
        score += 1000
    if sample.power_watts is not None and not -200 <= sample.power_watts <= 3000:
        score += 1000
    if sample.speed_kph is not None and not 0 <= sample.speed_kph <= 130:
        score += 1000
    return score


def parse_indoor_bike_data(payload: bytes) -> Optional[TelemetrySample]:
    """Parse an Indoor Bike Data notification.

    Decoding stops at the first field that does not fit in the buffer, so a
    truncated notification yields only the fields that precede the cut.
    Returns None when the payload is too short to carry the flags field.

    Per FTMS, instantaneous speed is present when flag bit 0 is clear. Some
    trainers get bit 0 wrong, so the opposite alignment is decoded as well. It
    replaces a truncated decode only when that decode read nothing past the
    speed field and the alternate uses up the buffer exactly; it replaces a
    complete decode only when it also fits exactly and is more plausible.
    """
    if len(payload) < 2:
        return None

    raw_flags = struct.unpack_from("<H", payload, 0)[0]
    preferred_speed_present = parse_indoor_bike_flags(raw_flags).speed_present
    preferred = _decode_indoor_bike_data(payload, speed_present=preferred_speed_present)
    alternate = _decode_indoor_bike_data(payload, speed_present=not preferred_speed_present)

    if alternate.truncated or alternate.cursor != len(payload):
        return preferred.sample

    if preferred.truncated:
        if preferred_speed_present and set(preferred.sample.to_dict()) <= {"speed_kph"}:
            return alternate.sample
        return preferred.sample

    if _plausibility_score(alternate.sample) < _plausibility_score(preferred.sample):
        return alternate.sample
    return preferred.sample


def parse_heart_rate_measurement(payload: bytes) -> Optional[TelemetrySample]:
    """Extract the heart rate value from a Heart Rate Measurement notification."""
    if not payload:
        return None

    flags = payload[0]
    if flags & HR_FLAG_VALUE_UINT16:
        if not _fits(payload, 1, 2):
            return None
        bpm = struct.unpack_from("<H", payload, 1)[0]
    else:
        if not _fits(payload, 1, 1):
            return None
        bpm = payload[1]
    return TelemetrySample(heart_rate_bpm=bpm)
