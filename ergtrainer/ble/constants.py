"""FTMS and Heart Rate constants plus flag helpers for BLE fitness devices."""

from __future__ import annotations

from dataclasses import dataclass

BLUETOOTH_BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"


def expand_uuid16(short: int) -> str:
    """Expand a SIG-assigned 16-bit UUID to its full 128-bit string."""
    return f"0000{short:04x}{BLUETOOTH_BASE_UUID_SUFFIX}"


def normalize_uuid(uuid: str) -> str:
    """Lowercase a UUID and expand the 4-hex-digit short form."""
    lowered = uuid.strip().lower()
    if len(lowered) == 4:
        return expand_uuid16(int(lowered, 16))
    return lowered


FTMS_SERVICE_UUID = expand_uuid16(0x1826)
INDOOR_BIKE_DATA_CHAR_UUID = expand_uuid16(0x2AD2)
FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID = expand_uuid16(0x2AD9)
FITNESS_MACHINE_STATUS_CHAR_UUID = expand_uuid16(0x2ADA)
HEART_RATE_SERVICE_UUID = expand_uuid16(0x180D)
HEART_RATE_MEASUREMENT_CHAR_UUID = expand_uuid16(0x2A37)

# Fitness Machine Control Point opcodes (FTMS)
OP_REQUEST_CONTROL = 0x00
OP_RESET = 0x01
OP_SET_TARGET_POWER = 0x05
OP_START_RESUME = 0x07
OP_STOP_PAUSE = 0x08
OP_RESPONSE_CODE = 0x80

OPCODE_NAMES: dict[int, str] = {
    OP_REQUEST_CONTROL: "request-control",
    OP_RESET: "reset",
    OP_SET_TARGET_POWER: "set-target-power",
    OP_START_RESUME: "start-or-resume",
    OP_STOP_PAUSE: "stop-or-pause",
}

# Control point result codes
RESULT_SUCCESS = 0x01
RESULT_NOT_SUPPORTED = 0x02
RESULT_INVALID_PARAMETER = 0x03
RESULT_FAILED = 0x04
RESULT_CONTROL_NOT_PERMITTED = 0x05

# Fitness Machine Status opcodes
STATUS_RESET = 0x01
STATUS_STOPPED_OR_PAUSED_BY_USER = 0x02
STATUS_STOPPED_BY_SAFETY_KEY = 0x03
STATUS_STARTED_OR_RESUMED_BY_USER = 0x04
STATUS_TARGET_POWER_CHANGED = 0x08
STATUS_SIMULATION_PARAMETERS_CHANGED = 0x14
STATUS_CONTROL_PERMISSION_LOST = 0xFF

# Indoor Bike Data flags
FLAG_MORE_DATA = 1 << 0
FLAG_AVERAGE_SPEED_PRESENT = 1 << 1
FLAG_INSTANTANEOUS_CADENCE_PRESENT = 1 << 2
FLAG_AVERAGE_CADENCE_PRESENT = 1 << 3
FLAG_TOTAL_DISTANCE_PRESENT = 1 << 4
FLAG_RESISTANCE_LEVEL_PRESENT = 1 << 5
FLAG_INSTANTANEOUS_POWER_PRESENT = 1 << 6
FLAG_AVERAGE_POWER_PRESENT = 1 << 7
FLAG_EXPENDED_ENERGY_PRESENT = 1 << 8
FLAG_HEART_RATE_PRESENT = 1 << 9
FLAG_METABOLIC_EQUIVALENT_PRESENT = 1 << 10
FLAG_ELAPSED_TIME_PRESENT = 1 << 11
FLAG_REMAINING_TIME_PRESENT = 1 << 12

# Heart Rate Measurement flags
HR_FLAG_VALUE_UINT16 = 1 << 0

MAX_TARGET_WATTS = 2500
DEVICE_STALE_SECONDS = 15.0
DEFAULT_SCAN_TIMEOUT = 20.0


@dataclass(frozen=True)
class IndoorBikeDataFlags:
    more_data: bool
    average_speed_present: bool
    instantaneous_cadence_present: bool
    average_cadence_present: bool
    total_distance_present: bool
    resistance_level_present: bool
    instantaneous_power_present: bool
    average_power_present: bool
    expended_energy_present: bool
    heart_rate_present: bool
    metabolic_equivalent_present: bool
    elapsed_time_present: bool
    remaining_time_present: bool

    @property
    def speed_present(self) -> bool:
        # Bit 0 has inverted meaning: instantaneous speed is sent when it is clear.
        return not self.more_data


def parse_indoor_bike_flags(raw_flags: int) -> IndoorBikeDataFlags:
    """Decode FTMS Indoor Bike Data flags into a typed structure."""
    return IndoorBikeDataFlags(
        more_data=bool(raw_flags & FLAG_MORE_DATA),
        average_speed_present=bool(raw_flags & FLAG_AVERAGE_SPEED_PRESENT),
        instantaneous_cadence_present=bool(raw_flags & FLAG_INSTANTANEOUS_CADENCE_PRESENT),
        average_cadence_present=bool(raw_flags & FLAG_AVERAGE_CADENCE_PRESENT),
        total_distance_present=bool(raw_flags & FLAG_TOTAL_DISTANCE_PRESENT),
        resistance_level_present=bool(raw_flags & FLAG_RESISTANCE_LEVEL_PRESENT),
        instantaneous_power_present=bool(raw_flags & FLAG_INSTANTANEOUS_POWER_PRESENT),
        average_power_present=bool(raw_flags & FLAG_AVERAGE_POWER_PRESENT),
        expended_energy_present=bool(raw_flags & FLAG_EXPENDED_ENERGY_PRESENT),
        heart_rate_present=bool(raw_flags & FLAG_HEART_RATE_PRESENT),
        metabolic_equivalent_present=bool(raw_flags & FLAG_METABOLIC_EQUIVALENT_PRESENT),
        elapsed_time_present=bool(raw_flags & FLAG_ELAPSED_TIME_PRESENT),
        remaining_time_present=bool(raw_flags & FLAG_REMAINING_TIME_PRESENT),
    )


def opcode_name(opcode: int) -> str:
    return OPCODE_NAMES.get(opcode, f"opcode 0x{opcode:02x}")
