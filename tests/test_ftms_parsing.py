from __future__ import annotations

import struct

from ergtrainer.ble.constants import parse_indoor_bike_flags
from ergtrainer.ble.telemetry import parse_heart_rate_measurement, parse_indoor_bike_data


def test_parse_indoor_bike_flags_power_and_cadence_present() -> None:
    flags = parse_indoor_bike_flags(0x0044)
    assert flags.instantaneous_cadence_present is True
    assert flags.instantaneous_power_present is True
    assert flags.average_speed_present is False
    assert flags.speed_present is True


def test_speed_only_when_flags_clear() -> None:
    data = parse_indoor_bike_data(bytes([0x00, 0x00, 0x64, 0x00]))

    assert data is not None
    assert data.speed_kph == 1.0
    assert data.to_dict() == {"speed_kph": 1.0}


def test_power_only_when_more_data_set() -> None:
    data = parse_indoor_bike_data(bytes([0x41, 0x00, 0xE8, 0x00]))

    assert data is not None
    assert data.power_watts == 232
    assert data.speed_kph is None


def test_power_only_buffer_with_speed_flag_misreported() -> None:
    # Bit 0 clear announces speed, but the buffer only has room for power.
    data = parse_indoor_bike_data(bytes([0x40, 0x00, 0xE8, 0x00]))

    assert data is not None
    assert data.power_watts == 232
    assert "speed_kph" not in data.to_dict()


def test_parse_indoor_bike_data_power_and_cadence() -> None:
    # Flags: cadence + power present. "More Data" is not set, so payload starts with
    # instantaneous speed (2 bytes) before cadence and power.
    payload = (
        struct.pack("<H", 0x0044)
        + struct.pack("<H", 3000)  # 30.00 km/h instantaneous speed
        + struct.pack("<H", 176)   # 88.0 rpm cadence (0.5 rpm units)
        + struct.pack("<h", 182)   # 182 W
    )

    data = parse_indoor_bike_data(payload)

    assert data is not None
    assert data.cadence_rpm == 88.0
    assert data.power_watts == 182
    assert data.speed_kph == 30.0
    assert data.heart_rate_bpm is None


def test_parse_indoor_bike_data_negative_power() -> None:
    # Set "More Data" so instantaneous speed is not present.
    payload = struct.pack("<H", 0x0041) + struct.pack("<h", -10)

    data = parse_indoor_bike_data(payload)

    assert data is not None
    assert data.cadence_rpm is None
    assert data.power_watts == -10


def test_parse_indoor_bike_data_fallback_when_speed_present_with_more_data_flag() -> None:
    # Device quirk: more_data is set but payload still includes instantaneous speed.
    payload = (
        struct.pack("<H", 0x0045)
        + struct.pack("<H", 2500)  # 25.00 km/h instantaneous speed
        + struct.pack("<H", 170)   # 85.0 rpm cadence
        + struct.pack("<h", 260)   # 260 W
    )

    data = parse_indoor_bike_data(payload)

    assert data is not None
    assert data.cadence_rpm == 85.0
    assert data.power_watts == 260


def test_skipped_fields_advance_offset() -> None:
    flags = 0x0002 | 0x0010 | 0x0020 | 0x0040 | 0x0100 | 0x0200
    payload = (
        struct.pack("<H", flags)
        + struct.pack("<H", 2500)      # speed
        + struct.pack("<H", 2400)      # average speed (skipped)
        + bytes([0x10, 0x27, 0x00])    # total distance (skipped)
        + struct.pack("<h", 12)        # resistance level (skipped)
        + struct.pack("<h", 210)       # power
        + bytes(5)                     # expended energy (skipped)
        + bytes([142])                 # heart rate
    )

    data = parse_indoor_bike_data(payload)

    assert data is not None
    assert data.to_dict() == {"power_watts": 210, "speed_kph": 25.0, "heart_rate_bpm": 142}


def test_truncated_payload_keeps_decoded_prefix() -> None:
    payload = struct.pack("<HHH", 0x0044, 2600, 180)  # power announced but cut off

    data = parse_indoor_bike_data(payload)

    assert data is not None
    assert data.speed_kph == 26.0
    assert data.cadence_rpm == 90.0
    assert data.power_watts is None


def test_truncated_payload_is_not_realigned_into_plausible_values() -> None:
    # 3.00 km/h and 90 rpm, power cut off. Read without speed the same bytes
    # would look like a plausible 150 rpm / 180 W sample.
    payload = struct.pack("<HHH", 0x0044, 300, 180)

    data = parse_indoor_bike_data(payload)

    assert data is not None
    assert data.to_dict() == {"speed_kph": 3.0, "cadence_rpm": 90.0}


def test_heart_rate_field_ignored_when_past_end() -> None:
    payload = struct.pack("<Hh", 0x0241, 150)

    data = parse_indoor_bike_data(payload)

    assert data is not None
    assert data.power_watts == 150
    assert data.heart_rate_bpm is None


def test_payload_shorter_than_flags_is_ignored() -> None:
    assert parse_indoor_bike_data(b"\x00") is None


def test_heart_rate_uint8_value() -> None:
    data = parse_heart_rate_measurement(bytes([0x00, 0x46]))

    assert data is not None
    assert data.heart_rate_bpm == 70
    assert data.to_dict() == {"heart_rate_bpm": 70}


def test_heart_rate_uint16_value() -> None:
    data = parse_heart_rate_measurement(bytes([0x01, 0x46, 0x00]))

    assert data is not None
    assert data.heart_rate_bpm == 70


def test_heart_rate_truncated_or_empty() -> None:
    assert parse_heart_rate_measurement(bytes([0x01, 0x46])) is None
    assert parse_heart_rate_measurement(b"") is None
