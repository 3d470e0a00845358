from __future__ import annotations

import asyncio
import struct

import pytest

from ergtrainer.ble.constants import (
    OP_REQUEST_CONTROL,
    OP_SET_TARGET_POWER,
    expand_uuid16,
    normalize_uuid,
)
from ergtrainer.ble.protocol import (
    ControlProtocol,
    clamp_target_watts,
    decode_set_target_power,
    describe_machine_status,
    encode_set_target_power,
    parse_control_point_response,
)
from ergtrainer.ble.sim_adapter import SimulatedRadioAdapter
from ergtrainer.core.state import BoundDevice
from ergtrainer.errors import CommandRejected, NotReady


def test_short_uuid_expands_to_base_form() -> None:
    assert expand_uuid16(0x1826) == "00001826-0000-1000-8000-00805f9b34fb"
    assert normalize_uuid("2AD9") == "00002ad9-0000-1000-8000-00805f9b34fb"
    assert normalize_uuid("00002AD2-0000-1000-8000-00805F9B34FB") == (
        "00002ad2-0000-1000-8000-00805f9b34fb"
    )


def test_clamp_target_watts() -> None:
    assert clamp_target_watts(-5) == 0
    assert clamp_target_watts(0) == 0
    assert clamp_target_watts(199.6) == 200
    assert clamp_target_watts(2500) == 2500
    assert clamp_target_watts(9000) == 2500
    assert clamp_target_watts(400, max_watts=300) == 300


def test_clamp_rounds_halves_up() -> None:
    assert [clamp_target_watts(w) for w in (100.5, 2.5, 150.5)] == [101, 3, 151]
    assert clamp_target_watts(100.49) == 100
    assert clamp_target_watts(-0.5) == 0
    assert clamp_target_watts(2499.5) == 2500


def test_set_target_power_encoding() -> None:
    assert encode_set_target_power(200) == bytes([0x05, 0xC8, 0x00])
    assert encode_set_target_power(2500) == bytes([0x05]) + struct.pack("<h", 2500)


def test_set_target_power_survives_encoding_for_whole_range() -> None:
    for watts in range(0, 2501):
        assert decode_set_target_power(encode_set_target_power(watts)) == watts


def test_decode_rejects_other_opcodes() -> None:
    with pytest.raises(ValueError):
        decode_set_target_power(bytes([0x07]))


def test_control_point_response() -> None:
    response = parse_control_point_response(bytes([0x80, OP_SET_TARGET_POWER, 0x01]))
    assert response is not None
    assert response.request_opcode == OP_SET_TARGET_POWER
    assert response.succeeded

    failed = parse_control_point_response(bytes([0x80, OP_SET_TARGET_POWER, 0x03]))
    assert failed is not None
    assert not failed.succeeded

    assert parse_control_point_response(bytes([0x05, 0x01])) is None


def test_rejection_message_uses_hex_codes() -> None:
    assert str(CommandRejected(0x05, 0x03)) == (
        "Control point response for opcode 0x5 returned status 0x3"
    )


def test_machine_status_descriptions() -> None:
    assert describe_machine_status(bytes([0x08]) + struct.pack("<h", 180)) == (
        "Trainer target power changed to 180W"
    )
    assert describe_machine_status(bytes([0x14])) == (
        "Trainer acknowledged simulation parameter change"
    )
    assert describe_machine_status(bytes([0xFF])) == "Trainer revoked control permission"
    assert describe_machine_status(bytes([0x42])) is None
    assert describe_machine_status(b"") is None


def test_rejected_request_control_clears_controlling_flag() -> None:
    protocol = ControlProtocol(SimulatedRadioAdapter(peripherals=[]))
    device = BoundDevice(
        peripheral_id="AA", label="Trainer", control_point_uuid="cp", controlling=True
    )

    message = protocol.handle_control_point(device, bytes([0x80, OP_REQUEST_CONTROL, 0x05]))

    assert message == "Control point response for opcode 0x0 returned status 0x5"
    assert device.controlling is False
    assert protocol.handle_control_point(device, bytes([0x80, 0x07, 0x01])) is None


def test_send_requires_active_control_point() -> None:
    async def _run() -> None:
        protocol = ControlProtocol(SimulatedRadioAdapter(peripherals=[]))
        device = BoundDevice(peripheral_id="AA", label="Trainer")
        with pytest.raises(NotReady):
            await protocol.set_target_power(device, 100)

    asyncio.run(_run())
