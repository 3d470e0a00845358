from __future__ import annotations

import asyncio

import pytest

from ergtrainer.ble.constants import HEART_RATE_MEASUREMENT_CHAR_UUID, INDOOR_BIKE_DATA_CHAR_UUID
from ergtrainer.ble.sim_adapter import (
    SIM_HRM_ID,
    SIM_TRAINER_ID,
    SimulatedRadioAdapter,
    sim_heart_rate_monitor,
    sim_trainer,
)
from ergtrainer.ble.telemetry import TelemetrySample
from ergtrainer.core.config import EngineConfig
from ergtrainer.core.engine import TrainerEngine
from ergtrainer.core.events import StatusUpdate
from ergtrainer.core.registry import DeviceKind
from ergtrainer.errors import ProtocolMismatch, ScanTimeout


def _engine(
    adapter: SimulatedRadioAdapter, scan_timeout: float = 1.0
) -> tuple[TrainerEngine, list[StatusUpdate]]:
    engine = TrainerEngine(adapter, config=EngineConfig(scan_timeout=scan_timeout))
    statuses: list[StatusUpdate] = []
    engine.on("status", statuses.append)
    return engine, statuses


def test_connect_scans_and_binds_first_trainer() -> None:
    async def _run() -> None:
        adapter = SimulatedRadioAdapter()
        engine, statuses = _engine(adapter)

        label = await engine.connect()

        assert label == "Velox Sim HT • 00:00:01"
        assert adapter.is_connected(SIM_TRAINER_ID)
        assert not adapter.is_connected(SIM_HRM_ID)
        assert adapter.written_opcodes() == [0x00]
        status = engine.status
        assert status.connected and status.controlling
        assert status.device_id == SIM_TRAINER_ID
        assert not status.scanning
        assert statuses[-1].message == "Trainer connected (Velox Sim HT • 00:00:01)"
        assert any(s.message == "Scanning for FTMS trainer" and s.scanning for s in statuses)

        await engine.shutdown()

    asyncio.run(_run())


def test_connect_by_known_id_stops_discovery() -> None:
    async def _run() -> None:
        adapter = SimulatedRadioAdapter()
        engine, _statuses = _engine(adapter)
        devices: list[list] = []
        engine.on("devices", devices.append)

        await engine.start_discovery()
        await asyncio.sleep(0)
        assert {d.id for d in devices[-1]} == {SIM_TRAINER_ID, SIM_HRM_ID}

        await engine.connect(SIM_TRAINER_ID)

        assert not engine.registry.scanning
        assert not adapter.scanning
        assert adapter.scan_starts == 1
        connected = [d for d in devices[-1] if d.connected]
        assert [d.id for d in connected] == [SIM_TRAINER_ID]

        await engine.shutdown()

    asyncio.run(_run())


def test_connect_by_name_filter() -> None:
    async def _run() -> None:
        adapter = SimulatedRadioAdapter(
            [
                sim_trainer("AA:00:00:00:00:01", "Zwift Hub"),
                sim_trainer("AA:00:00:00:00:02", "Elite Suito"),
            ]
        )
        engine, _statuses = _engine(adapter)

        label = await engine.connect("suito")

        assert label.startswith("Elite Suito")
        assert adapter.is_connected("AA:00:00:00:00:02")

        await engine.shutdown()

    asyncio.run(_run())


def test_connect_times_out_without_matching_device() -> None:
    async def _run() -> None:
        adapter = SimulatedRadioAdapter([sim_heart_rate_monitor()])
        engine, statuses = _engine(adapter, scan_timeout=0.1)

        with pytest.raises(ScanTimeout) as excinfo:
            await engine.connect()

        assert str(excinfo.value) == "Timed out searching for FTMS trainer"
        assert isinstance(excinfo.value, TimeoutError)
        assert not adapter.scanning
        assert statuses[-1].scanning is False
        assert engine.connections.control is None

    asyncio.run(_run())


def test_missing_characteristic_is_protocol_mismatch() -> None:
    async def _run() -> None:
        adapter = SimulatedRadioAdapter([sim_trainer(with_data=False)])
        engine, _statuses = _engine(adapter)

        with pytest.raises(ProtocolMismatch):
            await engine.connect()

        assert engine.connections.control is None
        assert not adapter.is_connected(SIM_TRAINER_ID)
        assert not engine.status.connected

    asyncio.run(_run())


def test_second_connect_reports_already_connected() -> None:
    async def _run() -> None:
        adapter = SimulatedRadioAdapter()
        engine, statuses = _engine(adapter)
        first = await engine.connect()
        writes = len(adapter.writes)

        second = await engine.connect()

        assert second == first
        assert len(adapter.writes) == writes
        assert statuses[-1].message == "Trainer already connected"

        await engine.shutdown()

    asyncio.run(_run())


def test_concurrent_connects_bind_once() -> None:
    async def _run() -> None:
        adapter = SimulatedRadioAdapter()
        engine, _statuses = _engine(adapter)

        labels = await asyncio.gather(engine.connect(), engine.connect())

        assert labels[0] == labels[1]
        assert adapter.written_opcodes().count(0x00) == 1

        await engine.shutdown()

    asyncio.run(_run())


def test_trainer_telemetry_is_forwarded() -> None:
    async def _run() -> None:
        adapter = SimulatedRadioAdapter()
        engine, _statuses = _engine(adapter)
        samples: list[TelemetrySample] = []
        engine.on("telemetry", samples.append)
        await engine.connect()

        adapter.notify(SIM_TRAINER_ID, INDOOR_BIKE_DATA_CHAR_UUID, bytes([0x41, 0x00, 0xE8, 0x00]))

        assert samples[-1].to_dict() == {"power_watts": 232}

        # Flags only, no fields: nothing to forward.
        adapter.notify(SIM_TRAINER_ID, INDOOR_BIKE_DATA_CHAR_UUID, bytes([0x01, 0x00]))
        assert len(samples) == 1

        await engine.shutdown()

    asyncio.run(_run())


def test_heart_rate_monitor_binds_independently() -> None:
    async def _run() -> None:
        adapter = SimulatedRadioAdapter()
        engine, statuses = _engine(adapter)
        samples: list[TelemetrySample] = []
        engine.on("telemetry", samples.append)
        await engine.connect()

        label = await engine.connect(kind="heart-rate")

        assert label.startswith("Sim HRM")
        assert engine.connections.heart_rate is not None
        adapter.notify(SIM_HRM_ID, HEART_RATE_MEASUREMENT_CHAR_UUID, bytes([0x00, 0x46]))
        assert samples[-1].heart_rate_bpm == 70

        adapter.drop_link(SIM_HRM_ID)

        assert statuses[-1].message.startswith("Heart rate monitor disconnected")
        assert engine.connections.heart_rate is None
        assert engine.status.connected
        assert adapter.is_connected(SIM_TRAINER_ID)

        await engine.shutdown()

    asyncio.run(_run())


def test_disconnect_clears_slot_and_registry_flag() -> None:
    async def _run() -> None:
        adapter = SimulatedRadioAdapter()
        engine, statuses = _engine(adapter)
        await engine.connect()

        await engine.disconnect(kind=DeviceKind.CONTROL_DEVICE)

        assert engine.connections.control is None
        assert not adapter.is_connected(SIM_TRAINER_ID)
        assert statuses[-1].message == "Trainer disconnected (Velox Sim HT • 00:00:01)"
        assert not statuses[-1].connected
        entry = engine.registry.get(SIM_TRAINER_ID)
        assert entry is not None
        assert [d.connected for d in engine.registry.snapshot() if d.id == SIM_TRAINER_ID] == [False]

        await engine.disconnect()

    asyncio.run(_run())
