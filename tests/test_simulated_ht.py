from __future__ import annotations

import asyncio

from ergtrainer.ble.sim_adapter import SimulatedRadioAdapter
from ergtrainer.ble.telemetry import TelemetrySample
from ergtrainer.core.engine import TrainerEngine
from ergtrainer.core.state import SessionPhase


def test_simulated_scan_lists_trainer_and_heart_rate_monitor() -> None:
    async def _run() -> None:
        engine = TrainerEngine(simulate_ht=True)
        await engine.start_discovery()
        await asyncio.sleep(0.1)

        devices = engine.registry.snapshot()
        assert [d.kind.value for d in devices] == ["control-device", "heart-rate"]
        assert "Velox Sim HT" in devices[0].label

        await engine.shutdown()
        assert engine.registry.snapshot() == []

    asyncio.run(_run())


def test_simulated_erg_and_metrics() -> None:
    async def _run() -> None:
        engine = TrainerEngine(SimulatedRadioAdapter(autorun=True, tick_seconds=0.05))
        samples: list[TelemetrySample] = []
        engine.on("telemetry", samples.append)

        await engine.connect()
        await engine.connect(kind="heart-rate")
        await engine.start_session(200)
        await asyncio.sleep(0.6)

        power = [s.power_watts for s in samples if s.power_watts is not None]
        heart_rate = [s.heart_rate_bpm for s in samples if s.heart_rate_bpm is not None]
        assert len(power) >= 2
        assert max(power) > 100
        assert heart_rate
        assert engine.phase is SessionPhase.RUNNING

        await engine.stop_session()
        await engine.shutdown()

    asyncio.run(_run())
