from __future__ import annotations

import asyncio

import pytest

from ergtrainer.ble.telemetry import TelemetrySample
from ergtrainer.cli.main import MetricsLine, build_parser, run_connect, run_scan
from ergtrainer.core.state import SessionPhase


def test_parser_defaults_and_connect_const() -> None:
    parser = build_parser()

    args = parser.parse_args(["--connect", "--erg", "180", "--duration", "60"])
    assert args.connect == "auto"
    assert args.erg == 180
    assert args.duration == 60.0
    assert args.timeout == 20.0
    assert args.no_pair is False

    args = parser.parse_args(["--connect", "KICKR", "--hr", "Polar", "--no-pair"])
    assert args.connect == "KICKR"
    assert args.hr == "Polar"
    assert args.no_pair is True


def test_metrics_line_keeps_last_known_values() -> None:
    line = MetricsLine()
    line.update(TelemetrySample(power_watts=180, cadence_rpm=88.0))
    line.update(TelemetrySample(heart_rate_bpm=131))

    rendered = line.render(180, SessionPhase.RUNNING)

    assert rendered == (
        "[running] Target: 180 W | Power: 180 W | Cadence: 88.0 rpm | "
        "Speed: N/A | HR: 131 bpm"
    )


def test_simulated_scan_prints_devices(capsys: pytest.CaptureFixture[str]) -> None:
    assert asyncio.run(run_scan(simulate_ht=True, seconds=0.1)) == 0

    out = capsys.readouterr().out
    assert "Velox Sim HT" in out
    assert "[control-device]" in out
    assert "[heart-rate]" in out


def test_simulated_erg_run_stops_after_duration(capsys: pytest.CaptureFixture[str]) -> None:
    code = asyncio.run(
        run_connect(
            "auto",
            None,
            erg_watts=150,
            duration=1.0,
            timeout=5.0,
            simulate_ht=True,
            ble_pair=True,
        )
    )

    out = capsys.readouterr().out
    assert code == 0
    assert "Connected to Velox Sim HT" in out
    assert "ERG session running" in out
    assert "ERG session finished" in out


def test_connect_failure_returns_error_code(capsys: pytest.CaptureFixture[str]) -> None:
    code = asyncio.run(
        run_connect(
            "No Such Trainer",
            None,
            erg_watts=None,
            duration=None,
            timeout=0.2,
            simulate_ht=True,
            ble_pair=True,
        )
    )

    assert code == 1
    assert "Error: Timed out searching for FTMS trainer" in capsys.readouterr().out
