"""Terminal CLI entrypoint for the ERG trainer core."""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from ergtrainer.ble.telemetry import TelemetrySample
from ergtrainer.core.config import EngineConfig
from ergtrainer.core.engine import TrainerEngine
from ergtrainer.core.events import StatusUpdate
from ergtrainer.core.registry import DeviceKind
from ergtrainer.core.state import SessionPhase
from ergtrainer.errors import TrainerError

logger = logging.getLogger(__name__)


@dataclass
class MetricsLine:
    power_watts: Optional[int] = None
    cadence_rpm: Optional[float] = None
    speed_kph: Optional[float] = None
    heart_rate_bpm: Optional[int] = None

    def update(self, sample: TelemetrySample) -> None:
        for key, value in sample.to_dict().items():
            setattr(self, key, value)

    def render(self, target_watts: int, phase: SessionPhase) -> str:
        power = f"{self.power_watts} W" if self.power_watts is not None else "N/A"
        cadence = f"{self.cadence_rpm:.1f} rpm" if self.cadence_rpm is not None else "N/A"
        speed = f"{self.speed_kph:.1f} km/h" if self.speed_kph is not None else "N/A"
        heart_rate = f"{self.heart_rate_bpm} bpm" if self.heart_rate_bpm is not None else "N/A"
        return (
            f"[{phase.value}] Target: {target_watts} W | Power: {power} | "
            f"Cadence: {cadence} | Speed: {speed} | HR: {heart_rate}"
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ERG trainer control (FTMS over BLE)")
    parser.add_argument("--scan", action="store_true", help="Scan BLE devices")
    parser.add_argument(
        "--scan-seconds",
        type=float,
        default=5.0,
        help="How long --scan listens for advertisements",
    )
    parser.add_argument(
        "--connect",
        nargs="?",
        const="auto",
        default=None,
        help="Connect to first FTMS device or the provided BLE address/name filter",
    )
    parser.add_argument(
        "--hr",
        default=None,
        help="Also connect a heart rate monitor by BLE address/name filter",
    )
    parser.add_argument("--erg", type=int, default=None, help="Start an ERG session at this target in watts")
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Auto-stop the ERG session after this many seconds",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=20.0,
        help="Seconds to search for a device before giving up",
    )
    parser.add_argument(
        "--no-pair",
        action="store_true",
        help="Do not request BLE pairing when connecting",
    )
    parser.add_argument(
        "--debug-ftms",
        action="store_true",
        help="Log raw FTMS payload/flags parsing for each notification",
    )
    parser.add_argument(
        "--debug-sim-ht",
        action="store_true",
        help="Simulate a home trainer (no BLE required) for debug/testing",
    )
    return parser


def _configure_logging(debug_ftms: bool) -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    if debug_ftms:
        logging.getLogger("ergtrainer").setLevel(logging.DEBUG)


def _print_status(status: StatusUpdate) -> None:
    if status.message:
        print(status.message)


async def run_scan(simulate_ht: bool, seconds: float) -> int:
    engine = TrainerEngine(simulate_ht=simulate_ht)
    try:
        await engine.start_discovery()
        await asyncio.sleep(seconds)
        devices = engine.registry.snapshot()
    finally:
        await engine.shutdown()

    if not devices:
        print("No BLE devices found")
        return 0

    for device in devices:
        rssi = device.rssi if device.rssi is not None else 0
        manufacturer = f" {device.manufacturer}" if device.manufacturer else ""
        print(f"{device.label:<32} {device.id} RSSI={rssi:>4} [{device.kind.value}]{manufacturer}")
    return 0


async def run_connect(
    connect_target: str,
    hr_target: Optional[str],
    erg_watts: Optional[int],
    duration: Optional[float],
    timeout: float,
    simulate_ht: bool,
    ble_pair: bool,
) -> int:
    engine = TrainerEngine(
        config=EngineConfig(scan_timeout=timeout, connect_timeout=timeout, ble_pair=ble_pair),
        simulate_ht=simulate_ht,
    )
    metrics = MetricsLine()
    engine.on("telemetry", metrics.update)
    engine.on("status", _print_status)

    try:
        selector = None if connect_target == "auto" else connect_target
        label = await engine.connect(selector, DeviceKind.CONTROL_DEVICE, timeout=timeout)
        print(f"Connected to {label}")
        if hr_target:
            hr_label = await engine.connect(hr_target, DeviceKind.HEART_RATE, timeout=timeout)
            print(f"Heart rate monitor: {hr_label}")

        if erg_watts is not None:
            await engine.start_session(erg_watts, duration)

        while engine.connections.control is not None:
            print(metrics.render(engine.target_watts, engine.phase))
            if erg_watts is not None and engine.phase is SessionPhase.STOPPED:
                break
            await asyncio.sleep(1)
    except TrainerError as exc:
        print(f"Error: {exc}")
        return 1
    finally:
        await engine.shutdown()
    return 0


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    _configure_logging(args.debug_ftms)

    if args.scan:
        return asyncio.run(run_scan(args.debug_sim_ht, args.scan_seconds))

    connect_target = args.connect
    if args.erg is not None and connect_target is None:
        connect_target = "auto"

    if connect_target is None:
        parser.print_help()
        return 1

    try:
        return asyncio.run(
            run_connect(
                connect_target,
                args.hr,
                args.erg,
                args.duration,
                args.timeout,
                args.debug_sim_ht,
                not args.no_pair,
            )
        )
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
