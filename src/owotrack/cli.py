"""Command line entry point for the owotrack receiver.

Commands:
- serve:    run the device handler with discovery and the 25ms update loop
- discover: send a discovery probe and print the announced data port
- simulate: stream a slowly spinning device to a running receiver
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from typing import Sequence

from .discovery import INFO_PORT, DiscoveryConfig, DiscoveryResponder, probe
from .handler import CalibrationRoutine, TrackingHandler, initialize_with_fallback
from .logger import SessionLogger
from .metrics import MetricsExporter
from .pose import CalibrationPhase, HeadsetPose
from .settings import SettingsStore
from .sim import SimulatedDevice
from .supervisor import ConnectionStatus, StatusChange

logger = logging.getLogger(__name__)


def _print_status_change(change: StatusChange) -> None:
    print(f"{change.message}: {change.previous.name} -> {change.current.name}", flush=True)


def run_serve(args: argparse.Namespace) -> int:
    store = SettingsStore(args.settings)
    try:
        settings = store.load()
    except ValueError as exc:
        logger.error("Invalid settings file %s: %s", args.settings, exc)
        return 2
    if args.port is not None:
        settings.port = args.port
    if args.info_port is not None:
        settings.info_port = args.info_port

    journal = SessionLogger(args.log_dir) if args.log_dir else None
    discovery = DiscoveryResponder(DiscoveryConfig(info_port=settings.info_port, data_port=settings.port))
    handler = TrackingHandler(
        settings=settings,
        store=store,
        discovery=discovery,
        journal=journal,
        on_status_change=_print_status_change,
    )
    handler.on_load()

    if journal is not None:
        journal.start_session(metadata={"addresses": handler.addresses, "port": handler.port})

    handler = initialize_with_fallback(handler, attempts=args.port_attempts)
    if handler.status.is_terminal:
        print(f"error: {handler.status.description} ({handler.status.name})", file=sys.stderr)
        handler.shutdown()
        if journal is not None:
            journal.stop_session()
        return 1

    print(f"Listening on {', '.join(handler.addresses)} port {handler.port}", flush=True)
    handler.start_update_loop()

    if args.calibrate is not None:
        routine = CalibrationRoutine(handler)
        routine.start(CalibrationPhase(f"calibrating_{args.calibrate}"))

    deadline = time.monotonic() + args.duration if args.duration is not None else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(args.print_interval)
            if handler.status == ConnectionStatus.OK:
                pose = handler.calculate_pose(HeadsetPose.identity())
                print(json.dumps(pose.to_dict()), flush=True)
    except KeyboardInterrupt:
        logger.info("Shutting down receiver")
    finally:
        if args.metrics_out:
            MetricsExporter.to_json(handler.get_status(), args.metrics_out)
        handler.shutdown()
        if journal is not None:
            journal.stop_session()

    return 0


def run_discover(args: argparse.Namespace) -> int:
    try:
        result = probe(args.host, args.info_port, timeout=args.timeout)
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    if result is None:
        print("No receiver answered", file=sys.stderr)
        return 1
    data_port, addr = result
    print(f"{addr[0]}:{data_port}")
    return 0


def run_simulate(args: argparse.Namespace) -> int:
    port = args.port
    with SimulatedDevice(host=args.host, port=port or 6969, seed=args.seed,
                         rate_hz=args.rate, angular_speed=args.angular_speed,
                         noise=args.noise) as device:
        if port is None:
            announced = device.discover(info_port=args.info_port)
            if announced is None:
                print("error: no receiver answered the discovery probe", file=sys.stderr)
                return 1
            device.port = announced
        logger.info("Streaming to %s:%d", device.host, device.port)

        device.start(duration=args.duration)
        try:
            device.join()
        except KeyboardInterrupt:
            logger.info("Stopping simulated device")
        print(f"sent {device.sent} packets")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="owotrack", description="owoTrack UDP receiver")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="cmd", required=True)

    serve_p = sub.add_parser("serve", help="Run the receiver")
    serve_p.add_argument("--port", type=int, default=None, help="Data port (default: from settings, 6969)")
    serve_p.add_argument("--info-port", type=int, default=None, help=f"Discovery port (default {INFO_PORT})")
    serve_p.add_argument("--port-attempts", type=int, default=10, help="Ports to try when the data port is taken")
    serve_p.add_argument("--settings", default="owotrack_settings.json", help="Settings JSON file")
    serve_p.add_argument("--log-dir", default=None, help="Write a session journal to this directory")
    serve_p.add_argument("--metrics-out", default=None, help="Write handler status and metrics JSON on exit")
    serve_p.add_argument("--duration", type=float, default=None, help="Stop after this many seconds")
    serve_p.add_argument("--print-interval", type=float, default=1.0, help="Seconds between pose prints")
    serve_p.add_argument("--calibrate", choices=["forward", "down"], default=None,
                         help="Run one calibration routine after startup")
    serve_p.set_defaults(func=run_serve)

    disc_p = sub.add_parser("discover", help="Probe for a receiver")
    disc_p.add_argument("--host", default="255.255.255.255", help="Probe address (default: broadcast)")
    disc_p.add_argument("--info-port", type=int, default=INFO_PORT, help=f"Discovery port (default {INFO_PORT})")
    disc_p.add_argument("--timeout", type=float, default=1.0, help="Seconds to wait for a reply")
    disc_p.set_defaults(func=run_discover)

    sim_p = sub.add_parser("simulate", help="Stream a simulated device")
    sim_p.add_argument("--host", default="127.0.0.1", help="Receiver address")
    sim_p.add_argument("--port", type=int, default=None, help="Data port (default: discover it)")
    sim_p.add_argument("--info-port", type=int, default=INFO_PORT, help="Discovery port used when --port is omitted")
    sim_p.add_argument("--rate", type=float, default=50.0, help="Samples per second")
    sim_p.add_argument("--angular-speed", type=float, default=0.5, help="Spin rate in rad/s")
    sim_p.add_argument("--noise", type=float, default=0.0, help="Gyro/accelerometer noise stddev")
    sim_p.add_argument("--seed", type=int, default=0, help="RNG seed")
    sim_p.add_argument("--duration", type=float, default=None, help="Stop after this many seconds")
    sim_p.set_defaults(func=run_simulate)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
