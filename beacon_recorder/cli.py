#!/usr/bin/env python3
#
# beacon-recorder - iBeacon Session Recorder
#
# Listens for BLE advertisements, picks out iBeacon frames that match a
# target UUID and signal-strength threshold, and records them into named
# sessions that are kept on disk between runs.
#

"""iBeacon recorder - scan for a target beacon and keep recording sessions."""

import argparse
import asyncio
import csv
import json
import logging
import platform
import signal
import sys
import threading
import time
from datetime import datetime
from typing import Dict, List, Optional, Tuple

try:
    from bleak import BleakScanner
    from bleak.backends.device import BLEDevice
    from bleak.backends.scanner import AdvertisementData
except ImportError:
    print("Error: 'bleak' is not installed.")
    print("Install dependencies with:  pip install beacon-recorder")
    sys.exit(1)

from .ibeacon import (
    _ENV_PATH_LOSS,
    accept,
    decode_ibeacon,
    estimate_distance,
    format_uuid,
    manufacturer_frames,
    validate_criteria,
)
from .models import BeaconAdvertisement, BeaconRead, FilterCriteria, Session
from .session import (
    SessionRecorder,
    SessionStateError,
    format_duration,
    session_summary,
)
from .storage import SessionStore, StorageError

log = logging.getLogger(__name__)

# Polling / timing constants
_SCAN_POLL_INTERVAL = 0.5         # seconds between poll cycles (continuous)
_TIMED_SCAN_POLL_INTERVAL = 0.1   # seconds between poll cycles (timed)

# Columns of the real-time scan log
_LOG_FIELDNAMES = [
    "timestamp", "session_id", "read_id", "address", "uuid", "major",
    "minor", "rssi", "tx_power", "est_distance",
]

# Columns of exported session reads
_FIELDNAMES = ["id", "uuid", "major", "minor", "rssi", "timestamp", "time"]

_BANNER = r"""
   ( ( ( o ) ) )   beacon-recorder
                   iBeacon Session Recorder
"""


def _timestamp() -> str:
    """Return an ISO 8601 timestamp with timezone offset."""
    return datetime.now().astimezone().strftime("%Y-%m-%dT%H:%M:%S%z")


def _format_ms(ms: Optional[int]) -> str:
    """Render a millisecond epoch timestamp as local date and time."""
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


class BeaconScanner:
    """Feeds bleak detections through decode and filter into a recorder."""

    def __init__(self, recorder: SessionRecorder, criteria: FilterCriteria,
                 timeout: float,
                 verbose: bool = False,
                 quiet: bool = False,
                 active: bool = False,
                 adapters: Optional[List[str]] = None,
                 log_file: Optional[str] = None,
                 environment: str = "free_space",
                 ref_rssi: Optional[int] = None):
        self.recorder = recorder
        self.criteria = criteria
        self.timeout = timeout
        self.running = True
        # iBeacon frames seen (any UUID) and frames accepted by the filter
        self.seen_count = 0
        self.accepted_count = 0
        self.rejected_count = 0
        self.unique_beacons: Dict[Tuple[int, int], int] = {}
        self.error: Optional[Exception] = None
        # Options
        self.verbose = verbose
        self.quiet = quiet
        self.active = active
        self.adapters = adapters
        self.environment = environment
        self.ref_rssi = ref_rssi
        # Real-time CSV log
        self.log_file = log_file
        self._log_writer = None
        self._log_fh = None
        self._session_id = ""
        # Thread safety for detection callback (multi-adapter)
        self._cb_lock = threading.Lock()

    def _distance(self, beacon: BeaconAdvertisement) -> Optional[float]:
        dist = estimate_distance(beacon.rssi, beacon.tx_power, self.environment,
                                 ref_rssi=self.ref_rssi)
        return round(dist, 2) if dist is not None else None

    def detection_callback(self, device: BLEDevice, adv: AdvertisementData):
        with self._cb_lock:
            self._detection_callback_inner(device, adv)

    def _detection_callback_inner(self, device: BLEDevice,
                                  adv: AdvertisementData):
        for frame in manufacturer_frames(adv.manufacturer_data):
            beacon = decode_ibeacon(frame, adv.rssi)
            if beacon is None:
                continue
            self.seen_count += 1
            if not accept(beacon, self.criteria):
                self.rejected_count += 1
                if self.verbose and not self.quiet:
                    print(f"  [-] {device.address}  {beacon.uuid}  "
                          f"{beacon.major}/{beacon.minor}  {beacon.rssi} dBm"
                          f"  (filtered)")
                continue
            self._record_beacon(device, beacon)

    def _record_beacon(self, device: BLEDevice, beacon: BeaconAdvertisement):
        # A detection racing the end of the scan is dropped
        if not self.running:
            return

        read = BeaconRead.from_advertisement(beacon)
        try:
            self.recorder.record(read)
        except (StorageError, SessionStateError, ValueError) as e:
            self.error = e
            print(f"Error: could not record beacon read: {e}")
            self.stop()
            return

        self.accepted_count += 1
        key = (beacon.major, beacon.minor)
        times_seen = self.unique_beacons.get(key, 0) + 1
        self.unique_beacons[key] = times_seen
        dist = self._distance(beacon)

        if self._log_writer is not None:
            self._log_writer.writerow({
                "timestamp": _timestamp(),
                "session_id": self._session_id,
                "read_id": read.id,
                "address": device.address,
                "uuid": read.uuid,
                "major": read.major,
                "minor": read.minor,
                "rssi": read.rssi,
                "tx_power": beacon.tx_power if beacon.tx_power is not None else "",
                "est_distance": dist if dist is not None else "",
            })
            self._log_fh.flush()

        if not self.quiet:
            self._print_read(device, beacon, read, times_seen, dist)

    def _print_read(self, device: BLEDevice, beacon: BeaconAdvertisement,
                    read: BeaconRead, times_seen: int,
                    dist: Optional[float]):
        print(f"\n{'='*60}")
        print(f"  BEACON READ #{self.accepted_count}  —  "
              f"{beacon.major}/{beacon.minor} seen {times_seen}x")
        print(f"{'='*60}")
        print(f"  Address      : {device.address}")
        print(f"  UUID         : {beacon.uuid}")
        print(f"  Major / Minor: {beacon.major} / {beacon.minor}")
        print(f"  RSSI         : {beacon.rssi} dBm")
        if self.verbose:
            tx = beacon.tx_power
            print(f"  TX Power     : {tx if tx is not None else 'N/A'} dBm")
            print(f"  Read ID      : {read.id}")
        if dist is not None:
            print(f"  Est. Distance: ~{dist:.1f} m")
        print(f"  Timestamp    : {time.strftime('%H:%M:%S')}")
        print(f"{'='*60}")

    # ------------------------------------------------------------------
    # Main scan flow
    # ------------------------------------------------------------------

    async def scan(self) -> float:
        # Install signal handlers inside the async context for clean
        # shutdown without the signal-handler / KeyboardInterrupt race.
        loop = asyncio.get_running_loop()
        if platform.system() != "Windows":
            loop.add_signal_handler(signal.SIGINT, self.stop)
            loop.add_signal_handler(signal.SIGTERM, self.stop)

        session = self.recorder.current
        self._session_id = session.id if session is not None else ""

        # Open real-time CSV log
        if self.log_file:
            self._log_fh = open(self.log_file, "a", newline="")
            self._log_writer = csv.DictWriter(self._log_fh,
                                              fieldnames=_LOG_FIELDNAMES)
            if self._log_fh.tell() == 0:
                self._log_writer.writeheader()
            self._log_fh.flush()

        elapsed = 0.0
        try:
            elapsed = await self._scan_loop()
        finally:
            if self._log_fh is not None:
                self._log_fh.close()
                self._log_fh = None
                self._log_writer = None

        if not self.quiet:
            self._print_summary(elapsed)
        return elapsed

    async def _scan_loop(self) -> float:
        """Run the BLE scanner and return elapsed seconds."""
        if not self.quiet:
            self._print_header()

        scanner_kwargs: dict = {"detection_callback": self.detection_callback}
        if self.active:
            scanner_kwargs["scanning_mode"] = "active"

        # Multi-adapter support
        scanners = []
        if self.adapters:
            for adapter in self.adapters:
                kw = {**scanner_kwargs, "adapter": adapter}
                scanners.append(BleakScanner(**kw))
        else:
            scanners.append(BleakScanner(**scanner_kwargs))

        for s in scanners:
            await s.start()

        start = time.time()
        try:
            if self.timeout == float('inf'):
                while self.running:
                    await asyncio.sleep(_SCAN_POLL_INTERVAL)
            else:
                while self.running and (time.time() - start) < self.timeout:
                    await asyncio.sleep(_TIMED_SCAN_POLL_INTERVAL)
        except asyncio.CancelledError:
            pass
        finally:
            self.running = False
            for s in scanners:
                await s.stop()

        return time.time() - start

    def _print_header(self):
        """Print scan configuration banner."""
        print(_BANNER)
        session = self.recorder.current
        if session is not None:
            print(f"Session: {session.name}  ({session.id})")
            if session.beacon_reads:
                print(f"  Resuming with {len(session.beacon_reads)} "
                      f"read(s) already recorded")
        print(f"Target UUID: {self.criteria.target_uuid}")
        print(f"Min RSSI: {self.criteria.rssi_threshold} dBm")
        scan_mode = "active" if self.active else "passive"
        print(f"Scanning: {scan_mode}")
        if self.active and platform.system() == "Darwin":
            print("  Note: CoreBluetooth always scans actively regardless of this flag")
        if self.environment != "free_space":
            print(f"Environment: {self.environment} "
                  f"(n={_ENV_PATH_LOSS[self.environment]})")
        if self.log_file:
            print(f"Live log: {self.log_file}")
        if self.adapters:
            print(f"Adapters: {', '.join(self.adapters)}")
        if self.timeout == float('inf'):
            print("Running continuously  |  Press Ctrl+C to stop")
        else:
            print(f"Timeout: {self.timeout}s  |  Press Ctrl+C to stop")
        print(f"{'—'*60}")

    def _print_summary(self, elapsed: float):
        """Print scan summary statistics."""
        print(f"\n{'—'*60}")
        print(f"Scan complete — {elapsed:.1f}s elapsed")
        print(f"  iBeacon frames   : {self.seen_count}")
        print(f"  Reads recorded   : {self.accepted_count}")
        print(f"  Filtered out     : {self.rejected_count}")
        print(f"  Distinct beacons : {len(self.unique_beacons)}")
        if self.unique_beacons:
            print(f"\n  {'Major/Minor':<20} {'Reads':>6}")
            print(f"  {'—'*20} {'—'*6}")
            for (major, minor), count in sorted(self.unique_beacons.items(),
                                                key=lambda x: x[1], reverse=True):
                print(f"  {f'{major}/{minor}':<20} {count:>5}x")
        if self.log_file:
            print(f"  Live log written to {self.log_file}")

    def stop(self):
        if not self.quiet and self.running:
            print("\nStopping scan...")
        self.running = False


# ----------------------------------------------------------------------
# Output helpers
# ----------------------------------------------------------------------

def _read_rows(session: Session) -> List[dict]:
    rows = []
    for read in session.beacon_reads:
        row = read.to_dict()
        row["time"] = datetime.fromtimestamp(read.timestamp / 1000) \
            .astimezone().strftime("%Y-%m-%dT%H:%M:%S%z")
        rows.append(row)
    return rows


def _write_output(session: Session, output_format: str,
                  filename: Optional[str] = None) -> str:
    """Write a session's reads as json / jsonl / csv.  Returns the target."""
    records = _read_rows(session)
    filename = filename or f"{session.id}.{output_format}"

    # Support writing to stdout with --output-file -
    if filename == "-":
        if output_format == "json":
            sys.stdout.write(json.dumps(records, indent=2) + "\n")
        elif output_format == "jsonl":
            for record in records:
                sys.stdout.write(json.dumps(record) + "\n")
        elif output_format == "csv":
            writer = csv.DictWriter(sys.stdout, fieldnames=_FIELDNAMES)
            writer.writeheader()
            writer.writerows(records)
        return filename

    if output_format == "json":
        with open(filename, "w") as f:
            json.dump(records, f, indent=2)
    elif output_format == "jsonl":
        with open(filename, "w") as f:
            for record in records:
                f.write(json.dumps(record) + "\n")
    elif output_format == "csv":
        with open(filename, "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=_FIELDNAMES)
            writer.writeheader()
            writer.writerows(records)
    return filename


def _print_session(session: Session, show_reads: bool = False):
    summary = session_summary(session)
    print(f"Session      : {session.name}")
    print(f"  ID         : {session.id}")
    print(f"  Started    : {_format_ms(session.start_time)}")
    if session.end_time is not None:
        print(f"  Ended      : {_format_ms(session.end_time)}")
    else:
        print("  Ended      : (in progress)")
    print(f"  Duration   : {format_duration(summary['duration_ms'])}")
    print(f"  Reads      : {summary['reads']}")
    print(f"  Beacons    : {summary['beacons']}")
    if summary["avg_rssi"] is not None:
        print(f"  Avg RSSI   : {summary['avg_rssi']} dBm")
    if show_reads and session.beacon_reads:
        print(f"\n  {'Time':<10} {'Major':>6} {'Minor':>6} {'RSSI':>5}  UUID")
        print(f"  {'—'*10} {'—'*6} {'—'*6} {'—'*5}  {'—'*36}")
        for read in session.beacon_reads:
            when = datetime.fromtimestamp(read.timestamp / 1000).strftime("%H:%M:%S")
            print(f"  {when:<10} {read.major:>6} {read.minor:>6} "
                  f"{read.rssi:>5}  {read.uuid}")


def _confirm(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _criteria_from_args(args, base: FilterCriteria) -> FilterCriteria:
    """Apply --uuid / --min-rssi on top of *base*.  Raises ValueError."""
    uuid = base.target_uuid
    threshold = base.rssi_threshold
    if args.uuid is not None:
        uuid = format_uuid(args.uuid)
    if args.min_rssi is not None:
        threshold = args.min_rssi
    return validate_criteria(FilterCriteria(uuid, threshold))


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

def cmd_scan(args, store: SessionStore, parser) -> int:
    try:
        criteria = _criteria_from_args(args, store.load_criteria())
    except ValueError as e:
        parser.error(str(e))

    adapters = None
    if args.adapters:
        adapters = [a.strip() for a in args.adapters.split(",") if a.strip()]
        if not adapters:
            parser.error("--adapters requires at least one adapter name")

    recorder = SessionRecorder(store)
    session = recorder.resume()
    if session is None:
        session = recorder.start(args.name)
    elif args.name and not args.quiet:
        print(f"  Note: resuming '{session.name}'; --name ignored")

    scanner = BeaconScanner(
        recorder, criteria,
        timeout=args.timeout if args.timeout is not None else float('inf'),
        verbose=args.verbose,
        quiet=args.quiet,
        active=args.active,
        adapters=adapters,
        log_file=args.log,
        environment=args.environment,
        ref_rssi=args.ref_rssi,
    )

    try:
        asyncio.run(scanner.scan())
    except KeyboardInterrupt:
        # Covers Windows where add_signal_handler is unavailable.
        scanner.stop()

    if scanner.error is not None:
        return 1

    if args.save is not None:
        saved = recorder.save(args.save)
        print(f"  Session saved as '{saved.name}' "
              f"({len(saved.beacon_reads)} reads)")
    elif not args.quiet:
        print("  Session still in progress — use 'save NAME' to keep it "
              "or 'discard' to drop it")
    return 0


def cmd_status(args, store: SessionStore, parser) -> int:
    session = store.load_current_session()
    if session is None:
        print("No session in progress.")
        return 0
    _print_session(session, show_reads=args.reads)
    return 0


def cmd_save(args, store: SessionStore, parser) -> int:
    recorder = SessionRecorder(store)
    if recorder.resume() is None:
        raise SessionStateError("Cannot save: no active session")
    saved = recorder.save(args.name)
    print(f"Session saved as '{saved.name}' ({len(saved.beacon_reads)} reads)")
    return 0


def cmd_discard(args, store: SessionStore, parser) -> int:
    recorder = SessionRecorder(store)
    session = recorder.resume()
    if session is None:
        raise SessionStateError("Cannot discard: no active session")
    if not args.yes and not _confirm(
            f"Discard '{session.name}' and its {len(session.beacon_reads)} "
            f"read(s)? This cannot be undone."):
        print("Aborted.")
        return 1
    recorder.discard()
    print(f"Discarded session '{session.name}'.")
    return 0


def cmd_sessions(args, store: SessionStore, parser) -> int:
    sessions = store.list_saved_sessions()
    if not sessions:
        print("No saved sessions.")
        return 0
    print(f"  {'ID':<32} {'Name':<28} {'Ended':<19} {'Reads':>6} {'Dur':>7}")
    print(f"  {'—'*32} {'—'*28} {'—'*19} {'—'*6} {'—'*7}")
    for s in sessions:
        summary = session_summary(s)
        print(f"  {s.id:<32} {s.name[:28]:<28} {_format_ms(s.end_time):<19} "
              f"{summary['reads']:>6} {format_duration(summary['duration_ms']):>7}")
    return 0


def _lookup_saved(store: SessionStore, session_id: str) -> Session:
    session = store.get_saved_session(session_id)
    if session is None:
        print(f"Error: no saved session matches '{session_id}'")
        sys.exit(1)
    return session


def cmd_show(args, store: SessionStore, parser) -> int:
    _print_session(_lookup_saved(store, args.id), show_reads=True)
    return 0


def cmd_delete(args, store: SessionStore, parser) -> int:
    session = _lookup_saved(store, args.id)
    if not args.yes and not _confirm(
            f"Delete '{session.name}'? This cannot be undone."):
        print("Aborted.")
        return 1
    store.delete_saved_session(session.id)
    print(f"Deleted session '{session.name}'.")
    return 0


def cmd_export(args, store: SessionStore, parser) -> int:
    session = _lookup_saved(store, args.id)
    target = _write_output(session, args.output, args.output_file)
    if target != "-":
        print(f"  Results written to {target}")
    return 0


def cmd_settings(args, store: SessionStore, parser) -> int:
    if args.reset:
        criteria = store.save_criteria(FilterCriteria())
        print("Settings reset to defaults.")
    elif args.uuid is not None or args.min_rssi is not None:
        try:
            criteria = _criteria_from_args(args, store.load_criteria())
        except ValueError as e:
            parser.error(str(e))
        criteria = store.save_criteria(criteria)
        print("Settings saved.")
    else:
        criteria = store.load_criteria()
    print(f"  Target UUID    : {criteria.target_uuid}")
    print(f"  RSSI threshold : {criteria.rssi_threshold} dBm")
    return 0


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="beacon-recorder",
        description="iBeacon recorder — scan for a target beacon and keep "
                    "recording sessions"
    )
    parser.add_argument(
        "--data-dir", type=str, default=None, metavar="PATH",
        help="Directory holding settings and sessions "
             "(default: $BEACON_RECORDER_DIR or ~/.beacon-recorder)"
    )

    # Verbosity
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        "-v", "--verbose", action="store_true",
        help="Verbose mode — show filtered frames and debug logging"
    )
    verbosity.add_argument(
        "-q", "--quiet", action="store_true",
        help="Quiet mode — suppress per-read output"
    )

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    # scan
    p = sub.add_parser("scan", help="Scan and record into the current session")
    p.add_argument(
        "-t", "--timeout", type=float, default=None,
        help="Scan timeout in seconds (default: run until Ctrl+C)"
    )
    p.add_argument(
        "--name", type=str, default=None,
        help="Name for a newly started session (default: date and time)"
    )
    p.add_argument(
        "--save", type=str, default=None, metavar="NAME",
        help="Save the session under NAME when the scan ends"
    )
    p.add_argument(
        "--uuid", type=str, default=None,
        help="Target iBeacon UUID for this scan (overrides settings)"
    )
    p.add_argument(
        "--min-rssi", type=int, default=None, metavar="DBM",
        help="Minimum RSSI for this scan (overrides settings)"
    )
    p.add_argument(
        "--log", type=str, default=None, metavar="FILE",
        help="Append accepted reads to a CSV file in real time"
    )
    p.add_argument(
        "--active", action="store_true",
        help="Use active scanning (default: passive)"
    )
    p.add_argument(
        "--environment", choices=["free_space", "indoor", "outdoor"],
        default="free_space",
        help="Environment preset for distance estimation path-loss exponent: "
             "free_space (n=2.0), outdoor (n=2.2), indoor (n=3.0). "
             "Default: free_space"
    )
    p.add_argument(
        "--ref-rssi", type=int, default=None, metavar="DBM",
        help="Calibrated RSSI (dBm) at 1 metre, used instead of the "
             "beacon's advertised measured power"
    )
    p.add_argument(
        "--adapters", type=str, default=None, metavar="LIST",
        help="Comma-separated Bluetooth adapter names to scan with "
             "(e.g. hci0,hci1 — Linux only)"
    )
    p.set_defaults(func=cmd_scan)

    p = sub.add_parser("status", help="Show the session in progress")
    p.add_argument("--reads", action="store_true", help="List every read")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("save", help="Finalize the session in progress")
    p.add_argument("name", help="Final session name")
    p.set_defaults(func=cmd_save)

    p = sub.add_parser("discard", help="Drop the session in progress")
    p.add_argument("-y", "--yes", action="store_true",
                   help="Do not ask for confirmation")
    p.set_defaults(func=cmd_discard)

    p = sub.add_parser("sessions", help="List saved sessions")
    p.set_defaults(func=cmd_sessions)

    p = sub.add_parser("show", help="Show a saved session and its reads")
    p.add_argument("id", help="Session id (or unique prefix)")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("delete", help="Delete a saved session")
    p.add_argument("id", help="Session id (or unique prefix)")
    p.add_argument("-y", "--yes", action="store_true",
                   help="Do not ask for confirmation")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("export", help="Write a saved session's reads to a file")
    p.add_argument("id", help="Session id (or unique prefix)")
    p.add_argument(
        "--output", choices=["csv", "json", "jsonl"], default="csv",
        help="Output format (default: csv)"
    )
    p.add_argument(
        "-o", "--output-file", type=str, default=None, metavar="FILE",
        help="Output file path (default: <session id>.<format>; "
             "use - for stdout)"
    )
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("settings", help="Show or change filter settings")
    p.add_argument("--uuid", type=str, default=None,
                   help="Target iBeacon UUID (with or without hyphens)")
    p.add_argument("--min-rssi", type=int, default=None, metavar="DBM",
                   help="RSSI threshold, -100 to 0 dBm")
    p.add_argument("--reset", action="store_true",
                   help="Restore the default UUID and threshold")
    p.set_defaults(func=cmd_settings)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        print(_BANNER)
        parser.print_help()
        return 0

    store = SessionStore(args.data_dir)
    try:
        return args.func(args, store, parser)
    except SessionStateError as e:
        print(f"Error: {e}")
        return 1
    except StorageError as e:
        log.debug("Storage failure", exc_info=True)
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
