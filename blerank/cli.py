#!/usr/bin/env python3
#
# blerank - Bluetooth Low Energy (BLE) device ranking scanner
#
# A BLE scanner that smooths each device's noisy RSSI over a short sliding
# window, keeps every discovered device in a deterministic strongest-first
# order, and keeps the live list readable while that order changes.
#

"""Bluetooth LE scanner - live, smoothed, strongest-first device list."""

import argparse
import asyncio
import csv
import json
import logging
import os
import platform
import signal
import sys
import time
from datetime import datetime
from typing import List, Optional

try:
    from bleak import BleakScanner
    from bleak.backends.device import BLEDevice
    from bleak.backends.scanner import AdvertisementData
    from bleak.exc import BleakError
except ImportError:
    print("Error: 'bleak' is not installed.")
    print("Install dependencies with:  pip install blerank")
    sys.exit(1)

_HAS_CURSES = False
try:
    import curses
    _HAS_CURSES = True
except ImportError:
    pass

from blerank.anchor import ViewState
from blerank.device import HISTORY_SIZE
from blerank.gui import _HAS_FLASK, GuiServer
from blerank.session import CycleResult, Observation, ObservationInbox, ScanSession
from blerank.view import (
    ListViewport,
    device_payload,
    display_name,
    format_rssi,
    signal_bar,
)

_LOGGER = logging.getLogger(__name__)

# Polling / timing constants
_TUI_REFRESH_INTERVAL = 0.1       # seconds between TUI redraws / key polls
_SCAN_POLL_INTERVAL = 0.5         # seconds between poll cycles (continuous)
_TIMED_SCAN_POLL_INTERVAL = 0.1   # seconds between poll cycles (timed)

# Rows used by the TUI for header, settings, blank line, column header, footer
_TUI_CHROME_ROWS = 5

_ENV_WINDOW = "BLERANK_WINDOW"

_FIELDNAMES = [
    "rank", "address", "name", "rssi", "smoothed_rssi", "samples", "history",
]

_LOG_FIELDNAMES = [
    "timestamp", "address", "name", "rssi", "smoothed_rssi", "samples", "rank",
]

_BANNER = r"""
  _     _                          _
 | |__ | | ___ _ __ __ _ _ __ | | __
 | '_ \| |/ _ \ '__/ _` | '_ \| |/ /
 | |_) | |  __/ | | (_| | | | |   <
 |_.__/|_|\___|_|  \__,_|_| |_|_|\_\
   Smoothed, ranked BLE device list
"""


def _timestamp() -> str:
    """Return an ISO 8601 timestamp with timezone offset."""
    return datetime.now().astimezone().strftime("%Y-%m-%dT%H:%M:%S%z")


class BLEScanner:
    def __init__(self, timeout: float,
                 output_format: Optional[str] = None,
                 output_file: Optional[str] = None,
                 verbose: bool = False,
                 quiet: bool = False,
                 history_size: int = HISTORY_SIZE,
                 keep_known_name: bool = True,
                 active: bool = False,
                 log_file: Optional[str] = None,
                 tui: bool = False,
                 adapters: Optional[List[str]] = None,
                 name_filter: Optional[str] = None,
                 gui: bool = False,
                 gui_port: int = 5000):
        self.timeout = timeout
        self.seen_count = 0
        self.running = True
        # Core state: registry + scroll anchor, mutated only by the poll loop
        self.session = ScanSession(history_size=history_size,
                                   keep_known_name=keep_known_name)
        self.inbox = ObservationInbox()
        # Options
        self.verbose = verbose
        self.quiet = quiet
        self.history_size = history_size
        self.keep_known_name = keep_known_name
        self.output_format = output_format
        self.output_file = output_file
        self.active = active
        self.name_filter = name_filter
        # Real-time CSV log
        self.log_file = log_file
        self._log_writer = None
        self._log_fh = None
        # TUI mode
        self.tui = tui
        self.viewport = ListViewport()
        self._tui_screen = None
        self._tui_start = 0.0
        # Multi-adapter
        self.adapters = adapters
        # GUI mode
        self.gui = gui
        self.gui_port = gui_port
        self._gui_server = None

    # ------------------------------------------------------------------
    # Detection / processing
    # ------------------------------------------------------------------

    def detection_callback(self, device: BLEDevice, adv: AdvertisementData):
        """Queue one advertisement; called from bleak, possibly per adapter."""
        if self.name_filter is not None:
            name = device.name or ""
            if self.name_filter.lower() not in name.lower():
                return
        addr = (device.address or "").upper()
        self.inbox.put(Observation(addr, device.name, adv.rssi))

    def _view_state(self) -> ViewState:
        """Ask the active presentation whether row 0 is on screen."""
        if self.tui:
            return self.viewport.view_state()
        if self.gui and self._gui_server is not None:
            return self._gui_server.view_state()
        return ViewState.hidden()

    def _process_pending(self) -> int:
        """Run one ingest cycle per queued observation, in arrival order.

        The browser gets a single snapshot per call: the latest ranking,
        with a scroll-to-top request if any cycle in the batch asked for one.
        """
        processed = 0
        latest: Optional[CycleResult] = None
        scroll_to_top = False
        for obs in self.inbox.drain():
            is_new = bool(obs.address) and obs.address not in self.session.registry
            result = self.session.process(obs, self._view_state())
            if result is None:
                continue
            processed += 1
            self.seen_count += 1
            self._publish(result, is_new)
            latest = result
            scroll_to_top = scroll_to_top or result.scroll_to_top
        if latest is not None and self.gui and self._gui_server is not None:
            self._gui_server.emit_snapshot(
                [device_payload(r, i + 1) for i, r in enumerate(latest.snapshot)],
                scroll_to_top=scroll_to_top)
        return processed

    def _publish(self, result: CycleResult, is_new: bool):
        """Hand a cycle result to the log and the active presentation."""
        if self._log_writer is not None:
            record = result.changed
            self._log_writer.writerow({
                "timestamp": _timestamp(),
                "address": record.address,
                "name": display_name(record.name),
                "rssi": record.current_reading,
                "smoothed_rssi": round(record.smoothed_value, 2),
                "samples": record.samples,
                "rank": result.rank + 1,
            })
            self._log_fh.flush()

        if self.tui:
            self.viewport.apply(result.snapshot, result.scroll_to_top)
        elif not self.gui and not self.quiet and (is_new or self.verbose):
            if is_new:
                label = f"DEVICE #{len(self.session.registry)}"
            else:
                label = f"UPDATE  —  {result.changed.samples} readings in window"
            self._print_device(result, label)

    def _print_device(self, result: CycleResult, label: str):
        record = result.changed
        print(f"\n{'='*60}")
        print(f"  {label}")
        print(f"{'='*60}")
        print(f"  Address      : {record.address}")
        print(f"  Name         : {display_name(record.name)}")
        if record.samples > 1:
            print(f"  RSSI         : {record.current_reading} dBm  "
                  f"(avg: {format_rssi(record.smoothed_value)} over "
                  f"{record.samples} readings)")
        else:
            print(f"  RSSI         : {record.current_reading} dBm")
        print(f"  Rank         : {result.rank + 1} of {len(result.snapshot)}")
        print(f"  Timestamp    : {time.strftime('%H:%M:%S')}")
        print(f"{'='*60}")

    # ------------------------------------------------------------------
    # TUI (curses)
    # ------------------------------------------------------------------

    def _handle_key(self, key: int):
        """Apply one keypress to the TUI viewport."""
        if key == curses.KEY_UP:
            self.viewport.scroll(-1)
        elif key == curses.KEY_DOWN:
            self.viewport.scroll(1)
        elif key == curses.KEY_PPAGE:
            self.viewport.page(-1)
        elif key == curses.KEY_NPAGE:
            self.viewport.page(1)
        elif key == curses.KEY_HOME:
            self.viewport.home()
        elif key == curses.KEY_END:
            self.viewport.end()
        elif key in (ord("q"), ord("Q")):
            self.stop()

    def _read_keys(self, screen):
        while True:
            key = screen.getch()
            if key == -1:
                return
            self._handle_key(key)

    def _redraw_tui(self, screen):
        """Redraw the TUI live list."""
        try:
            screen.erase()
            h, w = screen.getmaxyx()
            self.viewport.resize(h - _TUI_CHROME_ROWS)

            elapsed = time.time() - self._tui_start
            header = (f" blerank | Devices: {len(self.session.registry)}"
                      f"  Detections: {self.seen_count}"
                      f"  Elapsed: {elapsed:.0f}s")
            screen.addnstr(0, 0, header.ljust(w - 1), w - 1,
                           curses.A_BOLD | curses.A_REVERSE)

            settings = f" {'active' if self.active else 'passive'}"
            settings += f" | window: {self.history_size}"
            if not self.keep_known_name:
                settings += " | clear missing names"
            if self.name_filter is not None:
                settings += f" | name: {self.name_filter}"
            screen.addnstr(1, 0, settings, w - 1, curses.A_DIM)

            col_fmt = " {:>3s} {:<19s} {:<20s} {:>8s} {:>5s} {:>4s}  {}"
            col_hdr = col_fmt.format(
                "#", "Address", "Name", "Smoothed", "RSSI", "N", "Signal")
            screen.addnstr(3, 0, col_hdr, w - 1, curses.A_UNDERLINE)

            items = self.viewport.items
            if not items:
                screen.addnstr(4, 0, "  No devices found yet.", w - 1,
                               curses.A_DIM)

            row = 4
            for i, record in enumerate(self.viewport.visible(),
                                       self.viewport.offset + 1):
                line = col_fmt.format(
                    str(i),
                    record.address[:19],
                    display_name(record.name)[:20],
                    format_rssi(record.smoothed_value),
                    str(record.current_reading),
                    str(record.samples),
                    signal_bar(record.smoothed_value),
                )
                attr = curses.A_BOLD if i == 1 else curses.A_NORMAL
                screen.addnstr(row, 0, line, w - 1, attr)
                row += 1

            footer = " Up/Down scroll  PgUp/PgDn page  Home/End  q quit"
            if items:
                first = self.viewport.offset + 1
                last = self.viewport.offset + len(self.viewport.visible())
                footer += f"  |  {first}-{last} of {len(items)}"
            if self.log_file:
                footer += f"  |  Logging to {self.log_file}"
            screen.addnstr(h - 1, 0, footer, w - 1, curses.A_DIM)

            screen.refresh()
        except curses.error:
            pass

    # ------------------------------------------------------------------
    # Main scan flow
    # ------------------------------------------------------------------

    async def scan(self):
        # Install signal handlers inside the async context for clean
        # shutdown without the signal-handler / KeyboardInterrupt race.
        loop = asyncio.get_running_loop()
        if platform.system() != "Windows":
            loop.add_signal_handler(signal.SIGINT, self.stop)
            loop.add_signal_handler(signal.SIGTERM, self.stop)

        # Open real-time CSV log
        if self.log_file:
            self._log_fh = open(self.log_file, "w", newline="")
            self._log_writer = csv.DictWriter(self._log_fh,
                                              fieldnames=_LOG_FIELDNAMES)
            self._log_writer.writeheader()
            self._log_fh.flush()

        # GUI setup
        if self.gui:
            self._gui_server = GuiServer(port=self.gui_port)
            self._gui_server.start()

        # TUI setup
        if self.tui:
            self._tui_screen = curses.initscr()
            curses.noecho()
            curses.cbreak()
            curses.curs_set(0)
            self._tui_screen.keypad(True)
            self._tui_screen.nodelay(True)
            if curses.has_colors():
                curses.start_color()
                curses.use_default_colors()

        elapsed = 0.0
        try:
            elapsed = await self._scan_loop()
        finally:
            # TUI cleanup
            if self._tui_screen is not None:
                self._tui_screen.keypad(False)
                curses.curs_set(1)
                curses.nocbreak()
                curses.echo()
                curses.endwin()
                self._tui_screen = None

            # Close log file
            if self._log_fh is not None:
                self._log_fh.close()
                self._log_fh = None
                self._log_writer = None

        # GUI scan complete
        if self.gui and self._gui_server is not None:
            self._gui_server.emit_status({
                'elapsed': round(elapsed, 1),
                'total_detections': self.seen_count,
                'unique_count': len(self.session.registry),
                'scanning': False,
            })
            self._gui_server.emit_complete({
                'elapsed': round(elapsed, 1),
                'total_detections': self.seen_count,
                'unique_devices': len(self.session.registry),
            })

        # Stop GUI server
        if self._gui_server is not None:
            self._gui_server.stop()

        # Summary and output (printed after TUI is torn down)
        if not self.gui:
            self._print_summary(elapsed)
        self._write_output()

    def _poll_tick(self, start: float):
        """One tick of the scan loop: keys, pending observations, redraw."""
        if self._tui_screen is not None:
            self._read_keys(self._tui_screen)
        self._process_pending()
        if self._tui_screen is not None:
            self._redraw_tui(self._tui_screen)
        if self.gui and self._gui_server is not None:
            el = time.time() - start
            self._gui_server.emit_status({
                'elapsed': round(el, 1),
                'total_detections': self.seen_count,
                'unique_count': len(self.session.registry),
                'scanning': True,
            })

    async def _scan_loop(self) -> float:
        """Run the BLE scanner and return elapsed seconds."""
        if not self.quiet and not self.tui and not self.gui:
            self._print_header()

        # A new scan always starts from an empty list
        self.session.reset()
        self.inbox.drain()

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

        started = []
        start = time.time()
        self._tui_start = start
        try:
            for s in scanners:
                await s.start()
                started.append(s)
            if self.timeout == float('inf'):
                while self.running:
                    self._poll_tick(start)
                    await asyncio.sleep(
                        _TUI_REFRESH_INTERVAL if self.tui
                        else _SCAN_POLL_INTERVAL)
            else:
                while self.running and (time.time() - start) < self.timeout:
                    self._poll_tick(start)
                    await asyncio.sleep(_TIMED_SCAN_POLL_INTERVAL)
        except asyncio.CancelledError:
            pass
        finally:
            for s in started:
                await s.stop()

        # Observations that arrived after the last tick still count
        self._process_pending()
        return time.time() - start

    def _print_header(self):
        """Print scan configuration banner."""
        print(_BANNER)
        print("Mode: RANK ALL — strongest smoothed signal first")
        scan_mode = "active" if self.active else "passive"
        print(f"Scanning: {scan_mode}  |  RSSI smoothing: window of "
              f"{self.history_size}")
        if self.active and platform.system() == "Darwin":
            print("  Note: CoreBluetooth always scans actively regardless of this flag")
        if not self.keep_known_name:
            print("Names: cleared when a device stops advertising one")
        if self.name_filter is not None:
            print(f"Name filter: \"{self.name_filter}\"")
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
        """Print scan summary and the final ranking."""
        snapshot = self.session.snapshot()
        print(f"\n{'—'*60}")
        print(f"Scan complete — {elapsed:.1f}s elapsed")
        print(f"  Total detections : {self.seen_count}")
        print(f"  Unique devices   : {len(snapshot)}")
        if not snapshot:
            return
        print(f"\n  {'#':>3} {'Address':<20} {'Name':<20} {'Smoothed':>9} {'N':>3}")
        print(f"  {'—'*3} {'—'*20} {'—'*20} {'—'*9} {'—'*3}")
        for i, record in enumerate(snapshot, 1):
            print(f"  {i:>3} {record.address:<20} "
                  f"{display_name(record.name)[:20]:<20} "
                  f"{format_rssi(record.smoothed_value):>9} {record.samples:>3}")

    def _output_records(self) -> List[dict]:
        """Final ranking as flat records for batch output."""
        records = []
        for i, record in enumerate(self.session.snapshot(), 1):
            row = {"rank": i}
            row.update(record.as_dict())
            row["name"] = display_name(record.name)
            row["smoothed_rssi"] = round(record.smoothed_value, 2)
            row["samples"] = record.samples
            records.append(row)
        return records

    def _write_output(self):
        """Write batch output file (json / jsonl / csv)."""
        records = self._output_records()
        if not self.output_format or not records:
            if self.log_file:
                print(f"  Live log written to {self.log_file}")
            return

        filename = self.output_file or f"blerank-results.{self.output_format}"

        # Support writing to stdout with --output-file -
        if filename == "-":
            _dump_records(records, self.output_format, sys.stdout)
            return

        with open(filename, "w", newline="") as f:
            _dump_records(records, self.output_format, f)
        print(f"  Results written to {filename}")
        if self.log_file:
            print(f"  Live log written to {self.log_file}")

    def stop(self):
        if not self.tui and not self.gui and self.running:
            print("\nStopping scan...")
        self.running = False


def _dump_records(records: List[dict], output_format: str, fh):
    if output_format == "json":
        fh.write(json.dumps(records, indent=2) + "\n")
    elif output_format == "jsonl":
        for record in records:
            fh.write(json.dumps(record) + "\n")
    elif output_format == "csv":
        writer = csv.DictWriter(fh, fieldnames=_FIELDNAMES)
        writer.writeheader()
        for record in records:
            row = dict(record)
            row["history"] = " ".join(str(v) for v in record["history"])
            writer.writerow(row)
    else:
        raise ValueError(f"Unknown output format: {output_format}")


def _parse_window(value: str) -> int:
    """Parse a smoothing window size; raises ValueError when invalid."""
    try:
        window = int(value.strip())
    except ValueError:
        raise ValueError(f"window must be an integer, got '{value}'")
    if window < 1:
        raise ValueError(f"window must be at least 1, got {window}")
    return window


def main():
    parser = argparse.ArgumentParser(
        description="BLE Scanner — live device list ranked by smoothed RSSI"
    )
    parser.add_argument(
        "-t", "--timeout", type=float, default=None,
        help="Scan timeout in seconds (default: 30, or infinite for "
             "--tui / --gui)"
    )

    # Output / logging
    parser.add_argument(
        "--output", choices=["csv", "json", "jsonl"], default=None,
        help="Write the final ranking in this format at end of scan"
    )
    parser.add_argument(
        "-o", "--output-file", type=str, default=None, metavar="FILE",
        help="Output file path (default: blerank-results.<format>; "
             "use - for stdout)"
    )
    parser.add_argument(
        "--log", type=str, default=None, metavar="FILE",
        help="Stream every processed observation to a CSV file in real time"
    )
    parser.add_argument(
        "--debug-log", type=str, default=None, metavar="FILE",
        help="Write debug diagnostics (ranking and scroll decisions) to FILE"
    )

    # Verbosity
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        "-v", "--verbose", action="store_true",
        help="Verbose mode — print every reading, not only new devices"
    )
    verbosity.add_argument(
        "-q", "--quiet", action="store_true",
        help="Quiet mode — suppress per-device output, show summary only"
    )

    # Smoothing / ranking
    parser.add_argument(
        "-w", "--window", type=str, default=None, metavar="N",
        help="Number of recent RSSI readings averaged per device "
             f"(default: {HISTORY_SIZE}, or ${_ENV_WINDOW})"
    )
    parser.add_argument(
        "--clear-missing-names", action="store_true",
        help="Clear a known device name when a later advertisement carries "
             "none (default: keep the last known name)"
    )
    parser.add_argument(
        "--active", action="store_true",
        help="Use active scanning — sends SCAN_REQ to get SCAN_RSP with "
             "additional names (default: passive)"
    )

    # Filtering
    parser.add_argument(
        "--name-filter", type=str, default=None, metavar="PATTERN",
        help="Only list devices whose name contains PATTERN "
             "(case-insensitive)"
    )

    # TUI
    parser.add_argument(
        "--tui", action="store_true",
        help="Live, scrollable terminal list instead of scrolling output"
    )

    # GUI
    parser.add_argument(
        "--gui", action="store_true",
        help="Launch web-based device list in the browser"
    )
    parser.add_argument(
        "--gui-port", type=int, default=5000, metavar="PORT",
        help="Port for GUI web server (default: 5000)"
    )

    # Multi-adapter (Linux)
    parser.add_argument(
        "--adapters", type=str, default=None, metavar="LIST",
        help="Comma-separated Bluetooth adapter names to scan with "
             "(e.g. hci0,hci1 — Linux only)"
    )

    args = parser.parse_args()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    if args.output_file and not args.output:
        parser.error("--output-file (-o) requires --output to specify "
                     "the format (csv, json, or jsonl)")

    window = HISTORY_SIZE
    if args.window is not None:
        try:
            window = _parse_window(args.window)
        except ValueError as e:
            parser.error(f"--window: {e}")
    elif os.environ.get(_ENV_WINDOW):
        try:
            window = _parse_window(os.environ[_ENV_WINDOW])
        except ValueError as e:
            parser.error(f"{_ENV_WINDOW} environment variable: {e}")

    if args.tui and not _HAS_CURSES:
        parser.error("--tui requires the 'curses' module "
                     "(install 'windows-curses' on Windows)")

    if args.tui and args.quiet:
        parser.error("Cannot use --tui with --quiet")

    if args.gui and not _HAS_FLASK:
        parser.error("--gui requires Flask and flask-socketio. "
                     "Install with: pip install flask flask-socketio")

    if args.gui and args.tui:
        parser.error("Cannot use --gui with --tui")

    if args.gui and args.quiet:
        parser.error("Cannot use --gui with --quiet")

    # Default timeout
    if args.timeout is not None:
        timeout = args.timeout
    elif args.tui or args.gui:
        timeout = float('inf')
    else:
        timeout = 30.0

    # Parse adapters
    adapters = None
    if args.adapters:
        adapters = [a.strip() for a in args.adapters.split(",") if a.strip()]
        if not adapters:
            parser.error("--adapters requires at least one adapter name")

    if args.debug_log:
        logging.basicConfig(
            filename=args.debug_log, level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    scanner = BLEScanner(
        timeout,
        output_format=args.output,
        output_file=args.output_file,
        verbose=args.verbose,
        quiet=args.quiet,
        history_size=window,
        keep_known_name=not args.clear_missing_names,
        active=args.active,
        log_file=args.log,
        tui=args.tui,
        adapters=adapters,
        name_filter=args.name_filter,
        gui=args.gui,
        gui_port=args.gui_port,
    )

    try:
        asyncio.run(scanner.scan())
    except KeyboardInterrupt:
        # Ensure stop() is called so cleanup (summary, output, GUI shutdown)
        # runs properly; covers Windows where add_signal_handler is unavailable.
        scanner.stop()
    except (BleakError, OSError) as e:
        _LOGGER.debug("Scan failed", exc_info=True)
        print(f"Error: BLE scan failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
