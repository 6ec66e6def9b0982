#!/usr/bin/env python3
"""
Command-line interface for vtwatch.
"""

import argparse
import sys
import threading

from vtwatch import __version__
from vtwatch.api.virustotal import VirusTotalApi
from vtwatch.config import get_settings
from vtwatch.config.settings import LOG_FILE, LOG_LEVEL, VT_API_KEY, VT_API_URL
from vtwatch.core.quota import QuotaTracker
from vtwatch.core.rate_limiter import RateLimiter
from vtwatch.core.scanner import DirectoryScanner, ScanObserver
from vtwatch.core.verdict import VirusTotalService
from vtwatch.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def run_cli(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="vtwatch - scan new files with VirusTotal")
    parser.add_argument("--scan-dir", help="Directory to watch")
    parser.add_argument("--clean-dir", help="Destination for clean files")
    parser.add_argument("--compromised-dir", help="Destination for compromised files")
    parser.add_argument("--log-file", help="Scan log file")
    parser.add_argument("--settings", help="Settings document path")
    parser.add_argument("--debug", "-d", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", "-v", action="version", version=f"vtwatch {__version__}")
    return parser.parse_args(argv)


class ConsoleObserver(ScanObserver):
    """Prints one line per status event."""

    def __init__(self, stream=None):
        self.stream = stream or sys.stdout

    def on_scan_result(self, result):
        line = f"[{result.status_display}] {result.file_name}"
        if result.detection_count:
            line += f" ({result.detection_count} detections)"
        if result.message:
            line += f" - {result.message}"
        if result.report_url and result.status.is_terminal:
            line += f" {result.report_url}"
        print(line, file=self.stream, flush=True)


def main(argv=None):
    args = run_cli(argv)
    setup_logging("DEBUG" if args.debug else LOG_LEVEL, LOG_FILE)

    if not VT_API_KEY:
        logger.error("VT_API_KEY is not set. Add it to your environment or .env file.")
        return 1

    store = get_settings(args.settings)
    paths = store.current.paths
    if args.scan_dir:
        paths.scan_directory = args.scan_dir
    if args.clean_dir:
        paths.clean_directory = args.clean_dir
    if args.compromised_dir:
        paths.compromised_directory = args.compromised_dir
    if args.log_file:
        paths.log_file_path = args.log_file

    stop_event = threading.Event()
    limiter = RateLimiter(store.current.quota.per_minute)
    api = VirusTotalApi(VT_API_KEY, VT_API_URL, limiter=limiter, cancel_event=stop_event)
    service = VirusTotalService(api, QuotaTracker(store), store)
    scanner = DirectoryScanner(service, store, rate_limiter=limiter, stop_event=stop_event)
    scanner.subscribe(ConsoleObserver())

    if not scanner.start():
        return 1

    print(f"Watching {paths.scan_directory}. Press Ctrl+C to stop.")
    try:
        while scanner.is_running:
            stop_event.wait(1)
    except KeyboardInterrupt:
        print("\nStopping...")
    finally:
        scanner.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
