"""
Directory scanning pipeline for vtwatch.

This module watches the scan directory, queues every new file, and runs a
single consumer thread that gets a verdict for each file and moves it to the
clean or compromised directory.

Threads involved:
    - the watchdog observer thread delivers filesystem events and only
      schedules or enqueues paths;
    - the consumer thread is the only one that scans and moves files;
    - the locked-file timer thread re-checks locked files and re-enqueues
      them once they are free;
    - short-lived threads debounce create events and run rate limit countdowns.

Observers are called synchronously on whichever of these threads produced
the event and must do their own marshalling.
"""

import logging
import math
import os
import queue
import threading
from datetime import datetime
from typing import Callable, List, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from vtwatch.config.settings import (CREATE_DEBOUNCE_SECONDS, LOCKED_FILE_RETRY_SECONDS,
                                     QUEUE_IDLE_SECONDS)
from vtwatch.config.store import SettingsStore
from vtwatch.core.rate_limiter import RateLimiter
from vtwatch.core.timer import IntervalTimer
from vtwatch.core.verdict import VirusTotalService
from vtwatch.errors import OperationCancelledError, QuotaExceededError
from vtwatch.models.scan import ScanResult, ScanStatus, Verdict
from vtwatch.utils.file_utils import FileOperations, timestamped_name
from vtwatch.utils.logger import get_logger
from vtwatch.utils.skip_patterns import should_skip

logger = get_logger(__name__)


class ScanObserver:
    """
    Receives status updates and log messages from a DirectoryScanner.

    Methods are called on the thread that produced the event. Results are
    snapshots and can be kept.
    """

    def on_scan_result(self, result: ScanResult) -> None:
        pass

    def on_log_message(self, message: str) -> None:
        pass


class ScanDirectoryHandler(FileSystemEventHandler):
    """Forwards file events from the watched directory to the scanner."""

    def __init__(self, scanner: 'DirectoryScanner'):
        self.scanner = scanner

    def on_created(self, event):
        if not event.is_directory:
            self.scanner.on_file_created(event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self.scanner.on_file_renamed(event.src_path, event.dest_path)

    def on_modified(self, event):
        if not event.is_directory:
            self.scanner.on_file_changed(event.src_path)


class _RateLimitCountdown:
    """Pushes "waiting" text into a result once per second while the rate limit is hit.

    Updates happen under ``_lock`` and only while the run is not cancelled, so
    once ``cancel`` returns no further text is written.
    """

    def __init__(self, scanner: 'DirectoryScanner', result: ScanResult, interval: float):
        self.scanner = scanner
        self.result = result
        self.interval = interval
        self._lock = threading.Lock()
        self._cancel_event: Optional[threading.Event] = None
        self.used = False

    def on_hit(self, wait_seconds: float) -> None:
        self.cancel()
        self.used = True
        cancel_event = threading.Event()
        self._cancel_event = cancel_event
        threading.Thread(target=self._run, args=(wait_seconds, cancel_event),
                         daemon=True, name='rate-limit-countdown').start()

    def cancel(self) -> None:
        with self._lock:
            if self._cancel_event is not None:
                self._cancel_event.set()

    def _update(self, message: str, cancel_event: threading.Event) -> bool:
        with self._lock:
            if cancel_event.is_set():
                return False
            self.result.message = message
            self.scanner.publish(self.result)
            return True

    def _run(self, wait_seconds: float, cancel_event: threading.Event) -> None:
        remaining = wait_seconds
        while remaining > 0:
            if not self._update(f"Waiting for rate limit: {math.ceil(remaining)}s", cancel_event):
                return
            if cancel_event.wait(self.interval):
                return
            remaining -= self.interval
        self._update("", cancel_event)


class DirectoryScanner:
    """
    Watches the scan directory and routes files by verdict.
    """

    def __init__(self, verdict_service: VirusTotalService, store: SettingsStore,
                 rate_limiter: Optional[RateLimiter] = None,
                 file_ops: Optional[FileOperations] = None,
                 observer_factory: Callable = Observer,
                 stop_event: Optional[threading.Event] = None,
                 debounce_seconds: float = CREATE_DEBOUNCE_SECONDS,
                 locked_retry_seconds: float = LOCKED_FILE_RETRY_SECONDS,
                 idle_seconds: float = QUEUE_IDLE_SECONDS,
                 countdown_interval: float = 1.0):
        """
        Initialize the scanner.

        Args:
            verdict_service: Produces verdicts for files.
            store: Settings store; paths are read from ``store.current.paths``.
            rate_limiter: Limiter whose "hit" notifications drive the countdown text.
            file_ops: Filesystem operations. Defaults to the real filesystem.
            observer_factory: Creates the watchdog observer.
            stop_event: Shared shutdown signal, also given to the API transport.
            debounce_seconds: Delay before a newly created file is queued.
            locked_retry_seconds: Interval of the locked-file recheck timer.
            idle_seconds: Sleep of the consumer when the queue is empty.
            countdown_interval: Update interval of the rate limit countdown.
        """
        self.verdict_service = verdict_service
        self.store = store
        self.rate_limiter = rate_limiter
        self.file_ops = file_ops or FileOperations()
        self.observer_factory = observer_factory
        self.debounce_seconds = debounce_seconds
        self.idle_seconds = idle_seconds
        self.countdown_interval = countdown_interval

        self._stop_event = stop_event or threading.Event()
        self._observers: List[ScanObserver] = []
        self._watcher = None
        self._scan_directory: Optional[str] = None
        self._processing_thread: Optional[threading.Thread] = None

        self._queue = queue.Queue()
        self._queued = set()
        self._queued_lock = threading.Lock()

        self._locked_files = set()
        self._locked_lock = threading.Lock()
        self._locked_file_timer = IntervalTimer(locked_retry_seconds, self._on_locked_file_timer,
                                                name='locked-file-timer')

        self._pending_creates = {}
        self._debounce_lock = threading.Lock()

    # Observers

    def subscribe(self, observer: ScanObserver) -> None:
        self._observers.append(observer)

    def unsubscribe(self, observer: ScanObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def publish(self, result: ScanResult) -> None:
        """Send a snapshot of a result to every observer."""
        snapshot = result.snapshot()
        for observer in list(self._observers):
            try:
                observer.on_scan_result(snapshot)
            except Exception as e:
                logger.error(f"Observer failed handling result for {result.file_name}: {e}")

    def _log(self, message: str, level: int = logging.INFO) -> None:
        logger.log(level, message)
        for observer in list(self._observers):
            try:
                observer.on_log_message(message)
            except Exception as e:
                logger.error(f"Observer failed handling log message: {e}")
        self._append_scan_log(message)

    def _append_scan_log(self, message: str) -> None:
        log_file = self.store.current.paths.log_file_path
        if not log_file:
            return
        try:
            log_dir = os.path.dirname(os.path.abspath(log_file))
            if not self.file_ops.directory_exists(log_dir):
                self.file_ops.create_directory(log_dir)
            timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
            self.file_ops.append_text(log_file, f"{timestamp}: {message}\n")
        except OSError as e:
            logger.warning(f"Could not write to scan log {log_file}: {e}")

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self._processing_thread is not None and self._processing_thread.is_alive()

    def start(self) -> bool:
        """
        Start watching the scan directory and processing files.

        Returns:
            True if monitoring started, False if the scan directory is unusable
        """
        scan_directory = self.store.current.paths.scan_directory
        if not scan_directory:
            self._log("Scan directory is not configured.", logging.ERROR)
            return False

        scan_directory = os.path.abspath(scan_directory)
        if self.file_ops.directory_exists(scan_directory):
            self._log(f"Using existing scan directory: {scan_directory}")
        else:
            try:
                self.file_ops.create_directory(scan_directory)
                self._log(f"Created scan directory: {scan_directory}")
            except OSError as e:
                self._log(f"Failed to create scan directory: {e}", logging.ERROR)
                return False

        self._scan_directory = scan_directory
        self._watcher = self.observer_factory()
        self._watcher.schedule(ScanDirectoryHandler(self), scan_directory, recursive=False)
        self._watcher.daemon = True
        self._watcher.start()

        self._processing_thread = threading.Thread(target=self._process_queue, daemon=True,
                                                   name='scan-consumer')
        self._processing_thread.start()
        self._log(f"Started monitoring {scan_directory}")

        threading.Thread(target=self._enqueue_existing_files, args=(scan_directory,),
                         daemon=True, name='initial-scan').start()
        return True

    def stop(self, timeout: float = 5.0) -> None:
        """
        Stop watching and processing.

        In-flight API calls see the stop event at their next wait.

        Args:
            timeout: Seconds to wait for each background thread to finish
        """
        self._stop_event.set()

        with self._debounce_lock:
            for timer in self._pending_creates.values():
                timer.cancel()
            self._pending_creates.clear()

        if self._watcher is not None:
            self._watcher.stop()
            self._watcher.join(timeout=timeout)
            self._watcher = None

        self._locked_file_timer.stop()

        if self._processing_thread is not None:
            self._processing_thread.join(timeout=timeout)
        self._log("Stopped monitoring")

    def _enqueue_existing_files(self, scan_directory: str) -> None:
        try:
            files = self.file_ops.get_files(scan_directory)
        except OSError as e:
            self._log(f"Error detecting existing files: {e}", logging.ERROR)
            return
        self._log(f"Found {len(files)} existing files.")
        for file_path in files:
            if self._stop_event.is_set():
                break
            self.enqueue(file_path)

    # Queue

    def _is_log_file(self, path: str) -> bool:
        log_file = self.store.current.paths.log_file_path
        if not log_file:
            return False
        normalize = lambda p: os.path.normcase(os.path.abspath(p)).lower()
        return normalize(path) == normalize(log_file)

    def enqueue(self, path: str, previous_path: Optional[str] = None, message: str = "") -> bool:
        """
        Queue a file for scanning and report it as pending.

        Args:
            path: File to scan
            previous_path: Old path when the file was renamed
            message: Text shown with the pending status

        Returns:
            True if the file was queued, False if ignored
        """
        full_path = os.path.abspath(path)
        if self._is_log_file(full_path):
            return False

        with self._queued_lock:
            if full_path in self._queued:
                logger.debug(f"{full_path} is already queued")
                return False
            self._queued.add(full_path)

        # Pending must reach observers before the consumer can report Scanning
        self.publish(ScanResult(full_path, ScanStatus.PENDING, message=message,
                                previous_path=previous_path))
        self._queue.put(full_path)
        return True

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def locked_files(self) -> set:
        with self._locked_lock:
            return set(self._locked_files)

    def _process_queue(self) -> None:
        while not self._stop_event.is_set():
            try:
                file_path = self._queue.get_nowait()
            except queue.Empty:
                self._stop_event.wait(self.idle_seconds)
                continue

            with self._queued_lock:
                self._queued.discard(file_path)
            self._process_file(file_path)

    # Per-file processing

    def _process_file(self, file_path: str) -> None:
        file_name = os.path.basename(file_path)
        result = ScanResult(file_path, ScanStatus.SCANNING)
        self.publish(result)

        try:
            if should_skip(file_path):
                result.status = ScanStatus.SKIPPED
                result.message = "Temporary or partially downloaded file"
                self._log(f"Skipping {file_name}: temporary or partial download.")
                self.publish(result)
                return

            if not self.file_ops.file_exists(file_path):
                result.status = ScanStatus.REMOVED
                result.message = "File no longer exists"
                self._log(f"File {file_name} no longer exists.")
                self.publish(result)
                return

            if self.file_ops.is_file_locked(file_path):
                self._log(f"File is locked: {file_name}. Queuing for retry.")
                result.status = ScanStatus.PENDING_LOCKED
                self.publish(result)
                with self._locked_lock:
                    self._locked_files.add(file_path)
                if not self._locked_file_timer.enabled:
                    self._locked_file_timer.start()
                    self._log("Locked file timer started.")
                return

            self._log(f"Scanning file: {file_name}")
            verdict = self._scan_with_countdown(file_path, result)

            result.detection_count = verdict.detection_count
            result.file_hash = verdict.file_hash

            paths = self.store.current.paths
            if verdict.verdict == Verdict.CLEAN:
                self._move_file(file_path, paths.clean_directory)
                result.status = ScanStatus.CLEAN
                self._log(f"File {file_name} is CLEAN. Moved to clean directory.")
            elif verdict.verdict == Verdict.COMPROMISED:
                self._move_file(file_path, paths.compromised_directory)
                result.status = ScanStatus.COMPROMISED
                self._log(f"File {file_name} is COMPROMISED ({verdict.detection_count} detections). "
                          f"Moved to compromised directory.", logging.WARNING)
            elif verdict.verdict == Verdict.FAILED:
                result.status = ScanStatus.FAILED
                result.message = verdict.message or "Unknown error"
                self._log(f"File {file_name} FAILED: {result.message}", logging.ERROR)
            else:
                result.status = ScanStatus.FAILED
                result.message = "Verdict unknown"
                self._log(f"File {file_name} status is UNKNOWN.", logging.WARNING)

        except OperationCancelledError:
            result.status = ScanStatus.FAILED
            result.message = "Cancelled"
            self._log(f"Scan of {file_name} cancelled.")
        except QuotaExceededError as e:
            result.status = ScanStatus.FAILED
            result.message = str(e)
            self._log(f"{e}. {file_name} left in place.", logging.WARNING)
        except Exception as e:
            logger.exception(f"Unexpected error processing {file_path}")
            self._log(f"Error processing {file_name}: {e}", logging.ERROR)
            result.status = ScanStatus.FAILED
            result.message = str(e)

        self.publish(result)

    def _scan_with_countdown(self, file_path: str, result: ScanResult):
        countdown = _RateLimitCountdown(self, result, self.countdown_interval)
        if self.rate_limiter is not None:
            self.rate_limiter.subscribe(countdown.on_hit, countdown.cancel)
        try:
            return self.verdict_service.scan_file(file_path, self._stop_event)
        finally:
            if self.rate_limiter is not None:
                self.rate_limiter.unsubscribe(countdown.on_hit, countdown.cancel)
            countdown.cancel()
            if countdown.used:
                result.message = ""
                self.publish(result)

    def _move_file(self, source_path: str, destination_directory: Optional[str]) -> Optional[str]:
        """
        Move a scanned file into a destination directory.

        An existing file with the same name is replaced when its content is
        identical; otherwise the incoming file gets a timestamped name. An
        existing destination is never overwritten; a taken timestamped name gets
        a counter suffix.

        Args:
            source_path: File to move
            destination_directory: Target directory, created if missing

        Returns:
            Final destination path, or None if no destination is configured
        """
        file_name = os.path.basename(source_path)
        if not destination_directory:
            self._log(f"Destination directory not configured for {file_name}", logging.WARNING)
            return None

        if not self.file_ops.directory_exists(destination_directory):
            self.file_ops.create_directory(destination_directory)

        destination_path = os.path.join(destination_directory, file_name)

        if self.file_ops.file_exists(destination_path):
            source_hash = self.file_ops.calculate_sha256(source_path)
            destination_hash = self.file_ops.calculate_sha256(destination_path)

            if source_hash == destination_hash:
                self._log(f"File {file_name} already exists in destination with same checksum. Overwriting.")
                self.file_ops.delete_file(destination_path)
            else:
                destination_path = self._free_destination(destination_directory,
                                                          timestamped_name(file_name))
                self._log(f"File {file_name} already exists in destination with DIFFERENT checksum. "
                          f"Renaming to {os.path.basename(destination_path)}.")

        self.file_ops.move_file(source_path, destination_path)
        return destination_path

    def _free_destination(self, directory: str, file_name: str) -> str:
        """Return ``directory/file_name``, adding a counter while that path is taken."""
        candidate = os.path.join(directory, file_name)
        stem, ext = os.path.splitext(file_name)
        counter = 1
        while self.file_ops.file_exists(candidate):
            candidate = os.path.join(directory, f"{stem}_{counter}{ext}")
            counter += 1
        return candidate

    # Locked files

    def _discard_locked(self, path: str) -> bool:
        with self._locked_lock:
            if path in self._locked_files:
                self._locked_files.remove(path)
                return True
            return False

    def _on_locked_file_timer(self) -> None:
        with self._locked_lock:
            locked = list(self._locked_files)

        if not locked:
            self._locked_file_timer.stop()
            self._log("Locked file timer stopped (no locked files).")
            return

        for file_path in locked:
            if self._stop_event.is_set():
                return
            file_name = os.path.basename(file_path)
            if not self.file_ops.file_exists(file_path):
                if self._discard_locked(file_path):
                    self._log(f"Locked file {file_name} was removed.")
                    self.publish(ScanResult(file_path, ScanStatus.REMOVED,
                                            message="File was removed while locked"))
                continue

            if not self.file_ops.is_file_locked(file_path):
                if self._discard_locked(file_path):
                    self._log(f"File unlocked: {file_name}. Re-queuing.")
                    self.enqueue(file_path)

        with self._locked_lock:
            empty = not self._locked_files
        if empty:
            self._locked_file_timer.stop()
            self._log("Locked file timer stopped.")

    # Filesystem events

    def on_file_created(self, path: str) -> None:
        if self.debounce_seconds <= 0:
            self.enqueue(path)
            return
        self._schedule_enqueue(os.path.abspath(path))

    def on_file_changed(self, path: str) -> None:
        full_path = os.path.abspath(path)
        with self._debounce_lock:
            pending = full_path in self._pending_creates
        if pending:
            self._schedule_enqueue(full_path)

    def on_file_renamed(self, old_path: str, new_path: str) -> None:
        old_path = os.path.abspath(old_path)
        new_path = os.path.abspath(new_path)

        with self._debounce_lock:
            timer = self._pending_creates.pop(old_path, None)
        if timer is not None:
            timer.cancel()

        if self._discard_locked(old_path):
            logger.debug(f"Dropped renamed path {old_path} from locked files")

        if self._scan_directory and os.path.dirname(new_path) != self._scan_directory:
            return

        self._log(f"File renamed: {os.path.basename(old_path)} -> {os.path.basename(new_path)}")
        self.enqueue(new_path, previous_path=old_path, message="Renamed")

    def _schedule_enqueue(self, full_path: str) -> None:
        with self._debounce_lock:
            existing = self._pending_creates.pop(full_path, None)
            if existing is not None:
                existing.cancel()
            if self._stop_event.is_set():
                return
            timer = threading.Timer(self.debounce_seconds, self._on_debounce_elapsed, args=(full_path,))
            timer.daemon = True
            self._pending_creates[full_path] = timer
            timer.start()

    def _on_debounce_elapsed(self, full_path: str) -> None:
        with self._debounce_lock:
            self._pending_creates.pop(full_path, None)
        if self._stop_event.is_set():
            return
        if not self.file_ops.file_exists(full_path):
            # Browsers create and rename temporary names in quick succession
            logger.debug(f"{full_path} disappeared before it was queued")
            return
        self.enqueue(full_path)
