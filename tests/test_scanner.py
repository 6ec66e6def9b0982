import errno
import os
import re
import shutil
import tempfile
import threading
import time
import unittest
from unittest.mock import MagicMock, patch

from vtwatch.config.store import SettingsStore
from vtwatch.core import scanner as scanner_module
from vtwatch.core.rate_limiter import RateLimiter
from vtwatch.core.scanner import (DirectoryScanner, ScanDirectoryHandler, ScanObserver,
                                  _RateLimitCountdown)
from vtwatch.errors import QuotaExceededError
from vtwatch.models.scan import ScanResult, ScanStatus, Verdict, VerdictResult
from vtwatch.models.settings import PathsSettings, Settings
from vtwatch.utils.file_utils import FileOperations

CLEAN = VerdictResult(Verdict.CLEAN, 0, "abc123")


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class RecordingObserver(ScanObserver):

    def __init__(self):
        self.results = []
        self.messages = []
        self._lock = threading.Lock()

    def on_scan_result(self, result):
        with self._lock:
            self.results.append(result)

    def on_log_message(self, message):
        with self._lock:
            self.messages.append(message)

    def for_path(self, path):
        with self._lock:
            return [r for r in self.results if r.full_path == path]

    def statuses(self, path):
        return [r.status for r in self.for_path(path)]

    def has_status(self, path, status):
        return status in self.statuses(path)


class FakeFileOperations(FileOperations):
    """Real filesystem with locks and access errors simulated per path."""

    def __init__(self):
        self.locked = set()
        self.denied = set()

    def is_file_locked(self, path):
        if path in self.denied:
            raise PermissionError(errno.EACCES, "Permission denied", path)
        return path in self.locked or super().is_file_locked(path)


class TestDirectoryScanner(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.scan_dir = os.path.join(self.temp_dir, "incoming")
        self.clean_dir = os.path.join(self.temp_dir, "clean")
        self.compromised_dir = os.path.join(self.temp_dir, "compromised")
        self.log_file = os.path.join(self.temp_dir, "logs", "scan.log")
        os.makedirs(self.scan_dir)

        self.store = SettingsStore(os.path.join(self.temp_dir, "settings.json"), Settings(
            paths=PathsSettings(self.scan_dir, self.clean_dir, self.compromised_dir, self.log_file)))
        self.verdict_service = MagicMock()
        self.verdict_service.scan_file.return_value = CLEAN
        self.file_ops = FakeFileOperations()
        self.watcher = MagicMock()
        self.recorder = RecordingObserver()
        self.scanner = None

    def tearDown(self):
        if self.scanner is not None:
            self.scanner.stop(timeout=2)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _scanner(self, **kwargs):
        options = dict(file_ops=self.file_ops, observer_factory=lambda: self.watcher,
                       debounce_seconds=0.05, locked_retry_seconds=0.05, idle_seconds=0.01,
                       countdown_interval=0.05)
        options.update(kwargs)
        self.scanner = DirectoryScanner(self.verdict_service, self.store, **options)
        self.scanner.subscribe(self.recorder)
        return self.scanner

    def _write(self, directory, name, content=b"content"):
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, name)
        with open(path, 'wb') as f:
            f.write(content)
        return path

    def _start_idle(self):
        scanner = self._scanner()
        scanner.start()
        self.assertTrue(wait_until(lambda: any("existing files" in m for m in self.recorder.messages)))
        return scanner

    def _scan_calls(self):
        return [c[0][0] for c in self.verdict_service.scan_file.call_args_list]

    def test_clean_file_is_moved(self):
        path = self._write(self.scan_dir, "doc.txt")
        scanner = self._scanner()

        self.assertTrue(scanner.start())
        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.CLEAN)))

        self.assertEqual(self.recorder.statuses(path),
                         [ScanStatus.PENDING, ScanStatus.SCANNING, ScanStatus.CLEAN])
        self.assertFalse(os.path.exists(path))
        self.assertTrue(os.path.exists(os.path.join(self.clean_dir, "doc.txt")))
        self.verdict_service.scan_file.assert_called_once_with(path, scanner._stop_event)
        self.watcher.schedule.assert_called_once()
        self.assertEqual(self.watcher.schedule.call_args[0][1], self.scan_dir)

    def test_compromised_file_is_moved(self):
        path = self._write(self.scan_dir, "tool.exe")
        self.verdict_service.scan_file.return_value = VerdictResult(Verdict.COMPROMISED, 7, "f00d")
        self._scanner().start()

        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.COMPROMISED)))

        final = self.recorder.for_path(path)[-1]
        self.assertEqual(final.detection_count, 7)
        self.assertEqual(final.file_hash, "f00d")
        self.assertTrue(final.report_url.endswith("/f00d"))
        self.assertTrue(os.path.exists(os.path.join(self.compromised_dir, "tool.exe")))

    def test_failed_verdict_leaves_file(self):
        path = self._write(self.scan_dir, "big.iso")
        self.verdict_service.scan_file.return_value = VerdictResult.failed("Analysis timed out after 15 minutes")
        self._scanner().start()

        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.FAILED)))

        self.assertEqual(self.recorder.for_path(path)[-1].message, "Analysis timed out after 15 minutes")
        self.assertTrue(os.path.exists(path))

    def test_unknown_verdict_is_failed(self):
        path = self._write(self.scan_dir, "odd.bin")
        self.verdict_service.scan_file.return_value = VerdictResult(Verdict.UNKNOWN)
        self._scanner().start()

        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.FAILED)))

        self.assertEqual(self.recorder.for_path(path)[-1].message, "Verdict unknown")
        self.assertTrue(os.path.exists(path))

    def test_error_marks_file_failed_and_pipeline_continues(self):
        first = self._write(self.scan_dir, "a.txt")
        second = self._write(self.scan_dir, "b.txt")

        def scan_file(path, cancel_event):
            if path == first:
                raise RuntimeError("disk on fire")
            return CLEAN

        self.verdict_service.scan_file.side_effect = scan_file
        self._scanner().start()

        self.assertTrue(wait_until(lambda: self.recorder.has_status(second, ScanStatus.CLEAN)))
        self.assertEqual(self.recorder.for_path(first)[-1].status, ScanStatus.FAILED)
        self.assertEqual(self.recorder.for_path(first)[-1].message, "disk on fire")
        self.assertTrue(os.path.exists(first))

    def test_quota_exceeded_leaves_file(self):
        path = self._write(self.scan_dir, "doc.txt")
        self.verdict_service.scan_file.side_effect = QuotaExceededError('daily', 500, 500)

        with patch.object(scanner_module.logger, 'exception') as mock_exception:
            self._scanner().start()
            self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.FAILED)))

        mock_exception.assert_not_called()

        self.assertIn("Daily quota exceeded", self.recorder.for_path(path)[-1].message)
        self.assertTrue(os.path.exists(path))

    def test_conflict_with_identical_file_replaces_it(self):
        self._write(self.clean_dir, "doc.txt", b"same")
        path = self._write(self.scan_dir, "doc.txt", b"same")
        self._scanner().start()

        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.CLEAN)))

        self.assertEqual(os.listdir(self.clean_dir), ["doc.txt"])
        self.assertFalse(os.path.exists(path))

    def test_conflict_with_different_file_gets_timestamp(self):
        self._write(self.clean_dir, "doc.txt", b"old")
        path = self._write(self.scan_dir, "doc.txt", b"new")
        self._scanner().start()

        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.CLEAN)))

        names = sorted(os.listdir(self.clean_dir))
        self.assertEqual(len(names), 2)
        self.assertEqual(names[0], "doc.txt")
        self.assertRegex(names[1], r"^doc_\d{14}\.txt$")
        with open(os.path.join(self.clean_dir, "doc.txt"), 'rb') as f:
            self.assertEqual(f.read(), b"old")

    def test_same_second_conflicts_keep_every_file(self):
        self._write(self.clean_dir, "doc.txt", b"original")
        scanner = self._scanner()

        with patch.object(scanner_module, 'timestamped_name', return_value="doc_20240101120000.txt"):
            first = scanner._move_file(self._write(self.scan_dir, "doc.txt", b"first"), self.clean_dir)
            second = scanner._move_file(self._write(self.scan_dir, "doc.txt", b"second"), self.clean_dir)

        self.assertEqual(os.path.basename(first), "doc_20240101120000.txt")
        self.assertEqual(os.path.basename(second), "doc_20240101120000_1.txt")
        contents = set()
        for name in os.listdir(self.clean_dir):
            with open(os.path.join(self.clean_dir, name), 'rb') as f:
                contents.add(f.read())
        self.assertEqual(contents, {b"original", b"first", b"second"})

    def test_log_file_in_scan_directory_is_ignored(self):
        self.store.current.paths.log_file_path = os.path.join(self.scan_dir, "scan.log")
        self._write(self.scan_dir, "scan.log", b"earlier entries\n")
        path = self._write(self.scan_dir, "doc.txt")
        scanner = self._scanner()
        scanner.start()

        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.CLEAN)))

        self.assertFalse(scanner.enqueue(os.path.join(self.scan_dir, "SCAN.LOG")))
        self.assertEqual(self._scan_calls(), [path])
        self.assertEqual(self.recorder.for_path(os.path.join(self.scan_dir, "scan.log")), [])

    def test_partial_download_is_skipped(self):
        path = self._write(self.scan_dir, "movie.mkv.crdownload")
        self._scanner().start()

        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.SKIPPED)))

        self.verdict_service.scan_file.assert_not_called()
        self.assertTrue(os.path.exists(path))

    def test_locked_file_is_rescanned_once_unlocked(self):
        path = self._write(self.scan_dir, "report.pdf")
        self.file_ops.locked.add(path)
        scanner = self._scanner()
        scanner.start()

        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.PENDING_LOCKED)))
        time.sleep(0.15)
        self.verdict_service.scan_file.assert_not_called()
        self.assertEqual(scanner.locked_files, {path})

        self.file_ops.locked.discard(path)
        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.CLEAN)))

        self.assertEqual(self._scan_calls(), [path])
        self.assertEqual(self.recorder.statuses(path), [
            ScanStatus.PENDING, ScanStatus.SCANNING, ScanStatus.PENDING_LOCKED,
            ScanStatus.PENDING, ScanStatus.SCANNING, ScanStatus.CLEAN])
        self.assertTrue(wait_until(lambda: not scanner._locked_file_timer.enabled))

    def test_locked_file_removed_while_waiting(self):
        path = self._write(self.scan_dir, "report.pdf")
        self.file_ops.locked.add(path)
        scanner = self._scanner()
        scanner.start()

        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.PENDING_LOCKED)))
        os.remove(path)

        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.REMOVED)))
        self.assertEqual(scanner.locked_files, set())
        self.assertTrue(wait_until(lambda: not scanner._locked_file_timer.enabled))
        self.verdict_service.scan_file.assert_not_called()

    def test_unreadable_file_is_failed_not_locked(self):
        path = self._write(self.scan_dir, "report.pdf")
        self.file_ops.denied.add(path)
        scanner = self._scanner()
        scanner.start()

        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.FAILED)))

        self.assertNotIn(ScanStatus.PENDING_LOCKED, self.recorder.statuses(path))
        self.assertIn("Permission denied", self.recorder.for_path(path)[-1].message)
        self.assertEqual(scanner.locked_files, set())
        self.verdict_service.scan_file.assert_not_called()

    def test_created_file_is_debounced(self):
        scanner = self._start_idle()
        path = self._write(self.scan_dir, "new.txt")

        scanner.on_file_created(path)
        scanner.on_file_changed(path)
        scanner.on_file_changed(path)

        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.CLEAN)))
        time.sleep(0.1)
        self.assertEqual(self._scan_calls(), [path])

    def test_created_file_gone_before_debounce(self):
        scanner = self._start_idle()
        path = self._write(self.scan_dir, "flash.tmp.txt")

        scanner.on_file_created(path)
        os.remove(path)
        time.sleep(0.2)

        self.assertEqual(self.recorder.for_path(path), [])

    def test_renamed_file_is_queued_under_new_name(self):
        scanner = self._start_idle()
        old_path = os.path.join(self.scan_dir, "setup.exe.crdownload")
        new_path = self._write(self.scan_dir, "setup.exe")

        scanner.on_file_renamed(old_path, new_path)

        self.assertTrue(wait_until(lambda: self.recorder.has_status(new_path, ScanStatus.CLEAN)))
        pending = self.recorder.for_path(new_path)[0]
        self.assertEqual(pending.status, ScanStatus.PENDING)
        self.assertEqual(pending.message, "Renamed")
        self.assertEqual(pending.previous_path, old_path)

    def test_watchdog_events_are_forwarded(self):
        scanner = MagicMock()
        handler = ScanDirectoryHandler(scanner)

        handler.on_created(MagicMock(is_directory=False, src_path="/scan/a"))
        handler.on_created(MagicMock(is_directory=True, src_path="/scan/dir"))
        handler.on_moved(MagicMock(is_directory=False, src_path="/scan/a", dest_path="/scan/b"))
        handler.on_modified(MagicMock(is_directory=False, src_path="/scan/b"))

        scanner.on_file_created.assert_called_once_with("/scan/a")
        scanner.on_file_renamed.assert_called_once_with("/scan/a", "/scan/b")
        scanner.on_file_changed.assert_called_once_with("/scan/b")

    def test_enqueue_ignores_duplicates(self):
        scanner = self._scanner()
        path = self._write(self.scan_dir, "doc.txt")

        self.assertTrue(scanner.enqueue(path))
        self.assertFalse(scanner.enqueue(path))
        self.assertEqual(scanner.pending_count, 1)

    def test_start_creates_scan_directory(self):
        shutil.rmtree(self.scan_dir)
        scanner = self._scanner()

        self.assertTrue(scanner.start())

        self.assertTrue(os.path.isdir(self.scan_dir))
        self.assertTrue(any("Created scan directory" in m for m in self.recorder.messages))

    def test_start_without_scan_directory(self):
        self.store.current.paths.scan_directory = None
        scanner = self._scanner()

        self.assertFalse(scanner.start())
        self.watcher.start.assert_not_called()

    def test_stop(self):
        scanner = self._scanner()
        scanner.start()
        self.assertTrue(scanner.is_running)

        scanner.stop(timeout=2)

        self.watcher.stop.assert_called_once_with()
        self.assertFalse(scanner.is_running)

    def test_scan_log_file_is_written(self):
        path = self._write(self.scan_dir, "doc.txt")
        self._scanner().start()

        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.CLEAN)))

        with open(self.log_file, encoding='utf-8') as f:
            lines = f.read().splitlines()
        self.assertTrue(any(re.match(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}: File doc\.txt is CLEAN", line)
                            for line in lines))

    def test_failing_observer_does_not_stop_pipeline(self):
        broken = MagicMock(spec=ScanObserver)
        broken.on_scan_result.side_effect = RuntimeError("observer bug")
        broken.on_log_message.side_effect = RuntimeError("observer bug")
        path = self._write(self.scan_dir, "doc.txt")
        scanner = self._scanner()
        scanner.subscribe(broken)
        scanner.start()

        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.CLEAN)))

    def test_unsubscribed_observer_receives_nothing(self):
        scanner = self._scanner()
        scanner.unsubscribe(self.recorder)
        scanner.enqueue(self._write(self.scan_dir, "doc.txt"))

        self.assertEqual(self.recorder.results, [])

    def test_rate_limit_countdown_is_reported(self):
        limiter = RateLimiter()
        path = self._write(self.scan_dir, "doc.txt")

        def scan_file(file_path, cancel_event):
            limiter.notify_rate_limit_hit(2)
            time.sleep(0.2)
            limiter.notify_rate_limit_resolved()
            return CLEAN

        self.verdict_service.scan_file.side_effect = scan_file
        self._scanner(rate_limiter=limiter).start()

        self.assertTrue(wait_until(lambda: self.recorder.has_status(path, ScanStatus.CLEAN)))

        messages = [r.message for r in self.recorder.for_path(path) if r.status == ScanStatus.SCANNING]
        self.assertTrue(any(m.startswith("Waiting for rate limit:") for m in messages))
        self.assertEqual(messages[-1], "")
        self.assertEqual(limiter._hit_listeners, [])


class TestRateLimitCountdown(unittest.TestCase):

    def test_no_text_after_cancel(self):
        scanner = MagicMock()
        result = ScanResult("/scan/doc.txt", ScanStatus.SCANNING)
        countdown = _RateLimitCountdown(scanner, result, 0.01)

        countdown.on_hit(5)
        self.assertTrue(wait_until(lambda: scanner.publish.call_count >= 2))
        countdown.cancel()

        published = scanner.publish.call_count
        result.message = ""
        time.sleep(0.1)

        self.assertEqual(result.message, "")
        self.assertEqual(scanner.publish.call_count, published)

    def test_countdown_clears_text_when_wait_ends(self):
        scanner = MagicMock()
        result = ScanResult("/scan/doc.txt", ScanStatus.SCANNING)
        countdown = _RateLimitCountdown(scanner, result, 0.01)

        countdown.on_hit(0.03)

        self.assertTrue(wait_until(lambda: scanner.publish.call_count >= 2 and result.message == ""))
        self.assertTrue(countdown.used)


if __name__ == '__main__':
    unittest.main()
