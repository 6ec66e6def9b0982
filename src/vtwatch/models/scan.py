import copy
import os
from enum import Enum
from typing import Optional

REPORT_URL_TEMPLATE = "https://www.virustotal.com/gui/file/{}"


class ScanStatus(Enum):
    """Externally visible state of a file in the scan pipeline."""
    PENDING = "pending"
    PENDING_LOCKED = "pending_locked"
    SCANNING = "scanning"
    CLEAN = "clean"
    COMPROMISED = "compromised"
    FAILED = "failed"
    SKIPPED = "skipped"
    REMOVED = "removed"

    @property
    def is_terminal(self):
        return self in (ScanStatus.CLEAN, ScanStatus.COMPROMISED, ScanStatus.FAILED,
                        ScanStatus.SKIPPED, ScanStatus.REMOVED)


_STATUS_DISPLAY = {
    ScanStatus.PENDING: "Pending",
    ScanStatus.PENDING_LOCKED: "Pending (Locked)",
    ScanStatus.SCANNING: "Scanning...",
    ScanStatus.CLEAN: "Clean",
    ScanStatus.COMPROMISED: "Compromised",
    ScanStatus.FAILED: "Failed",
    ScanStatus.SKIPPED: "Skipped",
    ScanStatus.REMOVED: "Removed",
}


class ScanResult:
    """Observable record of one file's progress, keyed by full path"""

    def __init__(self, full_path, status=ScanStatus.PENDING, detection_count=0,
                 file_hash="", message="", previous_path=None):
        self.full_path = full_path
        self.file_name = os.path.basename(full_path)
        self.status = status
        self.detection_count = detection_count
        self.file_hash = file_hash
        self.message = message
        # Set on rename events so a presentation layer can re-target its row
        self.previous_path = previous_path

    @property
    def report_url(self) -> str:
        if not self.file_hash:
            return ""
        return REPORT_URL_TEMPLATE.format(self.file_hash)

    @property
    def status_display(self) -> str:
        return _STATUS_DISPLAY.get(self.status, self.status.value)

    def snapshot(self) -> 'ScanResult':
        """Return a copy that observers can keep without seeing later mutations."""
        return copy.copy(self)

    def to_dict(self):
        """Convert scan result to dictionary"""
        return {
            'file_name': self.file_name,
            'full_path': self.full_path,
            'status': self.status.value,
            'detection_count': self.detection_count,
            'file_hash': self.file_hash,
            'message': self.message,
            'report_url': self.report_url,
            'previous_path': self.previous_path,
        }

    def __repr__(self):
        return f"ScanResult({self.full_path!r}, {self.status.name}, detections={self.detection_count})"


class Verdict(Enum):
    """Outcome of remote analysis."""
    CLEAN = "clean"
    COMPROMISED = "compromised"
    UNKNOWN = "unknown"
    FAILED = "failed"


class VerdictResult:
    """Verdict for one file together with its hash and detection count."""

    def __init__(self, verdict: Verdict, detection_count: int = 0, file_hash: str = "",
                 message: Optional[str] = None):
        self.verdict = verdict
        self.detection_count = detection_count
        self.file_hash = file_hash
        self.message = message

    @classmethod
    def failed(cls, message: str, file_hash: str = "") -> 'VerdictResult':
        return cls(Verdict.FAILED, 0, file_hash, message)

    def __eq__(self, other):
        if not isinstance(other, VerdictResult):
            return NotImplemented
        return (self.verdict, self.detection_count, self.file_hash, self.message) == \
            (other.verdict, other.detection_count, other.file_hash, other.message)

    def __repr__(self):
        return (f"VerdictResult({self.verdict.name}, detections={self.detection_count}, "
                f"hash={self.file_hash!r}, message={self.message!r})")


class AnalysisJob:
    """A remote analysis being polled for one local file."""

    def __init__(self, analysis_id: str, file_hash: str, file_path: str, start_time: float):
        self.analysis_id = analysis_id
        self.file_hash = file_hash
        self.file_path = file_path
        self.start_time = start_time

    def elapsed(self, now: float) -> float:
        return now - self.start_time
