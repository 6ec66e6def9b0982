"""
Settings containers for vtwatch.

The settings document is stored as JSON with PascalCase groups
(``Quota``, ``General``, ``Paths``). These classes convert between that
document and attribute access.
"""

from datetime import datetime
from typing import Any, Dict, Optional

DEFAULT_MAX_FILE_SIZE_BYTES = 681574400  # ~650MB
DEFAULT_LARGE_FILE_THRESHOLD_BYTES = 32 * 1024 * 1024
DEFAULT_POLLING_TIMEOUT_MINUTES = 15


def _parse_datetime(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


class QuotaSettings:
    """Configured request caps (0 = unlimited) and usage counters."""

    def __init__(self, per_minute=4, per_day=0, per_month=0, used_today=0,
                 used_this_month=0, last_used_date=None):
        self.per_minute = per_minute
        self.per_day = per_day
        self.per_month = per_month
        self.used_today = used_today
        self.used_this_month = used_this_month
        self.last_used_date = last_used_date

    def to_dict(self) -> Dict[str, Any]:
        return {
            'PerMinute': self.per_minute,
            'PerDay': self.per_day,
            'PerMonth': self.per_month,
            'UsedToday': self.used_today,
            'UsedThisMonth': self.used_this_month,
            'LastUsedDate': self.last_used_date.isoformat() if self.last_used_date else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QuotaSettings':
        return cls(
            per_minute=int(data.get('PerMinute', 4) or 0),
            per_day=int(data.get('PerDay', 0) or 0),
            per_month=int(data.get('PerMonth', 0) or 0),
            used_today=int(data.get('UsedToday', 0) or 0),
            used_this_month=int(data.get('UsedThisMonth', 0) or 0),
            last_used_date=_parse_datetime(data.get('LastUsedDate')),
        )


class GeneralSettings:
    """Limits applied by the verdict client."""

    def __init__(self, max_file_size_bytes=DEFAULT_MAX_FILE_SIZE_BYTES,
                 large_file_threshold_bytes=DEFAULT_LARGE_FILE_THRESHOLD_BYTES,
                 polling_timeout_minutes=DEFAULT_POLLING_TIMEOUT_MINUTES):
        self.max_file_size_bytes = max_file_size_bytes
        self.large_file_threshold_bytes = large_file_threshold_bytes
        self.polling_timeout_minutes = polling_timeout_minutes

    def to_dict(self) -> Dict[str, Any]:
        return {
            'MaxFileSizeBytes': self.max_file_size_bytes,
            'LargeFileThresholdBytes': self.large_file_threshold_bytes,
            'PollingTimeoutMinutes': self.polling_timeout_minutes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GeneralSettings':
        return cls(
            max_file_size_bytes=int(data.get('MaxFileSizeBytes', DEFAULT_MAX_FILE_SIZE_BYTES)),
            large_file_threshold_bytes=int(data.get('LargeFileThresholdBytes',
                                                    DEFAULT_LARGE_FILE_THRESHOLD_BYTES)),
            polling_timeout_minutes=float(data.get('PollingTimeoutMinutes',
                                                   DEFAULT_POLLING_TIMEOUT_MINUTES)),
        )


class PathsSettings:
    """Watched, destination and audit-log locations."""

    def __init__(self, scan_directory=None, clean_directory=None,
                 compromised_directory=None, log_file_path=None):
        self.scan_directory = scan_directory
        self.clean_directory = clean_directory
        self.compromised_directory = compromised_directory
        self.log_file_path = log_file_path

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ScanDirectory': self.scan_directory,
            'CleanDirectory': self.clean_directory,
            'CompromisedDirectory': self.compromised_directory,
            'LogFilePath': self.log_file_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PathsSettings':
        return cls(
            scan_directory=data.get('ScanDirectory'),
            clean_directory=data.get('CleanDirectory'),
            compromised_directory=data.get('CompromisedDirectory'),
            log_file_path=data.get('LogFilePath'),
        )


class Settings:
    """The full settings document."""

    def __init__(self, quota=None, general=None, paths=None):
        self.quota = quota or QuotaSettings()
        self.general = general or GeneralSettings()
        self.paths = paths or PathsSettings()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'Quota': self.quota.to_dict(),
            'General': self.general.to_dict(),
            'Paths': self.paths.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Settings':
        return cls(
            quota=QuotaSettings.from_dict(data.get('Quota') or {}),
            general=GeneralSettings.from_dict(data.get('General') or {}),
            paths=PathsSettings.from_dict(data.get('Paths') or {}),
        )
