"""
Configuration module for vtwatch.
"""

from vtwatch.config import settings as env
from vtwatch.config.store import SettingsStore
from vtwatch.models.settings import GeneralSettings, PathsSettings, QuotaSettings, Settings


def default_settings() -> Settings:
    """Build settings from environment variables alone."""
    return Settings(
        quota=QuotaSettings(
            per_minute=env.QUOTA_PER_MINUTE,
            per_day=env.QUOTA_PER_DAY,
            per_month=env.QUOTA_PER_MONTH,
        ),
        general=GeneralSettings(
            max_file_size_bytes=env.MAX_FILE_SIZE_BYTES,
            large_file_threshold_bytes=env.LARGE_FILE_THRESHOLD_BYTES,
            polling_timeout_minutes=env.POLLING_TIMEOUT_MINUTES,
        ),
        paths=PathsSettings(
            scan_directory=env.SCAN_DIRECTORY,
            clean_directory=env.CLEAN_DIRECTORY,
            compromised_directory=env.COMPROMISED_DIRECTORY,
            log_file_path=env.SCAN_LOG_FILE or None,
        ),
    )


def get_settings(settings_file=None) -> SettingsStore:
    """Get a settings store seeded from the environment and the settings file.

    Values present in the settings document override the environment defaults;
    usage counters only ever come from the document.

    Args:
        settings_file (str, optional): Path of the settings document.

    Returns:
        SettingsStore: Store holding the merged settings.
    """
    settings_file = settings_file or env.SETTINGS_FILE
    merged = default_settings()
    store = SettingsStore(settings_file, merged)
    document = store.read_document()

    quota_doc = document.get('Quota') or {}
    stored_quota = QuotaSettings.from_dict(quota_doc)
    merged.quota.used_today = stored_quota.used_today
    merged.quota.used_this_month = stored_quota.used_this_month
    merged.quota.last_used_date = stored_quota.last_used_date
    for key, name in (('PerMinute', 'per_minute'), ('PerDay', 'per_day'), ('PerMonth', 'per_month')):
        if quota_doc.get(key) is not None:
            setattr(merged.quota, name, getattr(stored_quota, name))

    general_doc = document.get('General') or {}
    stored_general = GeneralSettings.from_dict(general_doc)
    for key, name in (('MaxFileSizeBytes', 'max_file_size_bytes'),
                      ('LargeFileThresholdBytes', 'large_file_threshold_bytes'),
                      ('PollingTimeoutMinutes', 'polling_timeout_minutes')):
        if general_doc.get(key) is not None:
            setattr(merged.general, name, getattr(stored_general, name))

    for name, value in vars(PathsSettings.from_dict(document.get('Paths') or {})).items():
        if value:
            setattr(merged.paths, name, value)

    return store
