"""
JSON persistence for the settings document.

The quota tracker and any settings editor share one SettingsStore; both must
hold ``store.lock`` across "read current state, mutate, persist".
"""

import json
import os
import tempfile
import threading

from vtwatch.models.settings import Settings
from vtwatch.utils.logger import get_logger

logger = get_logger(__name__)


class SettingsStore:
    """
    Loads and saves the settings document at a fixed path.
    """

    def __init__(self, file_path: str, settings: Settings = None):
        """
        Initialize the store.

        Args:
            file_path: Location of the settings JSON document.
            settings: Initial in-memory settings. If None, the document is loaded.
        """
        self.file_path = file_path
        self.lock = threading.RLock()
        self.current = settings if settings is not None else self.load()

    def read_document(self) -> dict:
        """
        Read the raw settings document.

        Returns:
            The decoded JSON object, or an empty dict if the file is missing or unreadable.
        """
        if not os.path.exists(self.file_path):
            logger.info(f"No settings file found at {self.file_path}, using defaults")
            return {}
        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Error parsing settings file {self.file_path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"Settings file {self.file_path} does not contain a JSON object")
            return {}
        return data

    def load(self) -> Settings:
        """
        Read the settings document from disk into ``current``.

        Returns:
            The parsed settings, or defaults if the file is missing or unreadable.
        """
        with self.lock:
            try:
                self.current = Settings.from_dict(self.read_document())
            except (ValueError, TypeError) as e:
                logger.error(f"Invalid values in settings file {self.file_path}: {e}")
                self.current = Settings()
            return self.current

    def save(self, settings: Settings = None) -> None:
        """
        Write the settings document, replacing the previous file atomically.

        Args:
            settings: Settings to persist. Defaults to the current settings.
        """
        with self.lock:
            if settings is not None:
                self.current = settings
            directory = os.path.dirname(os.path.abspath(self.file_path))
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix='.settings-', suffix='.tmp', dir=directory)
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(self.current.to_dict(), f, indent=2)
                os.replace(tmp_path, self.file_path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
