"""
Configuration settings for vtwatch.

This module loads configuration from the .env file and
defines constants used throughout the application.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from a .env file in the working directory
load_dotenv()


def _int_env(name, default):
    return int(os.getenv(name, str(default)) or default)


def _float_env(name, default):
    return float(os.getenv(name, str(default)) or default)


# API Settings
VT_API_KEY = os.getenv('VT_API_KEY', '')
VT_API_URL = os.getenv('VT_API_URL', 'https://www.virustotal.com/api/v3')
API_REQUEST_TIMEOUT = _float_env('API_REQUEST_TIMEOUT', 60)
# Socket timeout for large uploads to the one-time upload URL
UPLOAD_TIMEOUT_SECONDS = _float_env('UPLOAD_TIMEOUT_SECONDS', 300)

# File System Settings
SCAN_DIRECTORY = os.getenv('SCAN_DIRECTORY', str(Path.home() / 'vtwatch' / 'incoming'))
CLEAN_DIRECTORY = os.getenv('CLEAN_DIRECTORY', str(Path.home() / 'vtwatch' / 'clean'))
COMPROMISED_DIRECTORY = os.getenv('COMPROMISED_DIRECTORY', str(Path.home() / 'vtwatch' / 'compromised'))
SCAN_LOG_FILE = os.getenv('SCAN_LOG_FILE', '')
SETTINGS_FILE = os.getenv('SETTINGS_FILE', str(Path.home() / '.vtwatch' / 'settings.json'))

# Quota Settings (0 = unlimited)
QUOTA_PER_MINUTE = _int_env('QUOTA_PER_MINUTE', 4)
QUOTA_PER_DAY = _int_env('QUOTA_PER_DAY', 500)
QUOTA_PER_MONTH = _int_env('QUOTA_PER_MONTH', 15500)

# Upload Settings
MAX_FILE_SIZE_BYTES = _int_env('MAX_FILE_SIZE_BYTES', 681574400)
LARGE_FILE_THRESHOLD_BYTES = _int_env('LARGE_FILE_THRESHOLD_BYTES', 32 * 1024 * 1024)
POLLING_TIMEOUT_MINUTES = _float_env('POLLING_TIMEOUT_MINUTES', 15)
POLL_INTERVAL_SECONDS = _float_env('POLL_INTERVAL_SECONDS', 10)

# Monitoring Settings
LOCKED_FILE_RETRY_SECONDS = _float_env('LOCKED_FILE_RETRY_SECONDS', 30)
CREATE_DEBOUNCE_SECONDS = _float_env('CREATE_DEBOUNCE_SECONDS', 2)
QUEUE_IDLE_SECONDS = _float_env('QUEUE_IDLE_SECONDS', 1)

# Logging Settings
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FILE = os.getenv('LOG_FILE', '')
