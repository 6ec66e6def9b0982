"""
Utilities module for vtwatch.

This module contains utility functions and classes used throughout the application.
"""

from .logger import get_logger, setup_logging
