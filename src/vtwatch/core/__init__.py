"""
Core module for vtwatch.

This module contains the scan pipeline, the verdict client and the
quota and rate limiting components it depends on.
"""
