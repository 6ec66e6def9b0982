"""
Data models for vtwatch.
"""

from .scan import AnalysisJob, ScanStatus, ScanResult, Verdict, VerdictResult
from .settings import QuotaSettings, GeneralSettings, PathsSettings, Settings
