"""
API module for vtwatch.

This module contains the connection to the VirusTotal v3 API.
"""

from vtwatch.api.virustotal import VirusTotalApi, analysis_id, analysis_stats, analysis_status, report_stats

__all__ = ['VirusTotalApi', 'analysis_id', 'analysis_stats', 'analysis_status', 'report_stats']
