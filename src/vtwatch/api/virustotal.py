"""
VirusTotal API client.

This module provides the raw endpoints the verdict client needs. Every call
goes through one requests session carrying the API key header; when a rate
limiter is supplied the session is throttled by it.
"""

import threading
from typing import Any, BinaryIO, Dict, Optional

import requests

from vtwatch.config.settings import API_REQUEST_TIMEOUT, VT_API_URL
from vtwatch.core.rate_limiter import RateLimiter, ThrottlingAdapter
from vtwatch.errors import DeserializationError, raise_for_status
from vtwatch.utils.logger import get_logger

logger = get_logger(__name__)

API_KEY_HEADER = 'x-apikey'


class VirusTotalApi:
    """
    Client for the VirusTotal v3 API.
    """

    def __init__(self, api_key: str, base_url: str = VT_API_URL,
                 limiter: Optional[RateLimiter] = None,
                 cancel_event: Optional[threading.Event] = None,
                 timeout: float = API_REQUEST_TIMEOUT,
                 session: Optional[requests.Session] = None):
        """
        Initialize the VirusTotal client.

        Args:
            api_key: VirusTotal API key.
            base_url: API root, without a trailing slash.
            limiter: Per-minute limiter applied to every request.
            cancel_event: Aborts rate limiter waits when set.
            timeout: Per-request timeout in seconds.
            session: Pre-built session, mainly for tests.
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers[API_KEY_HEADER] = api_key

        if limiter is not None:
            adapter = ThrottlingAdapter(limiter, cancel_event)
            self.session.mount('https://', adapter)
            self.session.mount('http://', adapter)

        if not self.api_key:
            logger.warning("VirusTotal API key not set. API requests will fail.")

    def _request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        """
        Make a request to the VirusTotal API.

        Args:
            method: HTTP method
            endpoint: API endpoint relative to the base URL

        Returns:
            JSON response as a dictionary

        Raises:
            ApiError: For any non-success status (NotFoundError, RateLimitedError, ServerError).
            DeserializationError: If the body is not a JSON object.
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        raise_for_status(response.status_code, response.text, url)
        try:
            payload = response.json()
        except ValueError as e:
            raise DeserializationError(f"Invalid JSON from {endpoint}: {e}") from e
        if not isinstance(payload, dict):
            raise DeserializationError(f"Unexpected response from {endpoint}")
        return payload

    def get_file_report(self, file_hash: str) -> Dict[str, Any]:
        """
        Get the existing report for a file.

        Args:
            file_hash: SHA-256 of the file

        Returns:
            File object response

        Raises:
            NotFoundError: If VirusTotal has never seen the file.
        """
        return self._request('GET', f'files/{file_hash}')

    def upload_file(self, file_name: str, stream: BinaryIO) -> Dict[str, Any]:
        """
        Upload a file through the standard endpoint (32MB or less).

        Args:
            file_name: Name reported to VirusTotal
            stream: Open binary stream of the file contents

        Returns:
            Analysis descriptor response
        """
        return self._request('POST', 'files', files={'file': (file_name, stream)})

    def get_large_file_upload_url(self) -> str:
        """
        Get a one-time upload URL for files larger than 32MB.

        Returns:
            Absolute URL to POST the file to
        """
        payload = self._request('GET', 'files/upload_url')
        url = payload.get('data')
        if not isinstance(url, str) or not url:
            raise DeserializationError("Upload URL response did not contain a URL")
        return url

    def get_analysis(self, analysis_id: str) -> Dict[str, Any]:
        """
        Get the state of an analysis.

        Args:
            analysis_id: Identifier returned by an upload

        Returns:
            Analysis object response
        """
        return self._request('GET', f'analyses/{analysis_id}')


def _attributes(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    data = (payload or {}).get('data') or {}
    return data.get('attributes') or {}


def report_stats(report: Dict[str, Any]) -> Optional[Dict[str, int]]:
    """Detection statistics of a file report, or None if absent."""
    return _attributes(report).get('last_analysis_stats')


def analysis_status(analysis: Dict[str, Any]) -> Optional[str]:
    """Analysis status: "queued", "in-progress" or "completed"."""
    return _attributes(analysis).get('status')


def analysis_stats(analysis: Dict[str, Any]) -> Optional[Dict[str, int]]:
    """Detection statistics of a completed analysis, or None if absent."""
    return _attributes(analysis).get('stats')


def analysis_id(descriptor: Dict[str, Any]) -> Optional[str]:
    """Identifier from an upload response, or None if absent."""
    data = (descriptor or {}).get('data') or {}
    return data.get('id') or None
