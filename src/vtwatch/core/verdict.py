"""
Remote verdict client.

Maps a local file to a verdict: look the hash up, upload the file when it is
unknown, then poll the analysis until it completes or times out. Every API
request is counted against the quota before it is made.
"""

import os
import threading
import time
from typing import Callable, Dict, Optional

import requests

from vtwatch.api.virustotal import (VirusTotalApi, analysis_id, analysis_stats,
                                    analysis_status, report_stats)
from vtwatch.config.settings import POLL_INTERVAL_SECONDS, UPLOAD_TIMEOUT_SECONDS
from vtwatch.config.store import SettingsStore
from vtwatch.core.quota import QuotaTracker
from vtwatch.errors import (DeserializationError, NotFoundError, OperationCancelledError,
                            RateLimitedError, ServerError, UploadRejectedError)
from vtwatch.models.scan import AnalysisJob, Verdict, VerdictResult
from vtwatch.utils.file_utils import FileOperations
from vtwatch.utils.logger import get_logger

logger = get_logger(__name__)

MAX_RETRIES = 3
INITIAL_RETRY_DELAY = 2.0

RETRIABLE_ERRORS = (RateLimitedError, ServerError, requests.ConnectionError, requests.Timeout)


class VirusTotalService:
    """
    Produces a verdict for a file using the VirusTotal API.
    """

    def __init__(self, api: VirusTotalApi, quota: QuotaTracker, store: SettingsStore,
                 file_ops: Optional[FileOperations] = None,
                 upload_session: Optional[requests.Session] = None,
                 poll_interval: float = POLL_INTERVAL_SECONDS,
                 max_retries: int = MAX_RETRIES,
                 retry_delay: float = INITIAL_RETRY_DELAY,
                 upload_timeout: float = UPLOAD_TIMEOUT_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the verdict client.

        Args:
            api: Client for the standard API endpoints.
            quota: Tracker every request is counted against.
            store: Settings store; size limits and the polling timeout are read on each scan.
            file_ops: Filesystem operations. Defaults to the real filesystem.
            upload_session: Session used for large-file uploads. It is separate from the
                API session because the one-time URL is on a different host.
            poll_interval: Seconds between analysis polls.
            max_retries: Additional attempts after a 429/5xx response.
            retry_delay: First retry delay in seconds; doubles on each retry.
            upload_timeout: Socket timeout in seconds for large-file uploads.
            clock: Monotonic clock used for the polling timeout.
        """
        self.api = api
        self.quota = quota
        self.store = store
        self.file_ops = file_ops or FileOperations()
        self.upload_session = upload_session
        self.poll_interval = poll_interval
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.upload_timeout = upload_timeout
        self._clock = clock

    def scan_file(self, file_path: str, cancel_event: Optional[threading.Event] = None) -> VerdictResult:
        """
        Get a verdict for a file.

        Args:
            file_path: File to scan
            cancel_event: Shutdown signal checked at every wait

        Returns:
            VerdictResult with the verdict, detection count and hash

        Raises:
            QuotaExceededError: If the daily or monthly cap is reached.
            OperationCancelledError: If cancel_event is set during a wait.
            ApiError: If retries are exhausted or a non-retriable HTTP error occurs.
        """
        self.quota.check_quota()

        file_hash = self.file_ops.calculate_sha256(file_path)
        file_name = os.path.basename(file_path)

        try:
            self.quota.increment_quota()
            report = self._with_retry(lambda: self.api.get_file_report(file_hash),
                                      cancel_event, f"Lookup of {file_name}")
            logger.info(f"Found existing report for {file_name}")
            return self._determine_verdict(report_stats(report), file_hash)
        except NotFoundError:
            logger.info(f"{file_name} is unknown to VirusTotal, uploading")

        self.quota.increment_quota()

        general = self.store.current.general
        length = self.file_ops.get_file_length(file_path)
        if length > general.max_file_size_bytes:
            message = (f"File size {length} bytes exceeds the upload limit of "
                       f"{general.max_file_size_bytes} bytes")
            logger.warning(f"{file_name}: {message}")
            return VerdictResult.failed(message, file_hash)

        try:
            if length > general.large_file_threshold_bytes:
                descriptor = self._upload_large_file(file_path, cancel_event)
            else:
                descriptor = self._upload_file(file_path, cancel_event)
        except (UploadRejectedError, DeserializationError) as e:
            logger.error(f"Upload of {file_name} failed: {e}")
            return VerdictResult.failed(str(e), file_hash)

        new_analysis_id = analysis_id(descriptor)
        if not new_analysis_id:
            logger.error(f"Upload of {file_name} returned no analysis ID")
            return VerdictResult.failed("Upload failed, no analysis ID returned.", file_hash)

        job = AnalysisJob(new_analysis_id, file_hash, file_path, self._clock())
        return self._poll_analysis(job, cancel_event)

    def _upload_file(self, file_path: str, cancel_event) -> Dict:
        file_name = os.path.basename(file_path)
        with self.file_ops.open_read(file_path) as stream:
            def upload():
                stream.seek(0)
                return self.api.upload_file(file_name, stream)

            return self._with_retry(upload, cancel_event, f"Upload of {file_name}")

    def _upload_large_file(self, file_path: str, cancel_event) -> Dict:
        """
        Upload a file above the standard endpoint's size limit.

        Returns:
            Analysis descriptor response

        Raises:
            UploadRejectedError: If the upload URL answers with a non-success status,
                times out or drops the connection.
            DeserializationError: If the upload response is not JSON.
            OperationCancelledError: If cancel_event is set before the upload starts.
        """
        file_name = os.path.basename(file_path)
        upload_url = self._with_retry(self.api.get_large_file_upload_url, cancel_event,
                                      f"Upload URL request for {file_name}")
        logger.info(f"Uploading large file {file_name} to one-time upload URL")

        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("Scan cancelled")

        session = self.upload_session or self._create_upload_session()
        try:
            with self.file_ops.open_read(file_path) as stream:
                response = session.post(upload_url, files={'file': (file_name, stream)},
                                        timeout=self.upload_timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise UploadRejectedError(f"Large file upload failed: {e}") from e

        if not response.ok:
            raise UploadRejectedError(f"Large file upload failed with HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as e:
            raise DeserializationError(f"Could not read large file upload response: {e}") from e
        if not isinstance(payload, dict):
            raise DeserializationError("Could not read large file upload response")
        return payload

    def _create_upload_session(self) -> requests.Session:
        session = requests.Session()
        session.headers['x-apikey'] = self.api.api_key
        self.upload_session = session
        return session

    def _poll_analysis(self, job: AnalysisJob, cancel_event) -> VerdictResult:
        """
        Poll an analysis until it completes or the polling timeout passes.

        Args:
            job: The analysis being waited on
            cancel_event: Shutdown signal

        Returns:
            Verdict of the completed analysis, or a failed result on timeout
        """
        file_name = os.path.basename(job.file_path)
        timeout_minutes = self.store.current.general.polling_timeout_minutes
        timeout_seconds = timeout_minutes * 60

        while True:
            self._sleep(self.poll_interval, cancel_event)

            if job.elapsed(self._clock()) > timeout_seconds:
                logger.warning(f"Analysis {job.analysis_id} for {file_name} timed out")
                return VerdictResult.failed(f"Analysis timed out after {timeout_minutes:g} minutes",
                                            job.file_hash)

            self.quota.increment_quota()
            try:
                analysis = self.api.get_analysis(job.analysis_id)
            except NotFoundError:
                logger.error(f"Analysis {job.analysis_id} for {file_name} disappeared")
                return VerdictResult.failed("Analysis not found on server", job.file_hash)

            status = analysis_status(analysis)
            if status == 'completed':
                return self._determine_verdict(analysis_stats(analysis), job.file_hash)
            logger.debug(f"Analysis {job.analysis_id} for {file_name} is {status}")

    def _with_retry(self, operation, cancel_event, description: str):
        """Run an API call, retrying 429 and 5xx responses with exponential backoff."""
        delay = self.retry_delay
        for attempt in range(self.max_retries + 1):
            try:
                return operation()
            except RETRIABLE_ERRORS as e:
                if attempt >= self.max_retries:
                    logger.error(f"{description} failed after {attempt + 1} attempts: {e}")
                    raise
                logger.warning(f"{description} failed ({e}), retrying in {delay:g}s "
                               f"(attempt {attempt + 1}/{self.max_retries})")
                self._sleep(delay, cancel_event)
                delay *= 2

    @staticmethod
    def _sleep(seconds: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is None:
            time.sleep(seconds)
        elif cancel_event.wait(seconds):
            raise OperationCancelledError("Scan cancelled")

    @staticmethod
    def _determine_verdict(stats: Optional[Dict[str, int]], file_hash: str) -> VerdictResult:
        if stats is None:
            return VerdictResult(Verdict.UNKNOWN, 0, file_hash)
        malicious = int(stats.get('malicious', 0) or 0)
        if malicious > 0:
            return VerdictResult(Verdict.COMPROMISED, malicious, file_hash)
        return VerdictResult(Verdict.CLEAN, 0, file_hash)
