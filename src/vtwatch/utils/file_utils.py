"""
File utility functions for vtwatch.

This module wraps the filesystem operations the scanner and the verdict client
depend on, so tests can replace them with a mock.
"""

import errno
import hashlib
import os
import shutil
from datetime import datetime
from typing import BinaryIO, List

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None

from vtwatch.utils.logger import get_logger

logger = get_logger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024

# Windows ERROR_SHARING_VIOLATION and ERROR_LOCK_VIOLATION
_SHARING_VIOLATIONS = (32, 33)
_LOCKING_UNSUPPORTED = (errno.ENOLCK, errno.EOPNOTSUPP, errno.EINVAL)
_LINK_UNSUPPORTED = (errno.EXDEV, errno.EPERM, errno.EOPNOTSUPP, errno.ENOSYS, errno.EMLINK)


def timestamped_name(file_name: str, now: datetime = None) -> str:
    """
    Insert a timestamp before the extension of a file name.

    Args:
        file_name: Original file name, e.g. "report.pdf"
        now: Time to use. Defaults to the current local time.

    Returns:
        A name such as "report_20240131235959.pdf"
    """
    stem, ext = os.path.splitext(file_name)
    stamp = (now or datetime.now()).strftime("%Y%m%d%H%M%S")
    return f"{stem}_{stamp}{ext}"


class FileOperations:
    """
    Filesystem operations used by the scanner.
    """

    def directory_exists(self, path: str) -> bool:
        return os.path.isdir(path)

    def create_directory(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)

    def get_files(self, path: str) -> List[str]:
        """
        List the regular files directly inside a directory.

        Args:
            path: Directory to list

        Returns:
            Sorted list of absolute file paths
        """
        files = []
        with os.scandir(path) as entries:
            for entry in entries:
                if entry.is_file():
                    files.append(os.path.abspath(entry.path))
        files.sort()
        return files

    def file_exists(self, path: str) -> bool:
        return os.path.isfile(path)

    def is_file_locked(self, path: str) -> bool:
        """
        Check whether another process holds the file open exclusively.

        On Windows an exclusively opened file cannot be opened at all. On POSIX
        systems the check also tries a non-blocking exclusive advisory lock.

        Args:
            path: File to check

        Returns:
            True if the file could not be opened or locked exclusively

        Raises:
            PermissionError: If access is denied for a reason other than sharing.
        """
        try:
            with open(path, 'rb') as f:
                if fcntl is not None:
                    try:
                        fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    except BlockingIOError:
                        return True
                    except OSError as e:
                        if e.errno not in _LOCKING_UNSUPPORTED:
                            raise
                        logger.debug(f"Advisory locks unsupported for {path}: {e}")
                        return False
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except FileNotFoundError:
            return False
        except PermissionError as e:
            if getattr(e, 'winerror', None) in _SHARING_VIOLATIONS:
                return True
            raise
        return False

    def calculate_sha256(self, path: str) -> str:
        """
        Hash the full contents of a file.

        Args:
            path: File to hash

        Returns:
            Lowercase hexadecimal SHA-256 digest
        """
        digest = hashlib.sha256()
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b''):
                digest.update(chunk)
        return digest.hexdigest()

    def move_file(self, source: str, destination: str) -> None:
        """
        Move a file without ever replacing an existing destination.

        Args:
            source: File to move
            destination: Target path, which must not exist

        Raises:
            FileExistsError: If the destination already exists.
        """
        try:
            # link fails atomically when the destination is taken
            os.link(source, destination)
        except FileExistsError:
            raise
        except OSError as e:
            if e.errno not in _LINK_UNSUPPORTED:
                raise
            if os.path.lexists(destination):
                raise FileExistsError(errno.EEXIST, "Destination already exists", destination)
            shutil.move(source, destination)
            return
        os.unlink(source)

    def delete_file(self, path: str) -> None:
        os.remove(path)

    def append_text(self, path: str, text: str) -> None:
        with open(path, 'a', encoding='utf-8') as f:
            f.write(text)

    def get_file_length(self, path: str) -> int:
        return os.path.getsize(path)

    def open_read(self, path: str) -> BinaryIO:
        return open(path, 'rb')
