"""
File name patterns for files that are still being written by another program.

Editors and browsers create lock files and partial downloads next to the real
file; these are never sent for scanning.
"""

import os
import re

skip_patterns = [
    # Office owner/lock files (~$report.docx)
    r'^~\$',
    # LibreOffice lock files (.~lock.report.odt#)
    r'^\.~lock\.',
    # Emacs lock files (.#notes.txt)
    r'^\.#',
    # partial downloads: Chrome, Firefox, Safari-style, Opera, uTorrent
    r'(?i)\.(crdownload|part|partial|download|opdownload|!ut)$',
    # temporary files
    r'(?i)\.tmp$',
]

_compiled_patterns = [re.compile(pattern) for pattern in skip_patterns]


def should_skip(path: str) -> bool:
    """
    Check whether a path looks like an in-progress write.

    Args:
        path: File path or bare file name

    Returns:
        True if the file name matches any skip pattern
    """
    name = os.path.basename(path)
    return any(pattern.search(name) for pattern in _compiled_patterns)
