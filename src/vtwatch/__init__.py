"""
vtwatch - watched-folder triage backed by the VirusTotal API.

Files dropped into the scan directory are hashed, looked up (or uploaded)
remotely and moved to a clean or compromised directory based on the verdict.
"""

__version__ = '0.1.0'
