"""
TruffleScan: find credentials in git history, hosting platforms,
filesystems, object storage, syslog streams and CI logs.
"""

__version__ = "1.2.0"
