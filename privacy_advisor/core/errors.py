from __future__ import annotations


class ScanError(RuntimeError):
    pass


class InvalidTargetError(ScanError, ValueError):
    pass


class BlockedTargetError(ScanError, ValueError):
    """Host is private/loopback/link-local (SSRF guard)."""

    def __init__(self, message: str, host: str | None = None):
        super().__init__(message)
        self.host = host


class ScanNotFoundError(ScanError):
    pass


class JobTimeoutError(ScanError):
    pass


class ListLoadError(ScanError):
    pass


class JobStalledError(ScanError):
    """Job was reclaimed after a lost lease more often than allowed."""
