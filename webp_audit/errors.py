"""
Scanner Errors
==============
Exception taxonomy shared by every scanner subsystem.

Per-page failures (``NavigationError``, ``PageTimeout``,
``PageSizeLimitExceeded``) are recovered inside the crawl loop.
Scan-level failures (``MemoryLimitExceeded``, ``ScanCancelled``) end the
scan and become the job's error message, except a shutdown cancel which
leaves the job resumable.
"""

from __future__ import annotations

from enum import Enum


class ScannerError(Exception):
    """Base class for all scanner errors."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationError(ScannerError):
    """Malformed or disallowed input. Never retried."""


class SecurityValidationError(ValidationError):
    """A host or connected address failed the SSRF checks."""

    def __init__(self, message: str, host: str = ""):
        super().__init__(f"Security validation failed: {message}")
        self.host = host


# ---------------------------------------------------------------------------
# Page-level
# ---------------------------------------------------------------------------

class NavigationError(ScannerError):
    """Browser navigation failed. Retried with backoff."""


class PageTimeout(NavigationError):
    """Navigation exceeded the per-page timeout."""


class PageSizeLimitExceeded(ScannerError):
    """Cumulative bytes for one page exceeded the configured budget."""

    def __init__(self, url: str, limit_bytes: int):
        super().__init__(f"Page {url} exceeded size limit of {limit_bytes} bytes")
        self.url = url
        self.limit_bytes = limit_bytes


# ---------------------------------------------------------------------------
# Scan-level
# ---------------------------------------------------------------------------

class MemoryLimitExceeded(ScannerError):
    """Process memory went over the per-scan ceiling."""

    def __init__(self, used_mb: float, limit_mb: int):
        super().__init__(
            f"Memory limit exceeded: {used_mb:.0f}MB used (limit {limit_mb}MB)"
        )
        self.used_mb = used_mb
        self.limit_mb = limit_mb


class CheckpointWriteFailure(ScannerError):
    """A background checkpoint write failed. Logged, never raised into a crawl."""


class InvalidTransition(ScannerError):
    """A scan job was moved between two statuses that are not connected."""


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

class QueueFullError(ScannerError):
    """The queue holds the maximum number of waiting scans."""


class SubmissionRejected(ScannerError):
    """The submitter hit the per-IP limit or is cooling down."""


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancelReason(str, Enum):
    """Why a running scan was cancelled."""
    TIMEOUT = "timeout"
    CALLER = "caller"
    SHUTDOWN = "shutdown"


class ScanCancelled(ScannerError):
    """Raised at unwind time once the cancel reason is known."""

    def __init__(self, reason: CancelReason, message: str = ""):
        super().__init__(message or f"Scan cancelled ({reason.value})")
        self.reason = reason
