"""
Exception hierarchy for the scan pipeline.

Provider errors are split into transient (retryable) and permanent
(fail immediately) so the retry policy can decide without inspecting
HTTP details. Scan/state errors are raised by the orchestrator for
operations the UI layer requested on a scan in the wrong state.
"""

from typing import Optional


class IdeaScanError(Exception):
    """Base class for all pipeline errors."""


# ============================================================================
# Provider / content-source errors
# ============================================================================


class ProviderError(IdeaScanError):
    """A language-model provider call failed."""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code

    def __str__(self) -> str:
        base = super().__str__()
        return f"[{self.provider}] {base}" if self.provider else base


class TransientProviderError(ProviderError):
    """Timeouts, connection errors, 408/429 and 5xx responses."""


class PermanentProviderError(ProviderError):
    """Bad credentials, malformed requests and unparseable responses."""


class RetryExhaustedError(IdeaScanError):
    """Transient retries were exhausted; wraps the last error."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        message = f"Gave up after {attempts} attempt(s)"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class ContentSourceError(IdeaScanError):
    """The content source rejected a request."""


class TransientSourceError(ContentSourceError):
    """The content source is rate limiting or temporarily unavailable."""


# ============================================================================
# Scan / orchestration errors
# ============================================================================


class TopicNotFoundError(IdeaScanError):
    pass


class ScanNotFoundError(IdeaScanError):
    pass


class InvalidScanStateError(IdeaScanError):
    """Requested operation is not valid for the scan's current status."""

    def __init__(self, scan_id, status: str, operation: str):
        super().__init__(f"Cannot {operation} scan {scan_id} in status '{status}'")
        self.scan_id = scan_id
        self.status = status
        self.operation = operation
