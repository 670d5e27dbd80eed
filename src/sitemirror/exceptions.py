"""Error taxonomy for mirror jobs.

Component-local failures are converted to ``ErrorRecord`` entries at the
component boundary. Only ``InvariantViolation`` and ``JobCancelled`` cross
boundaries as exceptions.
"""

from typing import Optional

from sitemirror.models import ErrorRecord


class MirrorError(Exception):
    """Base class for all mirror errors."""

    retryable = False

    def __init__(self, message: str, url: Optional[str] = None):
        self.message = message
        self.url = url
        super().__init__(message)

    def to_record(self, phase: str = "", url: Optional[str] = None) -> ErrorRecord:
        """Convert to an ErrorRecord for a job or page errors list."""
        return ErrorRecord(
            url=url or self.url or "",
            error_type=type(self).__name__,
            message=self.message[:500],
            phase=phase,
        )


class NetworkError(MirrorError):
    """Transient network failure (connection reset, timeout, 5xx)."""

    retryable = True

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, url)
        self.status_code = status_code


class ChallengeUnsolved(MirrorError):
    """A protection challenge could not be resolved within its attempt budget."""

    retryable = True

    def __init__(self, message: str, url: Optional[str] = None, kind: Optional[str] = None):
        super().__init__(message, url)
        self.kind = kind


class ResourceTooLarge(MirrorError):
    """Resource exceeded the configured size limit and was skipped."""


class UnsupportedResource(MirrorError):
    """Resource scheme or type cannot be captured."""


class JobTimeout(MirrorError):
    """Per-page or job deadline reached. Terminal for the affected page."""


class JobCancelled(MirrorError):
    """The job was cancelled. Terminal for the job."""


class InvariantViolation(MirrorError):
    """A programming error, e.g. a content hash collision mismatch.

    Never converted into an error record.
    """


class RobotsDisallowed(MirrorError):
    """robots.txt disallows the URL and the job respects robots.txt."""
