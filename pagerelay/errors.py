"""Exception taxonomy shared by the lock, executor, and scheduler."""

from __future__ import annotations


class AgentError(Exception):
    """Base class for every failure the agent raises on purpose."""


class LockContendedError(AgentError):
    """Another holder owns a fresh lock record for the resource."""

    def __init__(self, resource: str) -> None:
        super().__init__(f"Failed to acquire lock for resource: {resource}")
        self.resource = resource


class TransportTimeout(AgentError):
    """The control server did not answer within the poll timeout."""


class TransportError(AgentError):
    """Any non-timeout failure talking to the control server while polling."""


class PageLoadTimeout(AgentError):
    """The page never signalled load completion; capture continues with partial content."""


class NetworkIdleTimeout(AgentError):
    """Same-origin requests never settled for a full quiet period."""

    def __init__(self, job_id: str, *, elapsed: float, active_urls: list[str]) -> None:
        super().__init__(f"Network idle timeout after {elapsed:.1f}s ({len(active_urls)} requests in flight)")
        self.job_id = job_id
        self.elapsed = elapsed
        self.active_urls = active_urls


class ExtractionError(AgentError):
    """Content extraction from the rendered page failed."""


class CaptureError(AgentError):
    """Full-page capture produced no tiles at all."""


class SubmitError(AgentError):
    """The control server rejected or never received the job result."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class JobTimeoutError(AgentError):
    """The whole job pipeline exceeded its hard ceiling."""

    def __init__(self, seconds: float) -> None:
        super().__init__(f"Processing timeout after {seconds:g} seconds")
        self.seconds = seconds


class JobFailedError(AgentError):
    """Wraps a job-local failure so the scheduler can log it without stopping."""

    def __init__(self, url: str, cause: BaseException, *, reported: bool) -> None:
        super().__init__(f"Processing failed for {url}: {cause}")
        self.url = url
        self.cause = cause
        self.reported = reported

    @property
    def is_timeout(self) -> bool:
        return isinstance(self.cause, (JobTimeoutError, NetworkIdleTimeout))
