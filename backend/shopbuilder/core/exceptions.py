class AppBuilderError(Exception):
    """Base exception for the app builder backend."""

    pass


class ValidationError(AppBuilderError):
    """Raised when caller input is rejected before any side effect."""

    pass


class NotFoundError(AppBuilderError):
    """Raised when a job or project does not exist."""

    pass


class AccessDeniedError(AppBuilderError):
    """Raised when the caller does not own the requested resource."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class UpstreamError(AppBuilderError):
    """Raised when an external service (LLM, sandbox) call fails."""

    pass


class SandboxError(UpstreamError):
    """Raised when sandbox operations fail."""

    pass


class LLMError(UpstreamError):
    """Raised when the LLM completion call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class StorageUnavailableError(AppBuilderError):
    """Raised when every job store backend failed a write."""

    pass


class JobTimeoutError(AppBuilderError):
    """Raised when a job reaches its ceiling without completing."""

    def __init__(self, job_id: str, seconds: float):
        self.job_id = job_id
        self.seconds = seconds
        super().__init__(f"Job {job_id} did not complete within {int(seconds)}s")


class DegradedStorageWarning(UserWarning):
    """Durable job store unavailable; the in-process fallback is in use.

    Recorded and logged, never raised to callers.
    """

    def __init__(self, operation: str, job_id: str, reason: str):
        self.operation = operation
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"{operation} for job {job_id} fell back to memory: {reason}")


class AmbiguousStallWarning(UserWarning):
    """The CLI exited without a completion marker or auth URL.

    The job continues in waiting_auth with the generic partner URL.
    """

    def __init__(self, job_id: str, fallback_url: str):
        self.job_id = job_id
        self.fallback_url = fallback_url
        super().__init__(f"Job {job_id} stalled; falling back to {fallback_url}")
