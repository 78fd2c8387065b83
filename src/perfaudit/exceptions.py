"""Exceptions raised by the analysis pipeline."""


class PerfAuditError(Exception):
    """Base class for pipeline errors."""


class RateLimited(PerfAuditError):
    """Raised when a URL is resubmitted inside its cooldown window.

    Recoverable: the caller may retry after ``time_remaining`` seconds.
    """
    def __init__(self, url: str, time_remaining: int):
        self.url = url
        self.time_remaining = time_remaining
        self.message = (
            f"Please wait {time_remaining} seconds before analyzing {url} again."
        )
        super().__init__(self.message)


class QueueTimeout(PerfAuditError):
    """Raised when a queued job ages out before a slot frees up."""
    def __init__(self, job_id: str, waited_seconds: float):
        self.job_id = job_id
        self.waited_seconds = waited_seconds
        self.message = (
            f"Job {job_id} timed out after waiting {waited_seconds:.1f}s in the queue"
        )
        super().__init__(self.message)


class JobCanceled(PerfAuditError):
    """Raised to waiters of a queued job that was canceled."""
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} was canceled before it started")


class AnalysisFailure(PerfAuditError):
    """The external runner (or the post-processing) failed for an admitted job."""
    def __init__(self, job_id: str, url: str, message: str = ""):
        self.job_id = job_id
        self.url = url
        self.message = message or f"Analysis of {url} failed"
        super().__init__(self.message)


class InvariantViolation(PerfAuditError):
    """Internal bookkeeping bug (slot leak, negative counts). Always fatal."""
