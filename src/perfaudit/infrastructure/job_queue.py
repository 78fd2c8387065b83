"""
Analysis Admission Controller.

This module decides, for every analysis request, whether it runs now,
waits in a FIFO queue, or is rejected because the same URL was admitted
too recently.

All state (active slot count, wait queue, per-URL admission stamps) is
guarded by one lock. Every public method takes the lock, decides and
mutates, and releases it before returning; nothing long-running ever
happens while the lock is held. The analysis itself runs outside.
"""

import logging
import math
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from perfaudit.constants import (
    DEFAULT_MAX_CONCURRENT_ANALYSES,
    DEFAULT_RATE_LIMIT_SECONDS,
    RATE_LIMIT_RETENTION_FACTOR,
)
from perfaudit.exceptions import (
    InvariantViolation,
    JobCanceled,
    PerfAuditError,
    QueueTimeout,
    RateLimited,
)
from perfaudit.models import AnalysisJob, JobStatus, QueueState
from perfaudit.utils.url import is_normalized

logger = logging.getLogger(__name__)


# ============================================================================
# Admission results
# ============================================================================

@dataclass(frozen=True)
class AdmissionResult:
    """Outcome of ``submit``. One of Admitted, Queued or Rejected."""


@dataclass(frozen=True)
class Admitted(AdmissionResult):
    job: AnalysisJob


@dataclass(frozen=True)
class Queued(AdmissionResult):
    job: AnalysisJob
    position: int  # 1-based


@dataclass(frozen=True)
class Rejected(AdmissionResult):
    url: str
    error: RateLimited

    @property
    def time_remaining(self) -> int:
        return self.error.time_remaining


@dataclass(frozen=True)
class QueueTransition:
    """A queued job that left the queue as a side effect of another call.

    ``error`` is None when the job was admitted (status RUNNING); otherwise
    it carries the reason the job was failed or canceled.
    """
    job: AnalysisJob
    error: Optional[PerfAuditError] = None

    @property
    def admitted(self) -> bool:
        return self.error is None


@dataclass
class QueueMetrics:
    """Lifetime counters of the controller."""
    total_submitted: int
    total_admitted: int
    total_rejected: int
    total_completed: int
    total_failed: int
    total_timed_out: int
    total_canceled: int
    avg_wait_seconds: float


# ============================================================================
# Controller
# ============================================================================

class AdmissionController:
    """
    Bounded-concurrency admission with per-URL cooldown and FIFO waiting.

    Features:
    - At most ``max_concurrent`` jobs running at any time
    - Per-URL cooldown measured from admission time
    - Strict FIFO order among queued jobs
    - O(1) enqueue, dequeue and cancellation (insertion-ordered dict)
    - Optional maximum queue wait
    """

    def __init__(
        self,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT_ANALYSES,
        rate_limit_seconds: float = DEFAULT_RATE_LIMIT_SECONDS,
        max_queue_wait_seconds: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        """
        Initialize the controller.

        Args:
            max_concurrent: Number of execution slots
            rate_limit_seconds: Per-URL cooldown after admission
            max_queue_wait_seconds: Queued jobs older than this fail with QueueTimeout
            clock: Time source in seconds (defaults to time.time)
            id_factory: Job id generator (defaults to uuid4 hex)
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if rate_limit_seconds < 0:
            raise ValueError("rate_limit_seconds cannot be negative")

        self.max_concurrent = max_concurrent
        self.rate_limit_seconds = rate_limit_seconds
        self.max_queue_wait_seconds = max_queue_wait_seconds

        self._clock = clock or time.time
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)

        self._lock = threading.Lock()
        self._queue: "OrderedDict[str, AnalysisJob]" = OrderedDict()
        self._running: Dict[str, AnalysisJob] = {}
        self._last_admitted_at: Dict[str, float] = {}

        # Statistics
        self._total_submitted = 0
        self._total_admitted = 0
        self._total_rejected = 0
        self._total_completed = 0
        self._total_failed = 0
        self._total_timed_out = 0
        self._total_canceled = 0
        self._total_wait_time = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, url: str) -> AdmissionResult:
        """
        Admit, queue or reject a request for ``url``.

        Args:
            url: Normalized absolute URL

        Returns:
            Admitted, Queued (with 1-based position) or Rejected
        """
        if not is_normalized(url):
            raise ValueError(f"URL must be normalized before submission: {url!r}")

        with self._lock:
            now = self._clock()
            self._total_submitted += 1

            remaining = self._cooldown_remaining(url, now)
            if remaining:
                self._total_rejected += 1
                logger.info(f"Rate limited {url}: {remaining}s remaining")
                return Rejected(url=url, error=RateLimited(url, remaining))

            job = AnalysisJob(id=self._id_factory(), url=url, requested_at=now)

            if len(self._running) < self.max_concurrent:
                self._admit(job, now)
                return Admitted(job=job)

            self._queue[job.id] = job
            position = len(self._queue)
            logger.info(f"Queued {url} (job {job.id}) at position {position}")
            return Queued(job=job, position=position)

    def complete(self, job_id: str) -> List[QueueTransition]:
        """
        Mark a running job completed, release its slot and advance the queue.

        Returns:
            Queued jobs admitted or failed while advancing the queue
        """
        return self._release(job_id, JobStatus.COMPLETED)

    def fail(self, job_id: str, reason: str = "") -> List[QueueTransition]:
        """
        Mark a running job failed, release its slot and advance the queue.

        Returns:
            Queued jobs admitted or failed while advancing the queue
        """
        return self._release(job_id, JobStatus.FAILED, reason)

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a queued job without consuming a slot.

        Running jobs are not interrupted; they finish naturally.

        Returns:
            True if the job was removed from the queue
        """
        with self._lock:
            job = self._queue.pop(job_id, None)
            if job is None:
                if job_id in self._running:
                    logger.debug(f"Job {job_id} is already running; cancel ignored")
                return False

            job.status = JobStatus.CANCELED
            job.completed_at = self._clock()
            self._total_canceled += 1
            logger.info(f"Canceled queued job {job_id} ({job.url})")
            return True

    def expire(self, job_id: str) -> bool:
        """
        Fail a queued job with QueueTimeout, e.g. when its waiter gave up.

        Returns:
            True if the job was still queued and is now failed. False means
            it was already admitted (or finished) and must be treated as such.
        """
        with self._lock:
            job = self._queue.pop(job_id, None)
            if job is None:
                return False
            self._time_out(job, self._clock())
            return True

    def expire_stale(self) -> List[QueueTransition]:
        """
        Fail every queued job that exceeded ``max_queue_wait_seconds``.

        The queue is in arrival order, so only the head needs checking.
        """
        if self.max_queue_wait_seconds is None:
            return []

        transitions = []
        with self._lock:
            now = self._clock()
            while self._queue:
                job = next(iter(self._queue.values()))
                if not self._waited_too_long(job, now):
                    break
                self._queue.popitem(last=False)
                transitions.append(QueueTransition(job, self._time_out(job, now)))
        return transitions

    def prune_rate_limits(
        self, retention_factor: float = RATE_LIMIT_RETENTION_FACTOR
    ) -> int:
        """
        Drop admission stamps older than ``retention_factor`` x rate limit.

        Returns:
            Number of stamps removed
        """
        with self._lock:
            cutoff = self._clock() - self.rate_limit_seconds * retention_factor
            stale = [url for url, ts in self._last_admitted_at.items() if ts < cutoff]
            for url in stale:
                del self._last_admitted_at[url]

        if stale:
            logger.debug(f"Pruned {len(stale)} expired rate-limit entries")
        return len(stale)

    def shutdown(self) -> List[QueueTransition]:
        """
        Cancel every queued job. Running jobs keep their slots until they
        report completion or failure.
        """
        transitions = []
        with self._lock:
            now = self._clock()
            while self._queue:
                _, job = self._queue.popitem(last=False)
                job.status = JobStatus.CANCELED
                job.completed_at = now
                self._total_canceled += 1
                transitions.append(QueueTransition(job, JobCanceled(job.id)))

        if transitions:
            logger.info(f"Canceled {len(transitions)} queued jobs on shutdown")
        return transitions

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def status(self) -> QueueState:
        """Snapshot of the controller state for display."""
        with self._lock:
            return QueueState(
                active_analyses=len(self._running),
                queue_length=len(self._queue),
                max_concurrent=self.max_concurrent,
                rate_limit_seconds=self.rate_limit_seconds,
                last_admitted_at=dict(self._last_admitted_at),
            )

    def check_rate_limit(self, url: str) -> int:
        """Seconds until ``url`` may be admitted again (0 when allowed)."""
        with self._lock:
            return self._cooldown_remaining(url, self._clock())

    # Position lookups are for display. The lock is held only for an O(1)
    # membership check and a snapshot copy; the scan runs outside it.

    def position(self, job_id: str) -> int:
        """1-based queue position of a job, 0 when it is not queued."""
        with self._lock:
            if job_id not in self._queue:
                return 0
            snapshot = list(self._queue)
        return snapshot.index(job_id) + 1

    def position_for_url(self, url: str) -> int:
        """1-based position of the first queued job for ``url``, 0 if none."""
        for index, job in enumerate(self.queued_jobs(), start=1):
            if job.url == url:
                return index
        return 0

    def get_job(self, job_id: str) -> Optional[AnalysisJob]:
        """Look up a queued or running job."""
        with self._lock:
            return self._queue.get(job_id) or self._running.get(job_id)

    def queued_jobs(self) -> List[AnalysisJob]:
        """Queued jobs in admission order."""
        with self._lock:
            return list(self._queue.values())

    def get_metrics(self) -> QueueMetrics:
        """Lifetime counters snapshot."""
        with self._lock:
            admitted = self._total_admitted
            return QueueMetrics(
                total_submitted=self._total_submitted,
                total_admitted=admitted,
                total_rejected=self._total_rejected,
                total_completed=self._total_completed,
                total_failed=self._total_failed,
                total_timed_out=self._total_timed_out,
                total_canceled=self._total_canceled,
                avg_wait_seconds=self._total_wait_time / admitted if admitted else 0.0,
            )

    @property
    def active_analyses(self) -> int:
        return len(self._running)

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _cooldown_remaining(self, url: str, now: float) -> int:
        last = self._last_admitted_at.get(url)
        if last is None:
            return 0
        remaining = self.rate_limit_seconds - (now - last)
        if remaining <= 0:
            return 0
        return math.ceil(remaining)

    def _waited_too_long(self, job: AnalysisJob, now: float) -> bool:
        return (
            self.max_queue_wait_seconds is not None
            and now - job.requested_at >= self.max_queue_wait_seconds
        )

    def _admit(self, job: AnalysisJob, now: float) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = now
        self._running[job.id] = job
        self._last_admitted_at[job.url] = now
        self._total_admitted += 1
        self._total_wait_time += now - job.requested_at
        self._check_invariants()
        logger.debug(
            f"Admitted {job.url} (job {job.id}), "
            f"{len(self._running)}/{self.max_concurrent} slots in use"
        )

    def _time_out(self, job: AnalysisJob, now: float) -> QueueTimeout:
        waited = now - job.requested_at
        job.status = JobStatus.FAILED
        job.completed_at = now
        job.failure_reason = "queue timeout"
        self._total_timed_out += 1
        logger.warning(f"Job {job.id} ({job.url}) timed out after {waited:.1f}s in queue")
        return QueueTimeout(job.id, waited)

    def _release(
        self, job_id: str, status: JobStatus, reason: str = ""
    ) -> List[QueueTransition]:
        with self._lock:
            job = self._running.pop(job_id, None)
            if job is None:
                message = f"Release of job {job_id} which is not running"
                logger.critical(message)
                raise InvariantViolation(message)

            now = self._clock()
            job.status = status
            job.completed_at = now
            if status is JobStatus.FAILED:
                job.failure_reason = reason or "analysis failed"
                self._total_failed += 1
                logger.warning(f"Job {job_id} ({job.url}) failed: {job.failure_reason}")
            else:
                self._total_completed += 1

            self._check_invariants()
            return self._advance_queue(now)

    def _advance_queue(self, now: float) -> List[QueueTransition]:
        transitions = []
        while len(self._running) < self.max_concurrent and self._queue:
            _, job = self._queue.popitem(last=False)

            if self._waited_too_long(job, now):
                transitions.append(QueueTransition(job, self._time_out(job, now)))
                continue

            remaining = self._cooldown_remaining(job.url, now)
            if remaining:
                job.status = JobStatus.FAILED
                job.completed_at = now
                job.failure_reason = "rate limited"
                self._total_rejected += 1
                logger.info(
                    f"Queued job {job.id} for {job.url} became rate limited "
                    f"({remaining}s remaining)"
                )
                transitions.append(QueueTransition(job, RateLimited(job.url, remaining)))
                continue

            self._admit(job, now)
            transitions.append(QueueTransition(job))
        return transitions

    def _check_invariants(self) -> None:
        active = len(self._running)
        if not 0 <= active <= self.max_concurrent:
            message = (
                f"Active analyses out of bounds: {active} "
                f"(max {self.max_concurrent})"
            )
            logger.critical(message)
            raise InvariantViolation(message)
