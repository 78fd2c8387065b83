"""
Analysis Orchestrator.

Runs the full pipeline for one URL: admission, the external browser run,
waterfall analytics, comparison with the previous analysis and storage.

The admission controller is only consulted to decide and to record
completion; the external run is awaited outside of its lock. Every
admitted job reaches ``complete`` or ``fail`` exactly once, whatever
happens while it runs.
"""

import asyncio
import contextlib
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from perfaudit.comparison import ComparisonEngine
from perfaudit.config import OrchestratorConfig
from perfaudit.exceptions import AnalysisFailure, JobCanceled, QueueTimeout
from perfaudit.history import AbstractHistoryStore, InMemoryHistoryStore
from perfaudit.infrastructure.job_queue import (
    AdmissionController,
    QueueTransition,
    Queued,
    Rejected,
)
from perfaudit.models import (
    AnalysisJob,
    AnalysisRecord,
    AnalysisReport,
    HistorySummary,
    JobStatus,
    QueueState,
    RunnerOutput,
)
from perfaudit.utils.url import normalize_url
from perfaudit.waterfall_analyzer import WaterfallAnalyzer

logger = logging.getLogger(__name__)

# async (url, device_profiles) -> RunnerOutput
AnalysisRunner = Callable[[str, Sequence[str]], Awaitable[RunnerOutput]]


class AnalysisOrchestrator:
    """
    Owns one admission controller and drives analyses through it.

    Usage:
        async with AnalysisOrchestrator(runner) as orchestrator:
            report = await orchestrator.analyze("https://example.com")

    Several independent instances may coexist; nothing is module-global.
    """

    def __init__(
        self,
        runner: AnalysisRunner,
        history_store: Optional[AbstractHistoryStore] = None,
        config: Optional[OrchestratorConfig] = None,
        analyzer: Optional[WaterfallAnalyzer] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            runner: External browser runner producing timings and scores
            history_store: Store of previous analyses (in-memory by default)
            config: Orchestrator configuration
            analyzer: Waterfall analyzer (default thresholds if omitted)
            clock: Time source in seconds, shared with the controller
        """
        self.config = config or OrchestratorConfig()
        self.runner = runner
        self.history_store = history_store or InMemoryHistoryStore(
            max_per_url=self.config.max_history_per_url
        )
        self.analyzer = analyzer or WaterfallAnalyzer()
        self.comparison = ComparisonEngine(self.history_store)

        self._clock = clock or time.time
        self.controller = AdmissionController(
            max_concurrent=self.config.max_concurrent,
            rate_limit_seconds=self.config.rate_limit_seconds,
            max_queue_wait_seconds=self.config.max_queue_wait_seconds,
            clock=self._clock,
        )

        self._waiters: Dict[str, asyncio.Future] = {}
        self._housekeeping_task: Optional[asyncio.Task] = None
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Start the housekeeping task. Safe to call twice."""
        if self._started:
            return
        self._housekeeping_task = asyncio.create_task(self._housekeeping())
        self._started = True
        logger.info(
            f"Orchestrator started (max_concurrent={self.config.max_concurrent}, "
            f"rate_limit={self.config.rate_limit_seconds}s)"
        )

    async def shutdown(self) -> None:
        """Stop housekeeping and cancel every queued job.

        Running analyses are not interrupted; their slots are released when
        they finish.
        """
        if not self._started:
            return

        if self._housekeeping_task is not None:
            self._housekeeping_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._housekeeping_task
            self._housekeeping_task = None

        self._dispatch(self.controller.shutdown())
        self._started = False
        logger.info("Orchestrator stopped")

    async def __aenter__(self) -> "AnalysisOrchestrator":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    @property
    def is_started(self) -> bool:
        return self._started

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def analyze(self, url: str) -> AnalysisReport:
        """
        Analyze ``url`` end to end.

        Raises:
            ValueError: the URL is not an absolute http(s) URL
            RateLimited: the URL was admitted less than rate_limit_seconds ago
            QueueTimeout: the job waited longer than max_queue_wait_seconds
            JobCanceled: the queued job was canceled
            AnalysisFailure: the runner or post-processing failed
        """
        if not self._started:
            raise RuntimeError("Orchestrator not started. Call init() first.")

        result = self.controller.submit(normalize_url(url))
        if isinstance(result, Rejected):
            raise result.error

        job = result.job
        if isinstance(result, Queued):
            await self._wait_for_admission(job)

        return await self._run(job)

    async def _wait_for_admission(self, job: AnalysisJob) -> None:
        waiter = asyncio.get_running_loop().create_future()
        self._waiters[job.id] = waiter
        timeout = self.config.max_queue_wait_seconds

        try:
            if job.status is JobStatus.QUEUED:
                await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            if self.controller.expire(job.id):
                raise QueueTimeout(job.id, self._clock() - job.requested_at)
            if job.status is not JobStatus.RUNNING:
                raise
        except asyncio.CancelledError:
            if not self.controller.cancel(job.id) and job.status is JobStatus.RUNNING:
                # Admitted just before the caller went away; give the slot back
                self._dispatch(self.controller.fail(job.id, "caller canceled"))
            raise
        finally:
            self._waiters.pop(job.id, None)

    async def _run(self, job: AnalysisJob) -> AnalysisReport:
        succeeded = False
        reason = "analysis interrupted"
        try:
            output = await self.runner(job.url, self.config.device_profiles)
            report = self._build_report(job, output)
            succeeded = True
            return report
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            raise AnalysisFailure(job.id, job.url, reason) from exc
        finally:
            if succeeded:
                self._dispatch(self.controller.complete(job.id))
            else:
                self._dispatch(self.controller.fail(job.id, reason))

    def _build_report(self, job: AnalysisJob, output: RunnerOutput) -> AnalysisReport:
        if not output.resources:
            raise ValueError(
                f"Runner returned no device results ({output.errors or 'no errors reported'})"
            )

        for device in self.config.device_profiles:
            if device not in output.resources:
                logger.warning(
                    f"Job {job.id}: no {device} results "
                    f"({output.errors.get(device, 'not reported')}); continuing without it"
                )

        waterfall = self.analyzer.analyze_devices(output.resources, output.device_metrics)
        comparison = self.comparison.compare(job.url, output.scores)
        self.history_store.put(job.url, AnalysisRecord(
            url=job.url,
            scores=output.scores,
            analyzed_at=datetime.fromtimestamp(self._clock()),
            job_id=job.id,
        ))

        return AnalysisReport(
            job=job,
            scores=output.scores,
            waterfall=waterfall,
            comparison=comparison,
            device_errors=dict(output.errors),
        )

    # ------------------------------------------------------------------
    # Queue management
    # ------------------------------------------------------------------

    def cancel(self, job_id: str) -> bool:
        """Cancel a queued job. Running jobs are left to finish."""
        if not self.controller.cancel(job_id):
            return False
        self._resolve(job_id, JobCanceled(job_id))
        return True

    def status(self) -> QueueState:
        return self.controller.status()

    def queue_position(self, job_id: str) -> int:
        return self.controller.position(job_id)

    def queued_jobs(self) -> List[AnalysisJob]:
        return self.controller.queued_jobs()

    def check_rate_limit(self, url: str) -> int:
        """Seconds until ``url`` may be analyzed again (0 when allowed)."""
        return self.controller.check_rate_limit(normalize_url(url))

    def history_summary(self, url: str) -> HistorySummary:
        return self.comparison.history_summary(normalize_url(url))

    def _dispatch(self, transitions: Iterable[QueueTransition]) -> None:
        for transition in transitions:
            self._resolve(transition.job.id, transition.error)

    def _resolve(self, job_id: str, error: Optional[Exception]) -> None:
        waiter = self._waiters.get(job_id)
        if waiter is None or waiter.done():
            return
        if error is None:
            waiter.set_result(None)
        else:
            waiter.set_exception(error)

    async def _housekeeping(self) -> None:
        interval = self.config.cleanup_interval_seconds
        if self.config.max_queue_wait_seconds is not None:
            interval = min(interval, self.config.max_queue_wait_seconds)

        while True:
            await asyncio.sleep(interval)
            self.controller.prune_rate_limits(self.config.rate_limit_retention_factor)
            self._dispatch(self.controller.expire_stale())
