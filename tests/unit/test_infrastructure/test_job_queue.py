"""Unit tests for AdmissionController.

Covers slot accounting, per-URL cooldown, FIFO admission, cancellation
and queue timeouts using a manually advanced clock.
"""

import itertools
import random
import threading

import pytest

from perfaudit.exceptions import InvariantViolation, QueueTimeout, RateLimited
from perfaudit.infrastructure.job_queue import (
    AdmissionController,
    Admitted,
    Queued,
    Rejected,
)
from perfaudit.models import JobStatus


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def url(n) -> str:
    return f"https://site{n}.example.com/"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def controller(clock):
    """Two slots, 30 second cooldown, sequential job ids."""
    counter = itertools.count(1)
    return AdmissionController(
        max_concurrent=2,
        rate_limit_seconds=30,
        clock=clock,
        id_factory=lambda: f"job-{next(counter)}",
    )


class TestSubmit:
    """Tests for the three admission outcomes."""

    def test_admits_when_slot_free(self, controller):
        result = controller.submit(url("a"))

        assert isinstance(result, Admitted)
        assert result.job.status == JobStatus.RUNNING
        assert result.job.started_at == 0.0
        assert controller.status().active_analyses == 1

    def test_scenario_two_slots_third_queued(self, controller, clock):
        """A and B admitted, C queued at 1; A completes and C is admitted."""
        a = controller.submit(url("a"))
        b = controller.submit(url("b"))
        c = controller.submit(url("c"))

        assert isinstance(a, Admitted)
        assert isinstance(b, Admitted)
        assert isinstance(c, Queued)
        assert c.position == 1
        assert c.job.status == JobStatus.QUEUED
        assert controller.status().active_analyses == 2

        clock.advance(5)
        transitions = controller.complete(a.job.id)

        assert [t.job.id for t in transitions] == [c.job.id]
        assert transitions[0].admitted
        assert c.job.status == JobStatus.RUNNING
        assert c.job.started_at == 5
        state = controller.status()
        assert state.active_analyses == 2
        assert state.queue_length == 0

    def test_queue_positions_are_one_based(self, controller):
        controller.submit(url("a"))
        controller.submit(url("b"))
        positions = [controller.submit(url(n)).position for n in ("c", "d", "e")]

        assert positions == [1, 2, 3]

    def test_rejects_non_normalized_url(self, controller):
        with pytest.raises(ValueError):
            controller.submit("https://Example.com/path?q=1")

    def test_ipv6_host(self, controller):
        result = controller.submit("http://[::1]:8080/x")

        assert isinstance(result, Admitted)
        assert result.job.url == "http://[::1]:8080/x"

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            AdmissionController(max_concurrent=0)
        with pytest.raises(ValueError):
            AdmissionController(rate_limit_seconds=-1)


class TestRateLimiting:
    """Tests for the per-URL cooldown."""

    def test_resubmit_within_cooldown_rejected(self, controller, clock):
        controller.submit("https://example.com/")
        clock.advance(10)

        result = controller.submit("https://example.com/")

        assert isinstance(result, Rejected)
        assert isinstance(result.error, RateLimited)
        assert result.time_remaining == 20

    def test_time_remaining_rounds_up(self, controller, clock):
        controller.submit("https://example.com/")
        clock.advance(10.2)

        assert controller.submit("https://example.com/").time_remaining == 20

    def test_time_remaining_non_increasing(self, controller, clock):
        controller.submit("https://example.com/")
        remaining = []
        for _ in range(12):
            clock.advance(2.3)
            result = controller.submit("https://example.com/")
            if isinstance(result, Rejected):
                remaining.append(result.time_remaining)

        assert remaining
        assert all(a >= b for a, b in zip(remaining, remaining[1:]))

    def test_allowed_after_cooldown(self, controller, clock):
        first = controller.submit("https://example.com/")
        controller.complete(first.job.id)
        clock.advance(30)

        assert isinstance(controller.submit("https://example.com/"), Admitted)

    def test_cooldown_starts_at_admission_not_completion(self, controller, clock):
        first = controller.submit("https://example.com/")
        clock.advance(25)
        controller.complete(first.job.id)
        clock.advance(5)

        # 30s after admission, even though completion was only 5s ago
        assert isinstance(controller.submit("https://example.com/"), Admitted)

    def test_rejection_does_not_consume_slot(self, controller, clock):
        controller.submit("https://example.com/")
        clock.advance(1)
        controller.submit("https://example.com/")

        assert controller.status().active_analyses == 1

    def test_queued_duplicate_rejected_when_popped(self, controller, clock):
        """Two queued requests for the same URL: the second becomes rate limited."""
        a = controller.submit(url("a"))
        b = controller.submit(url("b"))
        first = controller.submit(url("c"))
        second = controller.submit(url("c"))
        assert isinstance(first, Queued) and isinstance(second, Queued)

        clock.advance(1)
        controller.complete(a.job.id)
        transitions = controller.complete(b.job.id)

        assert first.job.status == JobStatus.RUNNING
        assert second.job.status == JobStatus.FAILED
        assert isinstance(transitions[0].error, RateLimited)
        assert controller.status().active_analyses == 1

    def test_check_rate_limit(self, controller, clock):
        assert controller.check_rate_limit("https://example.com/") == 0
        controller.submit("https://example.com/")
        clock.advance(12)
        assert controller.check_rate_limit("https://example.com/") == 18

    def test_prune_rate_limits(self, controller, clock):
        controller.submit(url("a"))
        clock.advance(45)
        controller.submit(url("b"))
        clock.advance(20)

        removed = controller.prune_rate_limits(retention_factor=2)

        assert removed == 1
        assert list(controller.status().last_admitted_at) == [url("b")]


class TestRelease:
    """Tests for complete/fail slot accounting."""

    def test_fail_releases_slot(self, controller):
        before = controller.status().active_analyses
        job = controller.submit(url("a")).job

        controller.fail(job.id, "runner crashed")

        assert controller.status().active_analyses == before
        assert job.status == JobStatus.FAILED
        assert job.failure_reason == "runner crashed"

    def test_fail_advances_queue(self, controller):
        a = controller.submit(url("a"))
        controller.submit(url("b"))
        c = controller.submit(url("c"))

        controller.fail(a.job.id)

        assert c.job.status == JobStatus.RUNNING

    def test_double_release_is_invariant_violation(self, controller):
        job = controller.submit(url("a")).job
        controller.complete(job.id)

        with pytest.raises(InvariantViolation):
            controller.complete(job.id)
        assert controller.status().active_analyses == 0

    def test_release_unknown_job(self, controller):
        with pytest.raises(InvariantViolation):
            controller.fail("does-not-exist")

    def test_fifo_order(self, clock):
        controller = AdmissionController(max_concurrent=1, rate_limit_seconds=0, clock=clock)
        running = controller.submit(url(0)).job
        queued = [controller.submit(url(n)).job for n in range(1, 6)]

        admitted_order = []
        for _ in queued:
            transitions = controller.complete(running.id)
            running = transitions[0].job
            admitted_order.append(running.id)

        assert admitted_order == [job.id for job in queued]

    def test_random_interleavings_respect_bounds(self, clock):
        rng = random.Random(1234)
        controller = AdmissionController(max_concurrent=3, rate_limit_seconds=0, clock=clock)
        running = []

        for step in range(500):
            clock.advance(0.1)
            if running and rng.random() < 0.5:
                job_id = running.pop(rng.randrange(len(running)))
                release = controller.complete if rng.random() < 0.5 else controller.fail
                transitions = release(job_id)
                running.extend(t.job.id for t in transitions if t.admitted)
            else:
                result = controller.submit(url(step))
                if isinstance(result, Admitted):
                    running.append(result.job.id)

            state = controller.status()
            assert 0 <= state.active_analyses <= state.max_concurrent
            assert state.active_analyses == len(running)
            assert state.queue_length >= 0


class TestCancel:
    """Tests for queued-job cancellation."""

    def test_cancel_queued_job(self, controller):
        controller.submit(url("a"))
        controller.submit(url("b"))
        c = controller.submit(url("c"))
        d = controller.submit(url("d"))

        assert controller.cancel(c.job.id) is True
        assert c.job.status == JobStatus.CANCELED
        assert controller.status().queue_length == 1
        assert controller.status().active_analyses == 2
        assert controller.position(d.job.id) == 1

    def test_cancel_running_job_is_ignored(self, controller):
        job = controller.submit(url("a")).job

        assert controller.cancel(job.id) is False
        assert job.status == JobStatus.RUNNING

    def test_canceled_job_skipped_on_release(self, controller):
        a = controller.submit(url("a"))
        controller.submit(url("b"))
        c = controller.submit(url("c"))
        d = controller.submit(url("d"))
        controller.cancel(c.job.id)

        transitions = controller.complete(a.job.id)

        assert [t.job.id for t in transitions] == [d.job.id]

    def test_shutdown_cancels_queue(self, controller):
        controller.submit(url("a"))
        controller.submit(url("b"))
        c = controller.submit(url("c"))

        transitions = controller.shutdown()

        assert [t.job.id for t in transitions] == [c.job.id]
        assert c.job.status == JobStatus.CANCELED
        assert controller.status().active_analyses == 2


class TestQueueTimeout:
    """Tests for max queue wait."""

    @pytest.fixture
    def timed(self, clock):
        return AdmissionController(
            max_concurrent=1,
            rate_limit_seconds=0,
            max_queue_wait_seconds=10,
            clock=clock,
        )

    def test_expire_stale(self, timed, clock):
        timed.submit(url("a"))
        old = timed.submit(url("b")).job
        clock.advance(6)
        young = timed.submit(url("c")).job
        clock.advance(5)

        transitions = timed.expire_stale()

        assert [t.job.id for t in transitions] == [old.id]
        assert isinstance(transitions[0].error, QueueTimeout)
        assert old.status == JobStatus.FAILED
        assert young.status == JobStatus.QUEUED
        assert timed.status().active_analyses == 1

    def test_timed_out_job_not_admitted_on_release(self, timed, clock):
        running = timed.submit(url("a")).job
        stale = timed.submit(url("b")).job
        clock.advance(11)
        fresh_result = timed.submit(url("c"))

        transitions = timed.complete(running.id)

        assert stale.status == JobStatus.FAILED
        assert fresh_result.job.status == JobStatus.RUNNING
        assert [t.admitted for t in transitions] == [False, True]

    def test_expire_single_job(self, timed):
        timed.submit(url("a"))
        queued = timed.submit(url("b")).job

        assert timed.expire(queued.id) is True
        assert timed.expire(queued.id) is False
        assert queued.status == JobStatus.FAILED

    def test_expire_stale_disabled_without_timeout(self, controller, clock):
        controller.submit(url("a"))
        controller.submit(url("b"))
        controller.submit(url("c"))
        clock.advance(10_000)

        assert controller.expire_stale() == []


class TestStatus:
    """Tests for read-only views."""

    def test_status_snapshot_is_a_copy(self, controller):
        controller.submit(url("a"))
        state = controller.status()
        state.last_admitted_at.clear()

        assert url("a") in controller.status().last_admitted_at

    def test_position_for_url(self, controller):
        controller.submit(url("a"))
        controller.submit(url("b"))
        controller.submit(url("c"))

        assert controller.position_for_url(url("c")) == 1
        assert controller.position_for_url(url("a")) == 0

    def test_metrics(self, controller, clock):
        a = controller.submit(url("a"))
        controller.submit(url("b"))
        controller.submit(url("c"))
        clock.advance(4)
        controller.complete(a.job.id)
        controller.submit(url("a"))

        metrics = controller.get_metrics()
        assert metrics.total_submitted == 4
        assert metrics.total_admitted == 3
        assert metrics.total_rejected == 1
        assert metrics.total_completed == 1
        assert metrics.avg_wait_seconds == pytest.approx(4 / 3)

    def test_positions_after_cancel_and_admission(self, controller):
        a = controller.submit(url("a"))
        controller.submit(url("b"))
        c = controller.submit(url("c"))
        d = controller.submit(url("d"))
        e = controller.submit(url("e"))

        controller.cancel(d.job.id)
        assert controller.position(c.job.id) == 1
        assert controller.position(e.job.id) == 2
        assert controller.position(d.job.id) == 0

        controller.complete(a.job.id)
        assert controller.position(c.job.id) == 0
        assert controller.position(e.job.id) == 1
        assert controller.position_for_url(url("e")) == 1
        assert controller.position_for_url(url("c")) == 0

    def test_position_of_unknown_job(self, controller):
        assert controller.position("nope") == 0


class TestThreadSafety:
    """Concurrent submit/complete from real threads."""

    def test_concurrent_submit_and_complete(self):
        controller = AdmissionController(max_concurrent=4, rate_limit_seconds=0)
        workers = 8
        per_worker = 200
        violations = []
        errors = []
        start = threading.Barrier(workers)

        def release(owned):
            job_id = owned.pop()
            for transition in controller.complete(job_id):
                if transition.admitted:
                    owned.append(transition.job.id)

        def worker(worker_id):
            owned = []
            try:
                start.wait()
                for i in range(per_worker):
                    result = controller.submit(url(f"w{worker_id}-{i}"))
                    if isinstance(result, Admitted):
                        owned.append(result.job.id)
                    if owned and i % 2:
                        release(owned)
                    state = controller.status()
                    if not 0 <= state.active_analyses <= state.max_concurrent:
                        violations.append(state.active_analyses)
                while owned:
                    release(owned)
            except Exception as exc:  # surfaced by the assertions below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert not any(thread.is_alive() for thread in threads)
        assert errors == []
        assert violations == []

        state = controller.status()
        metrics = controller.get_metrics()
        assert state.active_analyses == 0
        assert state.queue_length == 0
        assert metrics.total_submitted == workers * per_worker
        assert metrics.total_admitted == workers * per_worker
        assert metrics.total_completed == workers * per_worker
        assert metrics.total_rejected == 0
