"""Tests for the job queue retry/backoff state machine."""
import threading
from datetime import datetime, timedelta, timezone

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from alphafeed.orchestration.queue import Backoff, JobOptions, JobQueue, JobState, build_scheduler
from tests.conftest import ManualScheduler

NOW = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def queue(scheduler):
    return JobQueue("test", scheduler=scheduler, clock=lambda: NOW)


class TestBackoff:
    def test_exponential_doubles(self):
        backoff = Backoff(type="exponential", delay=60)
        assert [backoff.compute(n) for n in (1, 2, 3)] == [60, 120, 240]

    def test_bounded_and_non_decreasing(self):
        backoff = Backoff(type="exponential", delay=60, max_delay=200)
        delays = [backoff.compute(n) for n in range(1, 8)]
        assert delays == sorted(delays)
        assert max(delays) == 200

    def test_fixed(self):
        assert Backoff(type="fixed", delay=5).compute(4) == 5

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            Backoff(type="jitter").compute(1)


def test_one_off_job_scheduled_as_date_job(queue, scheduler):
    seen = []
    queue.process("work", lambda job: seen.append(job.id))

    job = queue.add("work", JobOptions(delay=10, job_id="a"))

    [entry_id] = scheduler.by_trigger("date")
    assert scheduler.jobs[entry_id]["run_date"] == NOW + timedelta(seconds=10)
    scheduler.fire(entry_id)
    assert seen == ["a"]
    assert job.state == JobState.COMPLETED
    assert queue.get_job("a") is None


def test_failed_job_retries_with_backoff_then_abandons(queue, scheduler):
    abandoned = []
    failures = []

    def handler(job):
        raise RuntimeError("publish failed")

    queue.process("work", handler)
    queue.on("abandoned", lambda job, err: abandoned.append(job))
    queue.on("failed", lambda job, err: failures.append(str(err)))
    job = queue.add("work", JobOptions(attempts=3, backoff=Backoff(delay=60), job_id="a"))

    scheduler.fire_next_retry()
    assert job.state == JobState.DELAYED
    [retry_id] = scheduler.by_trigger("date")
    assert scheduler.jobs[retry_id]["run_date"] == NOW + timedelta(seconds=60)

    scheduler.fire_next_retry()
    [retry_id] = scheduler.by_trigger("date")
    assert scheduler.jobs[retry_id]["run_date"] == NOW + timedelta(seconds=120)

    scheduler.fire_next_retry()

    assert job.state == JobState.ABANDONED
    assert job.attempts_made == 3
    assert job.retry_delays == [60, 120]
    assert abandoned == [job]
    assert failures == ["publish failed"] * 3
    assert scheduler.by_trigger("date") == []
    assert queue.pending() == []


def test_failed_then_recovering_job_completes(queue, scheduler):
    outcomes = iter([RuntimeError("flaky"), None])
    completed = []

    def handler(job):
        err = next(outcomes)
        if err:
            raise err
        return "done"

    queue.process("work", handler)
    queue.on("completed", lambda job, result: completed.append(result))
    job = queue.add("work", JobOptions(attempts=3, backoff=Backoff(delay=60)))

    scheduler.fire_next_retry()
    assert queue.pending() == [job]
    scheduler.fire_next_retry()

    assert job.state == JobState.COMPLETED
    assert completed == ["done"]


def test_duplicate_job_id_skipped(queue, scheduler):
    assert queue.add("work", JobOptions(delay=5, job_id="same")) is not None
    assert queue.add("work", JobOptions(delay=5, job_id="same")) is None
    assert len(queue.pending()) == 1
    assert len(scheduler.by_trigger("date")) == 1


def test_repeat_registration_distinguishable_from_duplicate(queue, scheduler):
    options = JobOptions(repeat_every=300, job_id="cycle")

    assert queue.add("work", options) == "cycle"
    assert queue.add("work", options) is None
    assert list(scheduler.jobs) == ["cycle"]


def test_repeat_registered_as_interval_job(queue, scheduler):
    queue.add("work", JobOptions(repeat_every=300, delay=0, job_id="cycle"))

    entry = scheduler.jobs["cycle"]
    assert entry["trigger"] == "interval"
    assert entry["seconds"] == 300
    assert entry["next_run_time"] == NOW
    assert entry["max_instances"] == 1
    assert entry["coalesce"] is True


def test_non_positive_repeat_rejected(queue):
    with pytest.raises(ValueError):
        queue.add("work", JobOptions(repeat_every=0))


def test_repeat_fires_independently_of_retries(queue, scheduler):
    calls = []

    def handler(job):
        calls.append(job.id)
        raise RuntimeError("down")

    queue.process("work", handler)
    queue.add("work", JobOptions(repeat_every=300, attempts=3,
                                 backoff=Backoff(delay=60), job_id="cycle"))

    scheduler.fire("cycle")
    # The next interval fire comes due while the first fire is still backing off
    scheduler.fire("cycle")

    assert len(calls) == 2
    assert len(set(calls)) == 2
    assert len(scheduler.by_trigger("date")) == 2
    assert "cycle" in scheduler.jobs


def test_missing_processor_counts_as_failure(queue, scheduler):
    failed = []
    queue.on("failed", lambda job, err: failed.append(err))
    queue.add("orphan")

    scheduler.fire_next_retry()

    assert isinstance(failed[0], LookupError)


def test_listener_errors_do_not_break_queue(queue, scheduler):
    queue.process("work", lambda job: None)
    queue.on("completed", lambda job, result: 1 / 0)
    job = queue.add("work")

    scheduler.fire_next_retry()

    assert job.state == JobState.COMPLETED


def test_empty_drops_pending(queue, scheduler):
    queue.add("work", JobOptions(delay=100))
    queue.add("work", JobOptions(repeat_every=300))

    queue.empty()

    assert queue.pending() == []
    assert scheduler.jobs == {}
    # A schedule with the same id can be registered again
    assert queue.add("work", JobOptions(repeat_every=300)) == "work"


def test_close_is_idempotent_and_blocks_adds(queue, scheduler):
    queue.start()
    assert scheduler.running

    queue.close(timeout=1)
    queue.close(timeout=1)

    assert queue.closed
    assert not scheduler.running
    with pytest.raises(RuntimeError):
        queue.add("work")


def test_fires_after_close_are_ignored(queue, scheduler):
    runs = []
    queue.process("work", lambda job: runs.append(job.id))
    queue.add("work", JobOptions(repeat_every=300, job_id="cycle"))

    queue.close(timeout=1)
    scheduler.fire("cycle")

    assert runs == []


def test_default_scheduler_is_background():
    assert isinstance(build_scheduler(), BackgroundScheduler)


def test_background_worker_runs_jobs():
    done = threading.Event()
    queue = JobQueue("live")
    queue.process("work", lambda job: done.set())
    queue.start()
    queue.add("work")

    try:
        assert done.wait(timeout=5)
    finally:
        queue.close(timeout=1)


def test_background_worker_retries_failed_job():
    attempts = []
    done = threading.Event()

    def handler(job):
        attempts.append(job.attempts_made)
        if len(attempts) < 3:
            raise RuntimeError("flaky")
        done.set()

    queue = JobQueue("live")
    queue.process("work", handler)
    queue.start()
    queue.add("work", JobOptions(attempts=3, backoff=Backoff(type="fixed", delay=0.05)))

    try:
        assert done.wait(timeout=5)
    finally:
        queue.close(timeout=1)
    assert attempts == [0, 1, 2]
