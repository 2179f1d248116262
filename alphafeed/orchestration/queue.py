"""
Job queue with repeating jobs and retry/backoff on top of APScheduler.

A job moves through an explicit state machine:

    DELAYED -> ACTIVE -> COMPLETED
                      -> DELAYED   (failed, attempts left, backoff applied)
                      -> ABANDONED (failed, attempt budget spent)

Timing belongs to the scheduler: a repeating job is an `interval` job that
spawns one Job per fire, and every retry is a one-shot `date` job at
`now + backoff`. A cycle whose attempts are still backing off never blocks
the next fire. The scheduler runs on a single worker thread, so due jobs
run one after another, never in parallel.
"""

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler

logger = logging.getLogger(__name__)

Handler = Callable[["Job"], Any]
Listener = Callable[..., None]

EVENTS = ("completed", "failed", "abandoned")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_scheduler() -> BackgroundScheduler:
    """Background scheduler with one worker thread and no missed-fire pileup."""
    return BackgroundScheduler(
        executors={"default": ThreadPoolExecutor(max_workers=1)},
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
        timezone=timezone.utc,
    )


class JobState(str, Enum):
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class Backoff:
    type: str = "exponential"
    delay: float = 60.0
    max_delay: Optional[float] = None

    def compute(self, attempts_made: int) -> float:
        """Delay before the retry that follows failure number `attempts_made`."""
        if self.type == "fixed":
            delay = self.delay
        elif self.type == "exponential":
            delay = self.delay * (2 ** max(attempts_made - 1, 0))
        else:
            raise ValueError(f"Unknown backoff type: {self.type}")
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


@dataclass(frozen=True)
class JobOptions:
    repeat_every: Optional[float] = None
    delay: float = 0.0
    attempts: int = 1
    backoff: Optional[Backoff] = None
    job_id: Optional[str] = None


@dataclass
class Job:
    id: str
    name: str
    options: JobOptions
    run_at: datetime
    state: JobState = JobState.DELAYED
    attempts_made: int = 0
    last_error: Optional[BaseException] = None
    retry_delays: List[float] = field(default_factory=list)

    def start(self) -> None:
        self.state = JobState.ACTIVE

    def complete(self) -> None:
        self.state = JobState.COMPLETED

    def fail(self, error: BaseException, now: datetime) -> JobState:
        """Record a failed attempt and pick the next state."""
        self.attempts_made += 1
        self.last_error = error
        if self.attempts_made >= self.options.attempts:
            self.state = JobState.ABANDONED
            return self.state

        backoff = self.options.backoff or Backoff(type="fixed", delay=0.0)
        delay = backoff.compute(self.attempts_made)
        self.retry_delays.append(delay)
        self.run_at = now + timedelta(seconds=delay)
        self.state = JobState.DELAYED
        return self.state

    @property
    def finished(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.ABANDONED)


class JobQueue:
    def __init__(self, name: str, scheduler: Optional[BaseScheduler] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.name = name
        self._scheduler = scheduler or build_scheduler()
        self._clock = clock
        self._lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._handlers: Dict[str, Handler] = {}
        self._listeners: Dict[str, List[Listener]] = {event: [] for event in EVENTS}
        self._jobs: Dict[str, Job] = {}
        self._repeats: Dict[str, str] = {}
        self._seq = itertools.count()
        self._closed = False

    # Registration -------------------------------------------------------

    def process(self, name: str, handler: Handler) -> None:
        self._handlers[name] = handler

    def on(self, event: str, listener: Listener) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(listener)

    def add(self, name: str, options: JobOptions = JobOptions()) -> Optional[Union[Job, str]]:
        """
        Schedule a job.

        Returns the Job for a one-off job, the schedule id for a newly
        registered repeating job, and None when a live job or repeat
        schedule with the same id already exists.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError(f"Queue {self.name} is closed")

            now = self._clock()
            job_id = options.job_id

            if options.repeat_every is not None:
                if options.repeat_every <= 0:
                    raise ValueError("repeat_every must be positive")
                repeat_id = job_id or name
                if repeat_id in self._repeats:
                    logger.debug(f"Repeat schedule {repeat_id} already registered, skipping")
                    return None
                self._scheduler.add_job(
                    self._fire_repeat,
                    "interval",
                    seconds=options.repeat_every,
                    next_run_time=now + timedelta(seconds=options.delay),
                    args=[repeat_id, name, options],
                    id=repeat_id,
                    max_instances=1,
                    coalesce=True,
                    replace_existing=False,
                )
                self._repeats[repeat_id] = name
                logger.info(f"Registered repeating job {repeat_id} every {options.repeat_every}s")
                return repeat_id

            job_id = job_id or f"{name}:{next(self._seq)}"
            existing = self._jobs.get(job_id)
            if existing is not None and not existing.finished:
                logger.debug(f"Job {job_id} already queued, skipping duplicate")
                return None

            job = Job(id=job_id, name=name, options=options,
                      run_at=now + timedelta(seconds=options.delay))
            self._jobs[job.id] = job
            self._schedule(job)
            return job

    def empty(self) -> None:
        """Drop every pending job and repeat schedule."""
        with self._lock:
            self._scheduler.remove_all_jobs()
            self._jobs.clear()
            self._repeats.clear()

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def pending(self) -> List[Job]:
        with self._lock:
            delayed = [job for job in self._jobs.values() if job.state == JobState.DELAYED]
        return sorted(delayed, key=lambda job: job.run_at)

    # Lifecycle ----------------------------------------------------------

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info(f"Queue {self.name} worker started")

    def close(self, timeout: float = 5.0) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True

        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        if not self._idle.wait(timeout):
            logger.warning(f"Queue {self.name} worker still busy after {timeout}s")
        logger.info(f"Queue {self.name} closed")

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def scheduler(self) -> BaseScheduler:
        return self._scheduler

    # Internals ----------------------------------------------------------

    def _schedule(self, job: Job) -> None:
        # One scheduler entry per attempt; ids never collide with a finishing run
        self._scheduler.add_job(
            self._run_job,
            "date",
            run_date=job.run_at,
            args=[job.id],
            id=f"{job.id}#{job.attempts_made}",
        )

    def _fire_repeat(self, repeat_id: str, name: str, options: JobOptions) -> None:
        with self._lock:
            if self._closed or repeat_id not in self._repeats:
                return
            job = Job(id=f"{repeat_id}:{next(self._seq)}", name=name,
                      options=options, run_at=self._clock())
            self._jobs[job.id] = job
        self._run(job)

    def _run_job(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if self._closed or job is None or job.finished:
                return
        self._run(job)

    def _run(self, job: Job) -> None:
        handler = self._handlers.get(job.name)
        self._idle.clear()
        job.start()

        try:
            try:
                if handler is None:
                    raise LookupError(f"No processor registered for job {job.name}")
                result = handler(job)
            except Exception as e:
                self._record_failure(job, e)
                return

            with self._lock:
                job.complete()
                self._jobs.pop(job.id, None)
            self._emit("completed", job, result)
        finally:
            self._idle.set()

    def _record_failure(self, job: Job, error: Exception) -> None:
        with self._lock:
            state = job.fail(error, self._clock())
            if state == JobState.DELAYED and not self._closed:
                self._schedule(job)
            else:
                self._jobs.pop(job.id, None)

        if state == JobState.ABANDONED:
            logger.error(f"Job {job.id} abandoned after {job.attempts_made} attempts: {error}")
            self._emit("abandoned", job, error)
        else:
            logger.warning(f"Job {job.id} failed (attempt {job.attempts_made}/"
                           f"{job.options.attempts}), retrying in {job.retry_delays[-1]:.0f}s: {error}")
        self._emit("failed", job, error)

    def _emit(self, event: str, *args) -> None:
        for listener in list(self._listeners[event]):
            try:
                listener(*args)
            except Exception as e:
                logger.error(f"Queue listener for '{event}' raised: {e}")
