"""
ChronoHeal - Detection Service
==============================

Periodic scheduler that starts OODA runs for monitored subjects.

Each tick walks the monitored subjects and starts a run for every subject
that is eligible. A subject is skipped (and the skip logged) when:
- its previous run is still in flight
- the number of runs in flight has reached ``max_concurrent_runs``
- its last run finished less than ``cooldown_seconds`` ago

Skipped subjects are never queued; the next tick simply looks again.
``stop()`` cancels the scheduler only. Runs already in flight finish on
their own and can be awaited with ``wait_idle()``.
"""

import asyncio
from datetime import datetime, timedelta
from threading import Lock
from typing import Optional

from pydantic import BaseModel, Field

from shared.schemas.incidents import IncidentRun, OODAPhase, RunResult
from shared.utils.clock import utcnow
from shared.utils.logging import get_logger

from src.config import Settings, get_settings
from src.core.errors import RunInProgressError, SchedulerStateError
from src.core.evidence_buffer import EvidenceBufferRegistry
from src.core.ooda_controller import OODAController

logger = get_logger(__name__)


class SubjectOutcome(BaseModel):
    """Last terminal result for a subject."""
    run_id: str
    phase: OODAPhase
    result: Optional[RunResult] = None
    failure_reason: Optional[str] = None
    completed_at: Optional[datetime] = None


class DetectionStatus(BaseModel):
    running: bool
    interval_seconds: float
    subjects: list[str] = Field(default_factory=list)
    in_progress: list[str] = Field(default_factory=list)
    max_concurrent_runs: int
    cooldown_seconds: float
    last_outcomes: dict[str, SubjectOutcome] = Field(default_factory=dict)


class DetectionService:
    """Owns the scheduler task and the single-flight set of subjects."""

    def __init__(
        self,
        controller: OODAController,
        buffers: EvidenceBufferRegistry,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or get_settings()
        self.controller = controller
        self.buffers = buffers
        self.interval_seconds = self.settings.detection_interval_seconds

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._run_tasks: set[asyncio.Task] = set()

        self._lock = Lock()
        self._subjects: list[str] = list(dict.fromkeys(self.settings.monitored_subjects))
        self._in_progress: set[str] = set()
        self._last_finished: dict[str, datetime] = {}
        self._last_outcomes: dict[str, SubjectOutcome] = {}

    # -------------------------------------------------------------------------
    # Scheduler lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            raise SchedulerStateError("Detection service is already running")

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"Detection started with {self.interval_seconds}s interval",
            extra={"subjects": self.subjects()}
        )

    def stop(self) -> None:
        if not self._running:
            raise SchedulerStateError("Detection service is not running")

        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None
        logger.info(
            "Detection stopped",
            extra={"in_flight": self.in_progress()}
        )

    def restart(self) -> None:
        if self._running:
            self.stop()
        self.start()

    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> DetectionStatus:
        with self._lock:
            outcomes = dict(self._last_outcomes)

        return DetectionStatus(
            running=self._running,
            interval_seconds=self.interval_seconds,
            subjects=self.subjects(),
            in_progress=self.in_progress(),
            max_concurrent_runs=self.settings.max_concurrent_runs,
            cooldown_seconds=self.settings.cooldown_seconds,
            last_outcomes=outcomes,
        )

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in detection loop: {e}", exc_info=True)

            await asyncio.sleep(self.interval_seconds)

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    async def tick(self) -> list[str]:
        """Start runs for every eligible subject; returns the subjects started."""
        started = []

        for subject in self.subjects():
            skip_reason = self._acquire(subject)
            if skip_reason:
                logger.info(
                    f"Skipping {subject}: {skip_reason}",
                    extra={"skipped_subject": subject, "reason": skip_reason}
                )
                continue

            self._spawn(subject)
            started.append(subject)

        return started

    def trigger(self, subject: str) -> "asyncio.Task[IncidentRun]":
        """
        Start an on-demand run for ``subject``.

        Only the single-flight rule applies; cooldown and the concurrency
        cap are for scheduled runs.

        Raises:
            RunInProgressError: The subject already has a run in flight
        """
        if self._acquire(subject, on_demand=True):
            raise RunInProgressError(subject)

        logger.info(f"On-demand run requested for {subject}")
        return self._spawn(subject)

    async def run_now(self, subject: str) -> IncidentRun:
        """Trigger a run and wait for its result."""
        task = self.trigger(subject)
        # A cancelled caller must not cancel the run itself
        return await asyncio.shield(task)

    def _acquire(self, subject: str, on_demand: bool = False) -> Optional[str]:
        """Claim ``subject`` for a run. Returns a skip reason when it cannot be claimed."""
        with self._lock:
            if subject in self._in_progress:
                return "run in progress"

            if not on_demand:
                if len(self._in_progress) >= self.settings.max_concurrent_runs:
                    return "concurrency limit reached"

                finished = self._last_finished.get(subject)
                cooldown = self.settings.cooldown_seconds
                if cooldown > 0 and finished and utcnow() - finished < timedelta(seconds=cooldown):
                    return "cooldown active"

            self._in_progress.add(subject)
            return None

    def _spawn(self, subject: str) -> "asyncio.Task[IncidentRun]":
        task = asyncio.create_task(self._run(subject))
        self._run_tasks.add(task)
        task.add_done_callback(self._run_tasks.discard)
        return task

    async def _run(self, subject: str) -> IncidentRun:
        run: Optional[IncidentRun] = None
        try:
            run = await self.controller.run(subject)
            return run
        finally:
            with self._lock:
                self._in_progress.discard(subject)
                self._last_finished[subject] = utcnow()
                if run is not None:
                    self._last_outcomes[subject] = SubjectOutcome(
                        run_id=run.run_id,
                        phase=run.phase,
                        result=run.result,
                        failure_reason=run.failure.reason if run.failure else None,
                        completed_at=run.completed_at,
                    )

    # -------------------------------------------------------------------------
    # Subjects
    # -------------------------------------------------------------------------

    def watch(self, subject: str) -> bool:
        """Add a monitored subject. Returns False if it was already watched."""
        with self._lock:
            if subject in self._subjects:
                return False
            self._subjects.append(subject)

        logger.info(f"Watching {subject}")
        return True

    def unwatch(self, subject: str) -> bool:
        """Stop monitoring a subject and drop its evidence buffer."""
        with self._lock:
            watched = subject in self._subjects
            if watched:
                self._subjects.remove(subject)
            self._last_outcomes.pop(subject, None)
            self._last_finished.pop(subject, None)

        self.buffers.remove(subject)
        logger.info(f"Stopped watching {subject}", extra={"was_watched": watched})
        return watched

    def subjects(self) -> list[str]:
        with self._lock:
            return list(self._subjects)

    def in_progress(self) -> list[str]:
        with self._lock:
            return sorted(self._in_progress)

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight runs to finish."""
        tasks = list(self._run_tasks)
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
