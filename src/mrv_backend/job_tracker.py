"""
Asynchronous job lifecycle for the compute-heavy pipeline stages.

This module manages:
- Job submission with de-duplication per (project, stage)
- Background execution on a thread pool
- Retries with exponential backoff for transient compute errors
- Structured failure reasons and cancellation
- Thread-safe, side-effect-free status snapshots

Compute functions receive a snapshot of the active records and return patches;
the tracker applies them only if the job is still live when they come back, so
a cancelled job never writes results.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional
from uuid import uuid4

from .biometrics import DEFAULT_COMPUTE_FUNCTIONS, ComputeContext, ComputeFunction, ComputeResult
from .catalog import ModelCatalog
from .database import PipelineDatabase
from .errors import (
    InvalidInputError,
    ModelUnavailableError,
    NotFoundError,
    TransientComputeError,
    ValidationError,
)
from .models import ComputeParams, FailureReason, Job, JobEvent, JobState, StageName
from .record_store import RecordStore
from .utils import utcnow

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (TransientComputeError, TimeoutError)


class JobTracker:
    """
    Central coordinator for async stage jobs.

    Thread Safety:
        All job state modifications are protected by a lock so HTTP request
        threads and worker threads see consistent snapshots.

    Memory:
        Only queued and running jobs are held in memory. A job leaves the map
        when its worker exits, after which it is served from the database.
    """

    def __init__(
        self,
        db: PipelineDatabase,
        records: RecordStore,
        catalog: ModelCatalog,
        species_mappings: Callable[[int], Mapping[str, str]],
        config: Any,
        compute_functions: Optional[Dict[StageName, ComputeFunction]] = None,
        on_queued: Optional[Callable[[Job], None]] = None,
        on_finished: Optional[Callable[[Job], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Args:
            species_mappings: Lookup of a project's species code mappings
            config: Runtime configuration; ``jobs.*`` sets pool size and retry policy
            compute_functions: Stage -> compute function (defaults to the built-in models)
            on_queued: Called under the lock when a new job is created, before it can run
            on_finished: Called under the lock whenever a job reaches a terminal state
            sleep: Backoff sleeper, injectable for tests
        """
        self.db = db
        self.records = records
        self.catalog = catalog
        self.config = config
        self._species_mappings = species_mappings
        self._compute = dict(compute_functions or DEFAULT_COMPUTE_FUNCTIONS)
        self._on_queued = on_queued
        self._on_finished = on_finished
        self._sleep = sleep
        self.max_attempts = max(1, int(config.jobs.max_attempts))
        self.backoff_seconds = float(config.jobs.backoff_seconds)

        self._jobs: Dict[str, Job] = {}
        self._lock = Lock()
        self._executor = ThreadPoolExecutor(max_workers=int(config.jobs.max_workers), thread_name_prefix="mrv-job")
        self._recover_interrupted()

    @property
    def stages(self) -> List[StageName]:
        return list(self._compute)

    def _recover_interrupted(self) -> None:
        """Fail jobs left queued or running by a previous process."""
        for job in self.db.list_jobs():
            if job.state.is_terminal:
                continue
            now = utcnow()
            job.state = JobState.FAILED
            job.failure_reason = FailureReason.UNKNOWN
            job.error = "Interrupted by service restart"
            job.completed_at = now
            job.events.append(JobEvent(timestamp=now, message="Job interrupted by service restart."))
            self.db.save_job(job)
            logger.warning(f"Recovered interrupted job {job.id} ({job.stage.value}, project {job.project_id})")
            self._notify(job)

    # Queries

    def status(self, job_id: str) -> Job:
        """Stable snapshot of a job; reading never changes state."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                return job.model_copy(deep=True)
        stored = self.db.get_job(job_id)
        if stored is None:
            raise NotFoundError("job", job_id)
        return stored

    def latest(self, project_id: int, stage: StageName) -> Optional[Job]:
        with self._lock:
            live = [j for j in self._jobs.values() if j.project_id == project_id and j.stage == stage]
            if live:
                return max(live, key=lambda j: j.submitted_at).model_copy(deep=True)
        return next((j for j in self.db.list_jobs(project_id) if j.stage == stage), None)

    def list_jobs(self, project_id: int) -> List[Job]:
        return self.db.list_jobs(project_id)

    # Lifecycle

    def submit(self, project_id: int, stage: StageName, params: Optional[Dict[str, Any]] = None) -> Job:
        """
        Queue a job, or return the in-flight job for the same (project, stage).

        A new job is created only when no queued/running job exists for the key,
        so re-submission on reconnect is harmless. After a terminal job a fresh
        job is always created.
        """
        if stage not in self._compute:
            raise ValidationError(
                f"Stage '{stage.value}' has no compute function",
                [{"field": "stage", "message": "not an asynchronous stage"}],
            )

        with self._lock:
            for job in self._jobs.values():
                if job.project_id == project_id and job.stage == stage and not job.state.is_terminal:
                    logger.info(f"Submission for {stage.value} on project {project_id} joined in-flight job {job.id}")
                    return job.model_copy(deep=True)

            now = utcnow()
            job = Job(
                id=uuid4().hex,
                project_id=project_id,
                stage=stage,
                state=JobState.QUEUED,
                params=dict(params or {}),
                submitted_at=now,
                events=[JobEvent(timestamp=now, message="Job queued.")],
            )
            self._jobs[job.id] = job
            self.db.save_job(job)
            snapshot = job.model_copy(deep=True)
            if self._on_queued:
                self._on_queued(snapshot)

        logger.info(f"Queued job {job.id} for {stage.value} on project {project_id}")
        self._executor.submit(self._run, job.id)
        return snapshot

    def cancel(self, job_id: str) -> Job:
        """Fail a queued/running job with reason Cancelled; terminal jobs are left as they are."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None and not job.state.is_terminal:
                self._finish_locked(job, JobState.FAILED, FailureReason.CANCELLED, "Cancelled")
                logger.info(f"Cancelled job {job_id}")
                return job.model_copy(deep=True)
        return self.status(job_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # Worker side

    def _run(self, job_id: str) -> None:
        """Execute a job in a worker thread, then drop it from memory once it is terminal."""
        try:
            self._execute(job_id)
        finally:
            with self._lock:
                job = self._jobs.get(job_id)
                if job is not None and job.state.is_terminal:
                    del self._jobs[job_id]

    def _execute(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs[job_id]
            if job.state.is_terminal:
                return
            job.state = JobState.RUNNING
            job.started_at = utcnow()
            self._event_locked(job, "Computation started.")
            project_id, stage = job.project_id, job.stage
            params = ComputeParams.model_validate(job.params)

        try:
            result = self._compute_with_retries(job_id, project_id, stage, params)
        except TRANSIENT_ERRORS as exc:
            self._fail(job_id, FailureReason.TIMEOUT, f"Gave up after {self.max_attempts} attempt(s): {exc}")
            return
        except InvalidInputError as exc:
            self._fail(job_id, FailureReason.INVALID_INPUT, str(exc))
            return
        except ModelUnavailableError as exc:
            self._fail(job_id, FailureReason.MODEL_UNAVAILABLE, str(exc))
            return
        except Exception as exc:
            logger.exception(f"Job {job_id} failed unexpectedly")
            self._fail(job_id, FailureReason.UNKNOWN, str(exc) or type(exc).__name__)
            return

        if result is None:
            return
        with self._lock:
            job = self._jobs[job_id]
            if job.state.is_terminal:
                logger.info(f"Discarding results of job {job_id}; it is already {job.state.value}")
                return
            try:
                self.records.set_derived(project_id, result.patches)
            except Exception as exc:
                logger.exception(f"Job {job_id} could not store its results")
                self._finish_locked(job, JobState.FAILED, FailureReason.UNKNOWN, f"Storing results failed: {exc}")
                return
            job.result = result.summary()
            self._finish_locked(job, JobState.SUCCEEDED, None, None)
        logger.info(f"Job {job_id} ({stage.value}) succeeded: {result.summary()}")

    def _compute_with_retries(
        self, job_id: str, project_id: int, stage: StageName, params: ComputeParams
    ) -> Optional[ComputeResult]:
        compute = self._compute[stage]
        for attempt in range(1, self.max_attempts + 1):
            with self._lock:
                job = self._jobs[job_id]
                if job.state.is_terminal:
                    return None
                job.attempts = attempt
                self.db.save_job(job)

            records = self.records.get_records(project_id, active_only=True)
            context = ComputeContext(self.catalog, self.config, self._species_mappings(project_id))
            try:
                return compute(records, params, context)
            except TRANSIENT_ERRORS as exc:
                if attempt == self.max_attempts:
                    raise
                delay = self.backoff_seconds * 2 ** (attempt - 1)
                logger.warning(f"Job {job_id} attempt {attempt} hit a transient error ({exc}); retrying in {delay:g}s")
                self._append_event(job_id, f"Attempt {attempt} failed ({exc}); retrying in {delay:g}s.")
                self._sleep(delay)
        return None

    def _fail(self, job_id: str, reason: FailureReason, error: str) -> None:
        with self._lock:
            job = self._jobs[job_id]
            if job.state.is_terminal:
                return
            self._finish_locked(job, JobState.FAILED, reason, error)
        logger.error(f"Job {job_id} failed: {reason.value}: {error}")

    def _finish_locked(self, job: Job, state: JobState, reason: Optional[FailureReason], error: Optional[str]) -> None:
        """
        Move ``job`` to a terminal state.

        The completion callback runs before the lock is released, so a poller
        never sees a terminal job whose stage outcome is not yet recorded. The
        callback must not call back into the tracker.
        """
        job.state = state
        job.failure_reason = reason
        job.error = error
        job.completed_at = utcnow()
        message = "Computation completed." if state == JobState.SUCCEEDED else f"Job failed ({reason.value}): {error}"
        self._event_locked(job, message)
        self._notify(job.model_copy(deep=True))

    def _event_locked(self, job: Job, message: str) -> None:
        job.events.append(JobEvent(timestamp=utcnow(), message=message))
        self.db.save_job(job)

    def _append_event(self, job_id: str, message: str) -> None:
        with self._lock:
            self._event_locked(self._jobs[job_id], message)

    def _notify(self, job: Job) -> None:
        if self._on_finished is not None:
            self._on_finished(job)
