"""
Tests for the async job lifecycle: de-duplication, retries, failure reasons,
cancellation and restart recovery.
"""

import threading

import pytest

from mrv_backend.biometrics import ComputeResult
from mrv_backend.errors import (
    InvalidInputError,
    ModelUnavailableError,
    NotFoundError,
    TransientComputeError,
    ValidationError,
)
from mrv_backend.models import FailureReason, ImportParams, Job, JobState, StageName, StageStatus
from mrv_backend.utils import utcnow

STAGE = StageName.HEIGHT_PREDICTION


def gated(release, started=None):
    """Compute function that blocks until ``release`` is set."""

    def compute(records, params, ctx):
        if started is not None:
            started.set()
        release.wait(timeout=5)
        return ComputeResult(patches={record.id: {"predicted_height": 9.9} for record in records})

    return compute


def failing(exc):
    def compute(records, params, ctx):
        raise exc

    return compute


class TestSubmit:
    """Tests for submission and de-duplication."""

    def test_resubmit_returns_in_flight_job(self, make_pipeline, wait_for_job):
        release = threading.Event()
        pipeline = make_pipeline(compute_functions={STAGE: gated(release)})
        project = pipeline.create_project("dedupe")

        first = pipeline.jobs.submit(project.id, STAGE)
        second = pipeline.jobs.submit(project.id, STAGE)
        release.set()

        assert first.id == second.id
        assert wait_for_job(pipeline.jobs, first.id).state == JobState.SUCCEEDED
        assert len(pipeline.jobs.list_jobs(project.id)) == 1

    def test_new_job_after_failure(self, make_pipeline, wait_for_job):
        pipeline = make_pipeline(compute_functions={STAGE: failing(InvalidInputError("no diameters"))})
        project = pipeline.create_project("retry")

        first = pipeline.jobs.submit(project.id, STAGE)
        assert wait_for_job(pipeline.jobs, first.id).state == JobState.FAILED
        second = pipeline.jobs.submit(project.id, STAGE)

        assert second.id != first.id

    def test_sync_stage_cannot_be_submitted(self, pipeline, project):
        with pytest.raises(ValidationError):
            pipeline.jobs.submit(project.id, StageName.CLEANING)

    def test_unknown_job_is_not_found(self, pipeline):
        with pytest.raises(NotFoundError):
            pipeline.jobs.status("missing")


class TestStatus:
    """Tests for side-effect-free polling."""

    def test_polling_is_stable(self, make_pipeline, wait_for_job):
        release = threading.Event()
        started = threading.Event()
        pipeline = make_pipeline(compute_functions={STAGE: gated(release, started)})
        project = pipeline.create_project("poll")

        job = pipeline.jobs.submit(project.id, STAGE)
        assert started.wait(timeout=5)
        snapshots = [pipeline.jobs.status(job.id) for _ in range(5)]
        release.set()

        assert all(snapshot == snapshots[0] for snapshot in snapshots)
        assert snapshots[0].state == JobState.RUNNING
        finished = wait_for_job(pipeline.jobs, job.id)
        assert [pipeline.jobs.status(job.id) for _ in range(3)] == [finished] * 3

    def test_snapshot_is_a_copy(self, make_pipeline, wait_for_job):
        pipeline = make_pipeline(compute_functions={STAGE: lambda records, params, ctx: ComputeResult()})
        project = pipeline.create_project("copy")
        job = wait_for_job(pipeline.jobs, pipeline.jobs.submit(project.id, STAGE).id)

        job.events.clear()
        assert pipeline.jobs.status(job.id).events


class TestFailures:
    """Tests for retries and failure classification."""

    def test_transient_errors_are_retried_with_backoff(self, make_pipeline, wait_for_job):
        calls = []

        def flaky(records, params, ctx):
            calls.append(1)
            if len(calls) < 3:
                raise TransientComputeError("model service timed out")
            return ComputeResult()

        sleeps = []
        pipeline = make_pipeline(
            {"jobs": {"max_attempts": 3, "backoff_seconds": 0.5}}, compute_functions={STAGE: flaky}, sleeps=sleeps
        )
        project = pipeline.create_project("flaky")

        job = wait_for_job(pipeline.jobs, pipeline.jobs.submit(project.id, STAGE).id)

        assert job.state == JobState.SUCCEEDED
        assert job.attempts == 3
        assert sleeps == [0.5, 1.0]

    def test_exhausted_retries_fail_with_timeout(self, make_pipeline, wait_for_job):
        pipeline = make_pipeline(
            {"jobs": {"max_attempts": 2}}, compute_functions={STAGE: failing(TimeoutError("slow"))}
        )
        project = pipeline.create_project("timeout")

        job = wait_for_job(pipeline.jobs, pipeline.jobs.submit(project.id, STAGE).id)

        assert job.state == JobState.FAILED
        assert job.failure_reason == FailureReason.TIMEOUT
        assert job.attempts == 2

    @pytest.mark.parametrize(
        "exc, reason",
        [
            (InvalidInputError("bad"), FailureReason.INVALID_INPUT),
            (ModelUnavailableError("gone"), FailureReason.MODEL_UNAVAILABLE),
            (RuntimeError("boom"), FailureReason.UNKNOWN),
        ],
    )
    def test_failure_reasons(self, make_pipeline, wait_for_job, exc, reason):
        pipeline = make_pipeline(compute_functions={STAGE: failing(exc)})
        project = pipeline.create_project("failure")

        job = wait_for_job(pipeline.jobs, pipeline.jobs.submit(project.id, STAGE).id)

        assert job.failure_reason == reason
        assert job.attempts == 1
        state = pipeline.db.stage_states(project.id)[STAGE]
        assert state.status == StageStatus.FAILED
        assert state.completed_at is None


class TestCancel:
    """Tests for cancellation."""

    def test_cancel_discards_results(self, make_pipeline, rows):
        release = threading.Event()
        started = threading.Event()
        pipeline = make_pipeline(compute_functions={STAGE: gated(release, started)})
        project = pipeline.create_project("cancel")
        pipeline.imports.commit(project.id, ImportParams(rows=rows(3)))

        job = pipeline.jobs.submit(project.id, STAGE)
        assert started.wait(timeout=5)
        cancelled = pipeline.jobs.cancel(job.id)
        release.set()
        pipeline.jobs.shutdown(wait=True)

        assert cancelled.state == JobState.FAILED
        assert cancelled.failure_reason == FailureReason.CANCELLED
        assert pipeline.jobs.status(job.id).failure_reason == FailureReason.CANCELLED
        assert all(r.predicted_height is None for r in pipeline.records.get_records(project.id))

    def test_cancel_terminal_job_is_noop(self, make_pipeline, wait_for_job):
        pipeline = make_pipeline(compute_functions={STAGE: lambda records, params, ctx: ComputeResult()})
        project = pipeline.create_project("done")
        job = wait_for_job(pipeline.jobs, pipeline.jobs.submit(project.id, STAGE).id)

        assert pipeline.jobs.cancel(job.id) == job


class TestMemory:
    """Tests for releasing finished jobs from memory."""

    def test_finished_job_is_served_from_database(self, make_pipeline, wait_for_job):
        pipeline = make_pipeline(compute_functions={STAGE: lambda records, params, ctx: ComputeResult()})
        project = pipeline.create_project("evict")

        job = wait_for_job(pipeline.jobs, pipeline.jobs.submit(project.id, STAGE).id)
        pipeline.jobs.shutdown(wait=True)

        assert pipeline.jobs._jobs == {}
        assert pipeline.jobs.status(job.id) == job
        assert pipeline.jobs.latest(project.id, STAGE) == job

    def test_cancelled_job_leaves_memory_after_worker_exits(self, make_pipeline, rows):
        release = threading.Event()
        started = threading.Event()
        pipeline = make_pipeline(compute_functions={STAGE: gated(release, started)})
        project = pipeline.create_project("cancel-evict")
        pipeline.imports.commit(project.id, ImportParams(rows=rows(3)))

        job = pipeline.jobs.submit(project.id, STAGE)
        assert started.wait(timeout=5)
        cancelled = pipeline.jobs.cancel(job.id)
        assert job.id in pipeline.jobs._jobs
        release.set()
        pipeline.jobs.shutdown(wait=True)

        assert pipeline.jobs._jobs == {}
        assert pipeline.jobs.status(job.id) == cancelled


class TestStageState:
    """Tests for the stage outcomes recorded from job completions."""

    def test_success_completes_stage(self, make_pipeline, wait_for_job):
        pipeline = make_pipeline(compute_functions={STAGE: lambda records, params, ctx: ComputeResult()})
        project = pipeline.create_project("complete")

        job = wait_for_job(pipeline.jobs, pipeline.jobs.submit(project.id, STAGE).id)

        state = pipeline.db.stage_states(project.id)[STAGE]
        assert state.status == StageStatus.COMPLETED
        assert state.last_job_id == job.id
        assert STAGE in pipeline.db.completed_stages(project.id)

    def test_interrupted_jobs_fail_on_restart(self, make_pipeline):
        pipeline = make_pipeline()
        project = pipeline.create_project("restart")
        pipeline.db.save_job(
            Job(id="stale", project_id=project.id, stage=STAGE, state=JobState.RUNNING, submitted_at=utcnow())
        )

        restarted = make_pipeline()
        job = restarted.jobs.status("stale")

        assert job.state == JobState.FAILED
        assert job.failure_reason == FailureReason.UNKNOWN
        assert restarted.db.stage_states(project.id)[STAGE].status == StageStatus.FAILED
