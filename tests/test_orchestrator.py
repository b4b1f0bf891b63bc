"""
Tests for stage sequencing, outcomes and per-stage locking.
"""

import pytest

from mrv_backend.errors import ConflictError, StageFailedError
from mrv_backend.models import IssueType, OutcomeKind, RecordStatus, StageName, StageStatus
from mrv_backend.stages import STAGES, ancestors, missing_predecessors


def _snapshot(pipeline, project_id):
    return (
        pipeline.db.stage_states(project_id),
        [r.model_dump() for r in pipeline.records.get_records(project_id)],
        pipeline.jobs.list_jobs(project_id),
    )


class TestStageGraph:
    """Tests for the stage table."""

    def test_every_stage_is_declared(self):
        assert set(STAGES) == set(StageName)

    def test_biomass_ancestors(self):
        assert ancestors(StageName.BIOMASS) == {
            StageName.IMPORT,
            StageName.QUALITY_CHECK,
            StageName.HD_MODEL_ASSIGNMENT,
            StageName.HEIGHT_PREDICTION,
            StageName.SLANTED_HEIGHT,
            StageName.VOLUME_RATIO,
            StageName.ALLOMETRIC_ASSIGNMENT,
        }

    def test_missing_predecessors_in_pipeline_order(self):
        missing = missing_predecessors(StageName.VOLUME_RATIO, {StageName.IMPORT, StageName.QUALITY_CHECK})
        assert missing == [StageName.HD_MODEL_ASSIGNMENT, StageName.HEIGHT_PREDICTION, StageName.SLANTED_HEIGHT]


class TestAdvance:
    """Tests for advance outcomes."""

    @pytest.mark.parametrize("stage", [StageName.CLEANING, StageName.HEIGHT_PREDICTION, StageName.EXPORT])
    def test_blocked_advance_changes_nothing(self, pipeline, imported, stage):
        before = _snapshot(pipeline, imported.id)

        outcome = pipeline.advance(imported.id, stage)

        assert outcome.kind == OutcomeKind.BLOCKED
        assert StageName.QUALITY_CHECK in outcome.missing_stages
        assert StageName.IMPORT not in outcome.missing_stages
        assert _snapshot(pipeline, imported.id) == before

    def test_completed_stage_is_recorded(self, pipeline, imported):
        outcome = pipeline.advance(imported.id, StageName.PREVIEW, {"sample_size": 3})

        assert outcome.kind == OutcomeKind.COMPLETED
        assert outcome.result["record_count"] == 20
        assert len(outcome.result["sample"]) == 3
        project = pipeline.pipeline_state(imported.id)
        assert project.current_stage == StageName.PREVIEW
        state = pipeline.db.stage_states(imported.id)[StageName.PREVIEW]
        assert state.status == StageStatus.COMPLETED
        assert state.run_count == 1

    def test_invalid_params_are_rejected(self, pipeline, project):
        outcome = pipeline.advance(project.id, StageName.IMPORT, {"rows": []})

        assert outcome.kind == OutcomeKind.REJECTED
        assert outcome.errors[0]["field"] == "rows"
        assert pipeline.db.stage_states(project.id)[StageName.IMPORT].status == StageStatus.NOT_STARTED

    def test_async_params_are_rejected_before_submit(self, pipeline, imported):
        pipeline.advance(imported.id, StageName.QUALITY_CHECK)
        pipeline.advance(imported.id, StageName.HD_MODEL_ASSIGNMENT)

        outcome = pipeline.advance(imported.id, StageName.HEIGHT_PREDICTION, {"only_missing": "sometimes"})

        assert outcome.kind == OutcomeKind.REJECTED
        assert pipeline.jobs.list_jobs(imported.id) == []

    def test_failed_sync_stage_is_recorded(self, pipeline, imported):
        def explode(project_id, params):
            raise RuntimeError("disk full")

        pipeline.runner._handlers[StageName.PREVIEW] = explode
        with pytest.raises(StageFailedError):
            pipeline.advance(imported.id, StageName.PREVIEW)

        state = pipeline.db.stage_states(imported.id)[StageName.PREVIEW]
        assert state.status == StageStatus.FAILED
        assert state.last_error == "disk full"

    def test_remove_ignored_is_idempotent(self, pipeline, project, rows):
        data = rows(10)
        data[0]["diameter"] = None
        data[1]["diameter"] = None
        pipeline.advance(project.id, StageName.IMPORT, {"rows": data})
        pipeline.advance(project.id, StageName.QUALITY_CHECK)
        issue = pipeline.issues.issue(project.id, IssueType.MISSING_VALUE)
        pipeline.issues.ignore(project.id, issue.record_ids, IssueType.MISSING_VALUE)

        first = pipeline.advance(project.id, StageName.CLEANING)
        active_once = pipeline.records.get_records(project.id, active_only=True)
        second = pipeline.advance(project.id, StageName.CLEANING)

        assert first.result["removed"] == 2
        assert second.result["removed"] == 0
        assert pipeline.records.get_records(project.id, active_only=True) == active_once
        assert pipeline.runner.cleaning_summary(project.id).by_status[RecordStatus.REMOVED] == 2


class TestLocking:
    """Tests for per-(project, stage) serialization."""

    def test_busy_stage_raises_conflict(self, make_pipeline, rows):
        pipeline = make_pipeline({"pipeline": {"stage_lock_timeout_seconds": 0.05}})
        project = pipeline.create_project("busy")
        pipeline.advance(project.id, StageName.IMPORT, {"rows": rows(5)})

        lock = pipeline._stage_lock(project.id, StageName.PREVIEW)
        lock.acquire()
        try:
            with pytest.raises(ConflictError):
                pipeline.advance(project.id, StageName.PREVIEW)
        finally:
            lock.release()

    def test_other_projects_are_not_blocked(self, make_pipeline, rows):
        pipeline = make_pipeline({"pipeline": {"stage_lock_timeout_seconds": 0.05}})
        busy = pipeline.create_project("busy")
        free = pipeline.create_project("free")
        for project in (busy, free):
            pipeline.advance(project.id, StageName.IMPORT, {"rows": rows(5)})

        lock = pipeline._stage_lock(busy.id, StageName.PREVIEW)
        lock.acquire()
        try:
            assert pipeline.advance(free.id, StageName.PREVIEW).kind == OutcomeKind.COMPLETED
        finally:
            lock.release()
