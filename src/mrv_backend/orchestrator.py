"""
Pipeline orchestration.

The orchestrator owns the components, checks a stage's predecessors against the
project's stage-state table, delegates to the stage runner (synchronous stages)
or the job tracker (asynchronous stages) and records the outcome. It never runs
stage logic itself and never free-runs: each call advances one stage.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from omegaconf import DictConfig

from .assignments import AssignmentService
from .biometrics import ComputeFunction
from .catalog import ModelCatalog
from .database import PipelineDatabase
from .errors import ConflictError, PipelineError, PreconditionNotMetError, StageFailedError, ValidationError
from .exporter import Exporter
from .importer import ImportService
from .issue_registry import IssueRegistry
from .job_tracker import JobTracker
from .models import Job, JobState, OutcomeKind, Project, StageName, StageOutcome
from .record_store import RecordStore
from .stage_runner import StageRunner, parse_params
from .stages import STAGES, missing_predecessors

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    def __init__(
        self,
        config: DictConfig,
        compute_functions: Optional[Dict[StageName, ComputeFunction]] = None,
        job_sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.db = PipelineDatabase(Path(config.storage.db_path))
        self.catalog = ModelCatalog.from_config(config)
        self.records = RecordStore(self.db)
        self.assignments = AssignmentService(self.db, self.records, self.catalog)
        self.issues = IssueRegistry(self.db, self.records, self.catalog, config, self.assignments.mapped_species)
        self.imports = ImportService(self.db, self.records)
        self.exporter = Exporter(self.db, self.records, config)
        self.runner = StageRunner(self.db, self.records, self.issues, self.imports, self.assignments, self.exporter)
        self.jobs = JobTracker(
            self.db,
            self.records,
            self.catalog,
            self.assignments.species_mappings,
            config,
            compute_functions=compute_functions,
            on_queued=self._job_queued,
            on_finished=self._job_finished,
            sleep=job_sleep,
        )
        self.lock_timeout = float(config.pipeline.stage_lock_timeout_seconds)
        self._stage_locks: Dict[Tuple[int, StageName], Lock] = {}
        self._stage_locks_guard = Lock()

    # Projects

    def create_project(self, name: str, description: str = "") -> Project:
        project = self.db.create_project(name, description)
        logger.info(f"Created project {project.id} ({name})")
        return project

    def pipeline_state(self, project_id: int) -> Project:
        return self.db.get_project(project_id)

    # Advancing stages

    def _stage_lock(self, project_id: int, stage: StageName) -> Lock:
        with self._stage_locks_guard:
            return self._stage_locks.setdefault((project_id, stage), Lock())

    def advance(self, project_id: int, stage: StageName, params: Optional[Mapping[str, Any]] = None) -> StageOutcome:
        """
        Run or submit one stage for a project.

        Returns ``blocked`` without touching any state when a predecessor has not
        completed, ``rejected`` for invalid params, ``completed`` with the result
        of a synchronous stage, or ``submitted`` with the job id of an async one.
        Raises ConflictError if the same stage of the same project stays busy for
        longer than the configured lock timeout.
        """
        stage = StageName(stage)
        self.db.ensure_project(project_id)
        missing = missing_predecessors(stage, self.db.completed_stages(project_id))
        if missing:
            logger.info(f"Stage {stage.value} blocked for project {project_id}: missing {[s.value for s in missing]}")
            return StageOutcome(kind=OutcomeKind.BLOCKED, stage=stage, missing_stages=missing)

        lock = self._stage_lock(project_id, stage)
        if not lock.acquire(timeout=self.lock_timeout):
            raise ConflictError(
                f"Stage '{stage.value}' is already running for project {project_id}",
                {"project_id": project_id, "stage": stage.value},
            )
        try:
            if STAGES[stage].is_async:
                return self._submit(project_id, stage, params)
            return self._run(project_id, stage, params)
        finally:
            lock.release()

    def _submit(self, project_id: int, stage: StageName, params: Optional[Mapping[str, Any]]) -> StageOutcome:
        try:
            parsed = parse_params(stage, params)
        except ValidationError as exc:
            return StageOutcome(kind=OutcomeKind.REJECTED, stage=stage, errors=exc.errors)
        job = self.jobs.submit(project_id, stage, parsed.model_dump())
        return StageOutcome(kind=OutcomeKind.SUBMITTED, stage=stage, job_id=job.id)

    def _run(self, project_id: int, stage: StageName, params: Optional[Mapping[str, Any]]) -> StageOutcome:
        try:
            result = self.runner.run(project_id, stage, params)
        except PreconditionNotMetError as exc:
            return StageOutcome(kind=OutcomeKind.BLOCKED, stage=stage, missing_stages=exc.missing_stages)
        except ValidationError as exc:
            logger.info(f"Stage {stage.value} rejected for project {project_id}: {exc.message}")
            return StageOutcome(kind=OutcomeKind.REJECTED, stage=stage, errors=exc.errors)
        except PipelineError:
            raise
        except Exception as exc:
            logger.exception(f"Stage {stage.value} failed for project {project_id}")
            self.db.mark_stage_failed(project_id, stage, str(exc))
            raise StageFailedError(
                f"Stage '{stage.value}' failed: {exc}", {"project_id": project_id, "stage": stage.value}
            ) from exc

        self.db.mark_stage_started(project_id, stage)
        self.db.mark_stage_completed(project_id, stage)
        logger.info(f"Stage {stage.value} completed for project {project_id}")
        return StageOutcome(kind=OutcomeKind.COMPLETED, stage=stage, result=result)

    # Job tracker callbacks (invoked under the tracker lock)

    def _job_queued(self, job: Job) -> None:
        self.db.mark_stage_started(job.project_id, job.stage, job.id)

    def _job_finished(self, job: Job) -> None:
        if job.state == JobState.SUCCEEDED:
            self.db.mark_stage_completed(job.project_id, job.stage)
        else:
            reason = job.failure_reason.value if job.failure_reason else "Unknown"
            self.db.mark_stage_failed(job.project_id, job.stage, f"{reason}: {job.error}")

    def shutdown(self) -> None:
        self.jobs.shutdown(wait=True)
