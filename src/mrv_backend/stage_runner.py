"""
Synchronous stage execution.

``StageRunner.run`` checks the stage's predecessors against the project's stage
state, validates params with the stage's pydantic model and dispatches to the
handler registered for the stage. It never records stage state itself; that is
the orchestrator's job.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .assignments import AssignmentService
from .database import PipelineDatabase
from .errors import PreconditionNotMetError, ValidationError
from .exporter import Exporter
from .importer import ImportService
from .issue_registry import IssueRegistry
from .models import (
    AllometricAssignmentParams,
    CleaningSummary,
    ExportParams,
    HDAssignmentParams,
    ImportParams,
    PreviewParams,
    QualityCheckParams,
    Record,
    RecordStatus,
    StageName,
)
from .record_store import RecordStore
from .stages import STAGES, missing_predecessors

logger = logging.getLogger(__name__)

StageResult = Dict[str, Any]


def parse_params(stage: StageName, params: Optional[Mapping[str, Any]]) -> BaseModel:
    try:
        return STAGES[stage].params_model.model_validate(dict(params or {}))
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc, f"Invalid parameters for stage '{stage.value}'") from exc


class StageRunner:
    def __init__(
        self,
        db: PipelineDatabase,
        records: RecordStore,
        issues: IssueRegistry,
        importer: ImportService,
        assignments: AssignmentService,
        exporter: Exporter,
    ) -> None:
        self.db = db
        self.records = records
        self.issues = issues
        self.importer = importer
        self.assignments = assignments
        self.exporter = exporter
        self._handlers: Dict[StageName, Callable[[int, Any], StageResult]] = {
            StageName.IMPORT: self._import,
            StageName.PREVIEW: self._preview,
            StageName.QUALITY_CHECK: self._quality_check,
            StageName.CLEANING: self._remove_ignored,
            StageName.HD_MODEL_ASSIGNMENT: self._assign_hd_models,
            StageName.ALLOMETRIC_ASSIGNMENT: self._assign_allometric_models,
            StageName.EXPORT: self._export,
        }

    def require(self, project_id: int, stage: StageName) -> None:
        """Raise PreconditionNotMet unless every predecessor of ``stage`` has completed."""
        self.db.ensure_project(project_id)
        missing = missing_predecessors(stage, self.db.completed_stages(project_id))
        if missing:
            raise PreconditionNotMetError(stage.value, [s.value for s in missing])

    def run(self, project_id: int, stage: StageName, params: Optional[Mapping[str, Any]] = None) -> StageResult:
        if stage not in self._handlers:
            raise ValidationError(
                f"Stage '{stage.value}' is asynchronous; submit it as a job",
                [{"field": "stage", "message": "not a synchronous stage"}],
            )
        self.require(project_id, stage)
        parsed = parse_params(stage, params)
        logger.info(f"Running stage {stage.value} for project {project_id}")
        return self._handlers[stage](project_id, parsed)

    # Handlers

    def _import(self, project_id: int, params: ImportParams) -> StageResult:
        data_import = self.importer.commit(project_id, params)
        return {"import": data_import.model_dump(mode="json")}

    def _preview(self, project_id: int, params: PreviewParams) -> StageResult:
        records = self.records.get_records(project_id, active_only=True)
        diameters = [r.diameter for r in records if r.diameter is not None]
        heights = [r.height for r in records if r.height is not None]
        return {
            "record_count": len(records),
            "plots": len({r.plot_id for r in records if r.plot_id}),
            "species": dict(Counter(r.species_code or "" for r in records)),
            "physiography": dict(Counter(r.physiography or "" for r in records)),
            "diameter": _range(diameters),
            "height": _range(heights),
            "sample": [r.model_dump(mode="json") for r in records[: params.sample_size]],
        }

    def _quality_check(self, project_id: int, params: QualityCheckParams) -> StageResult:
        issues = self.issues.scan(project_id, params.check_types)
        return {
            "issues": {
                issue_type.value: {"total": issue.count, "ignored": len(issue.ignored_record_ids)}
                for issue_type, issue in issues.items()
            },
            "total": sum(issue.count for issue in issues.values()),
        }

    def _remove_ignored(self, project_id: int, params: Any) -> StageResult:
        """Move every ignored record out of the active set; repeat runs change nothing."""
        ignored = [r.id for r in self.records.get_records(project_id, status=RecordStatus.IGNORED)]
        removed = self.records.set_status(project_id, ignored, RecordStatus.REMOVED)
        logger.info(f"Removed {removed} ignored record(s) from project {project_id}")
        return {"removed": removed, "summary": self.cleaning_summary(project_id).model_dump(mode="json")}

    def _assign_hd_models(self, project_id: int, params: HDAssignmentParams) -> StageResult:
        return self.assignments.assign_hd_models(project_id, params)

    def _assign_allometric_models(self, project_id: int, params: AllometricAssignmentParams) -> StageResult:
        return self.assignments.assign_allometric_models(project_id, params)

    def _export(self, project_id: int, params: ExportParams) -> StageResult:
        return self.exporter.export(project_id, upload=params.upload)

    # Read-only companions

    def cleaning_summary(self, project_id: int) -> CleaningSummary:
        self.require(project_id, StageName.CLEANING)
        counts = self.records.status_counts(project_id)
        total = sum(counts.values())
        return CleaningSummary(total=total, active_set=total - counts[RecordStatus.REMOVED], by_status=counts)

    def view_records(self, project_id: int, status: Optional[RecordStatus] = None) -> List[Record]:
        self.require(project_id, StageName.CLEANING)
        return self.records.get_records(project_id, status=status, active_only=status is None)


def _range(values: List[float]) -> Dict[str, Optional[float]]:
    if not values:
        return {"min": None, "max": None, "mean": None}
    return {"min": min(values), "max": max(values), "mean": round(sum(values) / len(values), 3)}
