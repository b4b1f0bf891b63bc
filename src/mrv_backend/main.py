from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import Body, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from .configuration import make_runtime_config
from .errors import ComputationFailedError, NotFoundError, PartialFailureError, PipelineError, PreconditionNotMetError, ValidationError
from .importer import read_csv
from .models import (
    AllometricAssignmentParams,
    AllometricModel,
    BulkUpdateRequest,
    CatalogEntry,
    CleaningSummary,
    DataImport,
    HDAssignmentParams,
    HDModel,
    IgnoreRequest,
    ImportPreview,
    IssueDetail,
    IssueSummary,
    IssueType,
    Job,
    JobState,
    OutcomeKind,
    Project,
    ProjectCreate,
    ProjectUpdate,
    QualityCheckParams,
    Record,
    RecordStatus,
    SpeciesEntry,
    SpeciesMappingRequest,
    StageName,
    StageOutcome,
    UpdateRecordRequest,
)
from .orchestrator import PipelineOrchestrator
from .utils import ensure_directory, sanitize_label

config = make_runtime_config()
logging.basicConfig(level=config.logging.level, format=config.logging.format)
logger = logging.getLogger(__name__)

app = FastAPI(title="MRV Pipeline API", version="0.1.0")

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

pipeline = PipelineOrchestrator(config)
upload_root = ensure_directory(Path(config.storage.upload_dir))

ERROR_STATUS_CODES: Dict[str, int] = {
    "NotFound": 404,
    "PreconditionNotMet": 409,
    "ValidationError": 422,
    "PartialFailure": 207,
    "Conflict": 409,
    "StageFailed": 500,
}


def get_pipeline() -> PipelineOrchestrator:
    return pipeline


def existing_project(project_id: int, orchestrator: PipelineOrchestrator = Depends(get_pipeline)) -> int:
    orchestrator.db.ensure_project(project_id)
    return project_id


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    return JSONResponse(status_code=ERROR_STATUS_CODES.get(exc.kind, 500), content=exc.to_payload())


@app.on_event("shutdown")
def shutdown_pipeline() -> None:
    pipeline.shutdown()


def _outcome_response(outcome: StageOutcome) -> Any:
    """Completed -> 200, submitted -> 202, blocked and rejected as error payloads."""
    if outcome.kind == OutcomeKind.BLOCKED:
        raise PreconditionNotMetError(outcome.stage.value, [s.value for s in outcome.missing_stages])
    if outcome.kind == OutcomeKind.REJECTED:
        raise ValidationError(f"Invalid parameters for stage '{outcome.stage.value}'", outcome.errors)
    if outcome.kind == OutcomeKind.SUBMITTED:
        return JSONResponse(status_code=202, content=outcome.model_dump(mode="json"))
    return outcome


def _job_payload(job: Job) -> Dict[str, Any]:
    """Job snapshot; a failed job also carries its ComputationFailed error payload."""
    payload = job.model_dump(mode="json")
    if job.state == JobState.FAILED:
        payload["failure"] = ComputationFailedError.for_job(job).to_payload()
    return payload


async def _store_upload(project_id: int, file: UploadFile) -> bytes:
    upload_dir = ensure_directory(upload_root / f"project-{project_id}" / uuid4().hex)
    stem = sanitize_label(Path(file.filename or "").stem, "inventory")
    content = await file.read()
    await file.close()
    (upload_dir / f"{stem}.csv").write_bytes(content)
    return content


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


# Projects


@app.get("/mrv/projects", response_model=List[Project])
def list_projects(orchestrator: PipelineOrchestrator = Depends(get_pipeline)) -> List[Project]:
    return orchestrator.db.list_projects()


@app.post("/mrv/projects", response_model=Project, status_code=201)
def create_project(payload: ProjectCreate, orchestrator: PipelineOrchestrator = Depends(get_pipeline)) -> Project:
    return orchestrator.create_project(payload.name, payload.description)


@app.get("/mrv/projects/{project_id}", response_model=Project)
def get_project(project_id: int, orchestrator: PipelineOrchestrator = Depends(get_pipeline)) -> Project:
    return orchestrator.pipeline_state(project_id)


@app.put("/mrv/projects/{project_id}", response_model=Project)
def update_project(
    project_id: int, payload: ProjectUpdate, orchestrator: PipelineOrchestrator = Depends(get_pipeline)
) -> Project:
    return orchestrator.db.update_project(project_id, **payload.model_dump(exclude_none=True))


@app.get("/mrv/projects/{project_id}/pipeline")
def get_pipeline_state(
    project_id: int = Depends(existing_project), orchestrator: PipelineOrchestrator = Depends(get_pipeline)
) -> Dict[str, Any]:
    project = orchestrator.pipeline_state(project_id)
    return {
        "project": project.model_dump(mode="json"),
        "jobs": [job.model_dump(mode="json") for job in orchestrator.jobs.list_jobs(project_id)],
    }


@app.post("/mrv/projects/{project_id}/stages/{stage}")
def advance_stage(
    project_id: int,
    stage: StageName,
    params: Optional[Dict[str, Any]] = Body(default=None),
    orchestrator: PipelineOrchestrator = Depends(get_pipeline),
):
    return _outcome_response(orchestrator.advance(project_id, stage, params))


# Reference catalog


@app.get("/mrv/physiography", response_model=List[CatalogEntry])
def list_physiography(orchestrator: PipelineOrchestrator = Depends(get_pipeline)) -> List[CatalogEntry]:
    return orchestrator.catalog.physiography


@app.get("/mrv/forest-species", response_model=List[SpeciesEntry])
def list_forest_species(orchestrator: PipelineOrchestrator = Depends(get_pipeline)) -> List[SpeciesEntry]:
    return orchestrator.catalog.species


@app.get("/mrv/hd-models", response_model=List[HDModel])
def list_hd_models(orchestrator: PipelineOrchestrator = Depends(get_pipeline)) -> List[HDModel]:
    return orchestrator.catalog.hd_models


@app.get("/mrv/allometric-models", response_model=List[AllometricModel])
def list_allometric_models(orchestrator: PipelineOrchestrator = Depends(get_pipeline)) -> List[AllometricModel]:
    return orchestrator.catalog.allometric_models


# Data imports


@app.get("/mrv/projects/{project_id}/data-imports", response_model=List[DataImport])
def list_data_imports(project_id: int, orchestrator: PipelineOrchestrator = Depends(get_pipeline)) -> List[DataImport]:
    return orchestrator.imports.list_imports(project_id)


@app.post("/mrv/projects/{project_id}/data-imports/preview", response_model=ImportPreview)
async def preview_data_import(
    project_id: int = Depends(existing_project),
    file: UploadFile = File(...),
    sample_size: int = Form(20),
    orchestrator: PipelineOrchestrator = Depends(get_pipeline),
) -> ImportPreview:
    rows = read_csv(await file.read())
    await file.close()
    return orchestrator.imports.preview(project_id, rows, sample_size)


@app.post("/mrv/projects/{project_id}/data-imports")
async def create_data_import(
    project_id: int = Depends(existing_project),
    file: UploadFile = File(...),
    label: str = Form(""),
    orchestrator: PipelineOrchestrator = Depends(get_pipeline),
):
    if not file.filename:
        raise ValidationError("CSV file must have a filename", [{"field": "file", "message": "missing filename"}])
    rows = read_csv(await _store_upload(project_id, file))
    params = {"label": label or Path(file.filename).stem, "filename": file.filename, "rows": rows}
    return _outcome_response(orchestrator.advance(project_id, StageName.IMPORT, params))


@app.get("/mrv/projects/{project_id}/data-imports/{import_id}", response_model=DataImport)
def get_data_import(
    project_id: int, import_id: int, orchestrator: PipelineOrchestrator = Depends(get_pipeline)
) -> DataImport:
    return orchestrator.imports.get_import(project_id, import_id)


@app.delete("/mrv/projects/{project_id}/data-imports/{import_id}", response_model=DataImport)
def delete_data_import(
    project_id: int, import_id: int, orchestrator: PipelineOrchestrator = Depends(get_pipeline)
) -> DataImport:
    return orchestrator.imports.delete_import(project_id, import_id)


# Data quality check


@app.post("/mrv/projects/{project_id}/data-quality-check")
def run_data_quality_check(
    project_id: int,
    params: Optional[QualityCheckParams] = Body(default=None),
    orchestrator: PipelineOrchestrator = Depends(get_pipeline),
):
    payload = params.model_dump(mode="json") if params else None
    return _outcome_response(orchestrator.advance(project_id, StageName.QUALITY_CHECK, payload))


@app.get("/mrv/projects/{project_id}/data-quality-check/summary", response_model=List[IssueSummary])
def data_quality_summary(project_id: int, orchestrator: PipelineOrchestrator = Depends(get_pipeline)) -> List[IssueSummary]:
    return orchestrator.issues.summary(project_id)


@app.get("/mrv/projects/{project_id}/data-quality-check/details", response_model=List[IssueDetail])
def data_quality_details(
    issue_type: IssueType,
    project_id: int = Depends(existing_project),
    orchestrator: PipelineOrchestrator = Depends(get_pipeline),
) -> List[IssueDetail]:
    return orchestrator.issues.details(project_id, issue_type)


@app.post("/mrv/projects/{project_id}/data-quality-check/update-record", response_model=Record)
def update_record(
    payload: UpdateRecordRequest,
    project_id: int = Depends(existing_project),
    orchestrator: PipelineOrchestrator = Depends(get_pipeline),
) -> Record:
    return orchestrator.records.update_record(project_id, payload.record_id, payload.patch)


@app.post("/mrv/projects/{project_id}/data-quality-check/bulk-update")
def bulk_update_records(
    payload: BulkUpdateRequest,
    project_id: int = Depends(existing_project),
    orchestrator: PipelineOrchestrator = Depends(get_pipeline),
) -> Dict[str, Any]:
    result = orchestrator.records.bulk_update(project_id, payload.record_ids, payload.patch)
    if result.failed:
        raise PartialFailureError(result.updated, [item.model_dump() for item in result.failed])
    return result.model_dump()


@app.post("/mrv/projects/{project_id}/data-quality-check/ignore-records")
def ignore_records(
    payload: IgnoreRequest,
    project_id: int = Depends(existing_project),
    orchestrator: PipelineOrchestrator = Depends(get_pipeline),
) -> Dict[str, Any]:
    changed = orchestrator.issues.ignore(project_id, payload.record_ids, payload.issue_type)
    issue = orchestrator.issues.issue(project_id, payload.issue_type)
    return {"changed": changed, "total": issue.count, "ignored": len(issue.ignored_record_ids)}


@app.post("/mrv/projects/{project_id}/data-quality-check/unignore-records")
def unignore_records(
    payload: IgnoreRequest,
    project_id: int = Depends(existing_project),
    orchestrator: PipelineOrchestrator = Depends(get_pipeline),
) -> Dict[str, Any]:
    changed = orchestrator.issues.unignore(project_id, payload.record_ids, payload.issue_type)
    issue = orchestrator.issues.issue(project_id, payload.issue_type)
    return {"changed": changed, "total": issue.count, "ignored": len(issue.ignored_record_ids)}


@app.get("/mrv/projects/{project_id}/data-quality-check/ignored-records", response_model=List[Record])
def list_ignored_records(
    issue_type: IssueType, project_id: int, orchestrator: PipelineOrchestrator = Depends(get_pipeline)
) -> List[Record]:
    return orchestrator.issues.ignored_records(project_id, issue_type)


@app.get("/mrv/projects/{project_id}/physiography-options")
def physiography_options(
    project_id: int = Depends(existing_project), orchestrator: PipelineOrchestrator = Depends(get_pipeline)
) -> List[Dict[str, Any]]:
    return orchestrator.assignments.physiography_options(project_id)


# Data cleaning


@app.get("/mrv/projects/{project_id}/data-cleaning/summary", response_model=CleaningSummary)
def data_cleaning_summary(project_id: int, orchestrator: PipelineOrchestrator = Depends(get_pipeline)) -> CleaningSummary:
    return orchestrator.runner.cleaning_summary(project_id)


@app.post("/mrv/projects/{project_id}/data-cleaning/remove-ignored")
def remove_ignored_records(project_id: int, orchestrator: PipelineOrchestrator = Depends(get_pipeline)):
    return _outcome_response(orchestrator.advance(project_id, StageName.CLEANING))


@app.get("/mrv/projects/{project_id}/data-cleaning/view-records", response_model=List[Record])
def view_cleaned_records(
    project_id: int,
    status: Optional[RecordStatus] = None,
    orchestrator: PipelineOrchestrator = Depends(get_pipeline),
) -> List[Record]:
    return orchestrator.runner.view_records(project_id, status)


# HD model assignment


@app.get("/mrv/projects/{project_id}/hd-model/physiography-summary")
def hd_physiography_summary(
    project_id: int = Depends(existing_project), orchestrator: PipelineOrchestrator = Depends(get_pipeline)
) -> List[Dict[str, Any]]:
    return orchestrator.assignments.physiography_summary(project_id)


@app.post("/mrv/projects/{project_id}/hd-model/assign-models")
def assign_hd_models(
    project_id: int,
    params: Optional[HDAssignmentParams] = Body(default=None),
    orchestrator: PipelineOrchestrator = Depends(get_pipeline),
):
    payload = params.model_dump(mode="json") if params else None
    return _outcome_response(orchestrator.advance(project_id, StageName.HD_MODEL_ASSIGNMENT, payload))


@app.get("/mrv/projects/{project_id}/hd-model/unassigned-records", response_model=List[Record])
def hd_unassigned_records(
    project_id: int = Depends(existing_project), orchestrator: PipelineOrchestrator = Depends(get_pipeline)
) -> List[Record]:
    return orchestrator.assignments.unassigned_records(project_id)


@app.post("/mrv/projects/{project_id}/hd-model/update-species-mapping")
def update_species_mapping(
    payload: SpeciesMappingRequest, project_id: int, orchestrator: PipelineOrchestrator = Depends(get_pipeline)
) -> Dict[str, str]:
    return orchestrator.assignments.update_species_mapping(project_id, payload.mappings)


@app.get("/mrv/projects/{project_id}/hd-relation/data")
def hd_relation_data(
    project_id: int = Depends(existing_project),
    physiography: Optional[str] = None,
    species_code: Optional[str] = None,
    orchestrator: PipelineOrchestrator = Depends(get_pipeline),
) -> List[Dict[str, Any]]:
    return orchestrator.assignments.hd_relation_data(project_id, physiography, species_code)


# Asynchronous stages

ASYNC_STAGE_ROUTES = {
    "height-prediction": StageName.HEIGHT_PREDICTION,
    "slanted-height-calculation": StageName.SLANTED_HEIGHT,
    "volume-ratio-calculation": StageName.VOLUME_RATIO,
    "biomass-calculation": StageName.BIOMASS,
}


def _register_async_stage(route: str, stage: StageName) -> None:
    def submit(
        project_id: int,
        params: Optional[Dict[str, Any]] = Body(default=None),
        orchestrator: PipelineOrchestrator = Depends(get_pipeline),
    ):
        return _outcome_response(orchestrator.advance(project_id, stage, params))

    def status(
        project_id: int = Depends(existing_project), orchestrator: PipelineOrchestrator = Depends(get_pipeline)
    ) -> Dict[str, Any]:
        job = orchestrator.jobs.latest(project_id, stage)
        if job is None:
            raise NotFoundError(f"{stage.value} job for project", project_id)
        return _job_payload(job)

    name = route.replace("-", "_")
    app.post(f"/mrv/projects/{{project_id}}/{route}", name=f"submit_{name}")(submit)
    app.get(f"/mrv/projects/{{project_id}}/{route}/status", name=f"{name}_status")(status)


for _route, _stage in ASYNC_STAGE_ROUTES.items():
    _register_async_stage(_route, _stage)


@app.get("/mrv/jobs/{job_id}")
def get_job(job_id: str, orchestrator: PipelineOrchestrator = Depends(get_pipeline)) -> Dict[str, Any]:
    return _job_payload(orchestrator.jobs.status(job_id))


@app.post("/mrv/jobs/{job_id}/cancel")
def cancel_job(job_id: str, orchestrator: PipelineOrchestrator = Depends(get_pipeline)) -> Dict[str, Any]:
    return _job_payload(orchestrator.jobs.cancel(job_id))


# Allometric assignment


@app.get("/mrv/projects/{project_id}/allometric-assignment-status")
def allometric_assignment_status(
    project_id: int = Depends(existing_project), orchestrator: PipelineOrchestrator = Depends(get_pipeline)
) -> Dict[str, Any]:
    return orchestrator.assignments.allometric_status(project_id)


@app.get("/mrv/projects/{project_id}/allometric-assignment")
def current_allometric_assignment(project_id: int, orchestrator: PipelineOrchestrator = Depends(get_pipeline)) -> Dict[str, str]:
    return orchestrator.assignments.allometric_assignments(project_id)


@app.post("/mrv/projects/{project_id}/save-allometric-assignments")
def save_allometric_assignments(
    project_id: int,
    params: Optional[AllometricAssignmentParams] = Body(default=None),
    orchestrator: PipelineOrchestrator = Depends(get_pipeline),
):
    payload = params.model_dump(mode="json") if params else None
    return _outcome_response(orchestrator.advance(project_id, StageName.ALLOMETRIC_ASSIGNMENT, payload))


# Export


@app.post("/mrv/projects/{project_id}/export-tree-biometric-calc")
def export_tree_biometric_calc(
    project_id: int,
    params: Optional[Dict[str, Any]] = Body(default=None),
    orchestrator: PipelineOrchestrator = Depends(get_pipeline),
):
    return _outcome_response(orchestrator.advance(project_id, StageName.EXPORT, params))


@app.get("/mrv/projects/{project_id}/export-tree-biometric-calc/download")
def download_tree_biometric_calc(
    project_id: int = Depends(existing_project), orchestrator: PipelineOrchestrator = Depends(get_pipeline)
) -> FileResponse:
    path = orchestrator.exporter.latest_export(project_id)
    if path is None:
        raise NotFoundError("export for project", project_id)
    return FileResponse(path, media_type="text/csv", filename=f"project-{project_id}-{path.name}")
