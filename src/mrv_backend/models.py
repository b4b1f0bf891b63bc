from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RecordStatus(str, Enum):
    ACTIVE = "active"
    FLAGGED = "flagged"
    IGNORED = "ignored"
    REMOVED = "removed"


class IssueType(str, Enum):
    MISSING_VALUE = "missing_value"
    OUT_OF_RANGE = "out_of_range"
    DUPLICATE = "duplicate"
    SPECIES_UNMAPPED = "species_unmapped"
    PHYSIOGRAPHY_UNMAPPED = "physiography_unmapped"


class StageName(str, Enum):
    IMPORT = "import"
    PREVIEW = "preview"
    QUALITY_CHECK = "quality_check"
    CLEANING = "cleaning"
    HD_MODEL_ASSIGNMENT = "hd_model_assignment"
    HEIGHT_PREDICTION = "height_prediction"
    SLANTED_HEIGHT = "slanted_height"
    VOLUME_RATIO = "volume_ratio"
    ALLOMETRIC_ASSIGNMENT = "allometric_assignment"
    BIOMASS = "biomass"
    EXPORT = "export"


class StageStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


class FailureReason(str, Enum):
    TIMEOUT = "Timeout"
    INVALID_INPUT = "InvalidInput"
    MODEL_UNAVAILABLE = "ModelUnavailable"
    CANCELLED = "Cancelled"
    UNKNOWN = "Unknown"


class ImportStatus(str, Enum):
    ACTIVE = "active"
    DELETED = "deleted"


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    SUBMITTED = "submitted"
    BLOCKED = "blocked"
    REJECTED = "rejected"


# Projects


class StageState(BaseModel):
    stage: StageName
    status: StageStatus = StageStatus.NOT_STARTED
    run_count: int = 0
    last_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_job_id: Optional[str] = None
    last_error: Optional[str] = None


class Project(BaseModel):
    id: int
    name: str
    description: str = ""
    current_stage: Optional[StageName] = None
    created_at: datetime
    updated_at: datetime
    stages: List[StageState] = Field(default_factory=list)


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str = ""


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None


# Imports and records


class DataImport(BaseModel):
    id: int
    project_id: int
    label: str
    filename: str
    status: ImportStatus
    record_count: int
    created_at: datetime


class RowError(BaseModel):
    row: int
    field: str
    message: str


class ImportPreview(BaseModel):
    total_rows: int
    valid_rows: int
    invalid_rows: List[RowError]
    new_rows: int
    existing_rows: int
    columns: List[str]
    sample: List[Dict[str, Any]]


class Record(BaseModel):
    id: int
    project_id: int
    import_id: Optional[int] = None
    plot_id: Optional[str] = None
    tree_no: Optional[str] = None
    species_code: Optional[str] = None
    diameter: Optional[float] = None
    height: Optional[float] = None
    physiography: Optional[str] = None
    lean_angle: Optional[float] = None
    status: RecordStatus = RecordStatus.ACTIVE
    hd_model_id: Optional[str] = None
    predicted_height: Optional[float] = None
    slanted_height: Optional[float] = None
    stem_volume: Optional[float] = None
    volume_ratio: Optional[float] = None
    allometric_model_id: Optional[str] = None
    biomass: Optional[float] = None

    @property
    def height_used(self) -> Optional[float]:
        return self.height if self.height is not None else self.predicted_height


class RecordPatch(BaseModel):
    """Raw measured attributes a user may correct."""

    model_config = ConfigDict(extra="forbid")

    plot_id: Optional[str] = Field(default=None, min_length=1)
    tree_no: Optional[str] = None
    species_code: Optional[str] = Field(default=None, min_length=1)
    diameter: Optional[float] = Field(default=None, gt=0)
    height: Optional[float] = Field(default=None, gt=0)
    physiography: Optional[str] = Field(default=None, min_length=1)
    lean_angle: Optional[float] = Field(default=None, ge=0, le=90)


class UpdateRecordRequest(BaseModel):
    record_id: int
    patch: Dict[str, Any]


class BulkUpdateRequest(BaseModel):
    record_ids: List[int] = Field(min_length=1)
    patch: Dict[str, Any]


class FailedItem(BaseModel):
    record_id: int
    reason: str


class BulkUpdateResult(BaseModel):
    updated: int
    failed: List[FailedItem] = Field(default_factory=list)


# Issues


class Issue(BaseModel):
    issue_type: IssueType
    record_ids: List[int]
    ignored_record_ids: List[int]

    @property
    def count(self) -> int:
        return len(self.record_ids)


class IssueDetail(BaseModel):
    record: Record
    reason: str
    ignored: bool


class IssueSummary(BaseModel):
    issue_type: IssueType
    total: int
    ignored: int
    scanned_at: Optional[datetime] = None


class IgnoreRequest(BaseModel):
    record_ids: List[int] = Field(min_length=1)
    issue_type: IssueType


class CleaningSummary(BaseModel):
    total: int
    active_set: int
    by_status: Dict[RecordStatus, int]


# Stage params


class ImportParams(BaseModel):
    label: str = ""
    filename: str = "inline"
    rows: List[Dict[str, Any]] = Field(min_length=1)


class PreviewParams(BaseModel):
    sample_size: int = Field(default=20, ge=0, le=500)


class QualityCheckParams(BaseModel):
    check_types: List[IssueType] = Field(default_factory=lambda: list(IssueType))


class CleaningParams(BaseModel):
    model_config = ConfigDict(extra="forbid")


class HDAssignment(BaseModel):
    physiography: str
    species_code: Optional[str] = None
    hd_model_id: str


class HDAssignmentParams(BaseModel):
    assignments: List[HDAssignment] = Field(default_factory=list)
    use_defaults: bool = True


class AllometricAssignment(BaseModel):
    species_code: str
    allometric_model_id: str


class AllometricAssignmentParams(BaseModel):
    assignments: List[AllometricAssignment] = Field(default_factory=list)
    use_defaults: bool = True


class SpeciesMappingRequest(BaseModel):
    mappings: Dict[str, str] = Field(min_length=1)


class ComputeParams(BaseModel):
    only_missing: bool = False


class ExportParams(BaseModel):
    upload: bool = True


# Jobs and outcomes


class JobEvent(BaseModel):
    timestamp: datetime
    message: str


class Job(BaseModel):
    id: str
    project_id: int
    stage: StageName
    state: JobState
    params: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    submitted_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[FailureReason] = None
    error: Optional[str] = None
    result: Dict[str, Any] = Field(default_factory=dict)
    events: List[JobEvent] = Field(default_factory=list)


class StageOutcome(BaseModel):
    kind: OutcomeKind
    stage: StageName
    result: Optional[Dict[str, Any]] = None
    job_id: Optional[str] = None
    missing_stages: List[StageName] = Field(default_factory=list)
    errors: List[Dict[str, str]] = Field(default_factory=list)


# Catalog


class CatalogEntry(BaseModel):
    code: str
    name: str


class SpeciesEntry(CatalogEntry):
    wood_density: float


class HDModel(BaseModel):
    id: str
    name: str
    a: float
    b: float
    physiography: List[str] = Field(default_factory=list)


class AllometricModel(BaseModel):
    id: str
    name: str
    form: str
    a: Optional[float] = None
    b: Optional[float] = None
    species: List[str] = Field(default_factory=list)
