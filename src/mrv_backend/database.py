"""
SQLite database for persistent pipeline state.

This module owns the schema and the connection handling, plus persistence for
projects, their per-stage state table and async jobs. Component modules
(record store, issue registry, importer, assignments) run their own SQL through
``PipelineDatabase.connection()``.
"""

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set

from .errors import NotFoundError
from .models import Job, JobEvent, Project, StageName, StageState, StageStatus
from .utils import deserialize_datetime, ensure_directory, serialize_datetime, utcnow


# Default database path
DEFAULT_DB_PATH = Path("data/mrv.db")

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    current_stage TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stage_states (
    project_id INTEGER NOT NULL REFERENCES projects(id),
    stage TEXT NOT NULL,
    status TEXT NOT NULL,
    run_count INTEGER NOT NULL DEFAULT 0,
    last_started_at TEXT,
    completed_at TEXT,
    last_job_id TEXT,
    last_error TEXT,
    PRIMARY KEY (project_id, stage)
);

CREATE TABLE IF NOT EXISTS data_imports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id),
    label TEXT NOT NULL,
    filename TEXT NOT NULL,
    status TEXT NOT NULL,
    record_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id),
    import_id INTEGER REFERENCES data_imports(id),
    plot_id TEXT,
    tree_no TEXT,
    species_code TEXT,
    diameter REAL,
    height REAL,
    physiography TEXT,
    lean_angle REAL,
    status TEXT NOT NULL DEFAULT 'active',
    hd_model_id TEXT,
    predicted_height REAL,
    slanted_height REAL,
    stem_volume REAL,
    volume_ratio REAL,
    allometric_model_id TEXT,
    biomass REAL
);

CREATE INDEX IF NOT EXISTS idx_records_project_status ON records(project_id, status);

CREATE TABLE IF NOT EXISTS issues (
    project_id INTEGER NOT NULL REFERENCES projects(id),
    issue_type TEXT NOT NULL,
    record_id INTEGER NOT NULL REFERENCES records(id),
    reason TEXT NOT NULL,
    PRIMARY KEY (project_id, issue_type, record_id)
);

CREATE TABLE IF NOT EXISTS issue_scans (
    project_id INTEGER NOT NULL REFERENCES projects(id),
    issue_type TEXT NOT NULL,
    scanned_at TEXT NOT NULL,
    PRIMARY KEY (project_id, issue_type)
);

CREATE TABLE IF NOT EXISTS ignored_issues (
    project_id INTEGER NOT NULL REFERENCES projects(id),
    record_id INTEGER NOT NULL REFERENCES records(id),
    issue_type TEXT NOT NULL,
    ignored_at TEXT NOT NULL,
    PRIMARY KEY (project_id, record_id, issue_type)
);

CREATE TABLE IF NOT EXISTS species_mappings (
    project_id INTEGER NOT NULL REFERENCES projects(id),
    source_code TEXT NOT NULL,
    species_code TEXT NOT NULL,
    PRIMARY KEY (project_id, source_code)
);

CREATE TABLE IF NOT EXISTS hd_assignments (
    project_id INTEGER NOT NULL REFERENCES projects(id),
    physiography TEXT NOT NULL,
    species_code TEXT NOT NULL DEFAULT '',
    hd_model_id TEXT NOT NULL,
    PRIMARY KEY (project_id, physiography, species_code)
);

CREATE TABLE IF NOT EXISTS allometric_assignments (
    project_id INTEGER NOT NULL REFERENCES projects(id),
    species_code TEXT NOT NULL,
    allometric_model_id TEXT NOT NULL,
    PRIMARY KEY (project_id, species_code)
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    project_id INTEGER NOT NULL REFERENCES projects(id),
    stage TEXT NOT NULL,
    state TEXT NOT NULL,
    params TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    submitted_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    failure_reason TEXT,
    error TEXT,
    result TEXT,
    events TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_project_stage ON jobs(project_id, stage, submitted_at DESC);
"""


class PipelineDatabase:
    """
    SQLite database for pipeline persistence.

    Thread-safe: every operation opens its own connection and SQLite handles
    concurrent access with WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        ensure_directory(self.db_path.parent)
        self._init_db()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection; commits on success, rolls back on error."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    # Projects

    def create_project(self, name: str, description: str = "") -> Project:
        now = serialize_datetime(utcnow())
        with self.connection() as conn:
            cursor = conn.execute(
                "INSERT INTO projects (name, description, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (name, description, now, now),
            )
            project_id = cursor.lastrowid
        return self.get_project(project_id)

    def get_project(self, project_id: int) -> Project:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
            if not row:
                raise NotFoundError("project", project_id)
            states = self._stage_states(conn, project_id)

        return Project(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            current_stage=row["current_stage"],
            created_at=deserialize_datetime(row["created_at"]),
            updated_at=deserialize_datetime(row["updated_at"]),
            stages=[states[stage] for stage in StageName],
        )

    def list_projects(self) -> List[Project]:
        with self.connection() as conn:
            ids = [row["id"] for row in conn.execute("SELECT id FROM projects ORDER BY created_at DESC, id DESC")]
        return [self.get_project(project_id) for project_id in ids]

    def update_project(self, project_id: int, **fields: Any) -> Project:
        fields = {key: value for key, value in fields.items() if value is not None}
        self.ensure_project(project_id)
        if fields:
            assignments = ", ".join(f"{key} = ?" for key in fields)
            with self.connection() as conn:
                conn.execute(
                    f"UPDATE projects SET {assignments}, updated_at = ? WHERE id = ?",
                    (*fields.values(), serialize_datetime(utcnow()), project_id),
                )
        return self.get_project(project_id)

    def ensure_project(self, project_id: int) -> None:
        with self.connection() as conn:
            row = conn.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,)).fetchone()
        if not row:
            raise NotFoundError("project", project_id)

    # Stage state table

    def _stage_states(self, conn: sqlite3.Connection, project_id: int) -> Dict[StageName, StageState]:
        states = {stage: StageState(stage=stage) for stage in StageName}
        for row in conn.execute("SELECT * FROM stage_states WHERE project_id = ?", (project_id,)):
            stage = StageName(row["stage"])
            states[stage] = StageState(
                stage=stage,
                status=StageStatus(row["status"]),
                run_count=row["run_count"],
                last_started_at=deserialize_datetime(row["last_started_at"]),
                completed_at=deserialize_datetime(row["completed_at"]),
                last_job_id=row["last_job_id"],
                last_error=row["last_error"],
            )
        return states

    def stage_states(self, project_id: int) -> Dict[StageName, StageState]:
        with self.connection() as conn:
            return self._stage_states(conn, project_id)

    def completed_stages(self, project_id: int) -> Set[StageName]:
        """Stages with at least one successful completion on record."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT stage FROM stage_states WHERE project_id = ? AND completed_at IS NOT NULL",
                (project_id,),
            ).fetchall()
        return {StageName(row["stage"]) for row in rows}

    def mark_stage_started(self, project_id: int, stage: StageName, job_id: Optional[str] = None) -> None:
        now = serialize_datetime(utcnow())
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO stage_states (project_id, stage, status, run_count, last_started_at, last_job_id)
                VALUES (?, ?, ?, 1, ?, ?)
                ON CONFLICT (project_id, stage) DO UPDATE SET
                    status = excluded.status,
                    run_count = stage_states.run_count + 1,
                    last_started_at = excluded.last_started_at,
                    last_job_id = COALESCE(excluded.last_job_id, stage_states.last_job_id)
                """,
                (project_id, stage.value, StageStatus.RUNNING.value, now, job_id),
            )

    def mark_stage_completed(self, project_id: int, stage: StageName) -> None:
        now = serialize_datetime(utcnow())
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO stage_states (project_id, stage, status, run_count, last_started_at, completed_at)
                VALUES (?, ?, ?, 1, ?, ?)
                ON CONFLICT (project_id, stage) DO UPDATE SET
                    status = excluded.status,
                    completed_at = excluded.completed_at,
                    last_error = NULL
                """,
                (project_id, stage.value, StageStatus.COMPLETED.value, now, now),
            )
            conn.execute(
                "UPDATE projects SET current_stage = ?, updated_at = ? WHERE id = ?",
                (stage.value, now, project_id),
            )

    def mark_stage_failed(self, project_id: int, stage: StageName, error: str) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO stage_states (project_id, stage, status, run_count, last_error)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT (project_id, stage) DO UPDATE SET
                    status = excluded.status,
                    last_error = excluded.last_error
                """,
                (project_id, stage.value, StageStatus.FAILED.value, error),
            )

    # Jobs

    def save_job(self, job: Job) -> None:
        """Save or update a job record."""
        with self.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO jobs (
                    id, project_id, stage, state, params, attempts,
                    submitted_at, started_at, completed_at,
                    failure_reason, error, result, events
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.project_id,
                    job.stage.value,
                    job.state.value,
                    json.dumps(job.params),
                    job.attempts,
                    serialize_datetime(job.submitted_at),
                    serialize_datetime(job.started_at),
                    serialize_datetime(job.completed_at),
                    job.failure_reason.value if job.failure_reason else None,
                    job.error,
                    json.dumps(job.result),
                    json.dumps([
                        {"timestamp": serialize_datetime(e.timestamp), "message": e.message}
                        for e in job.events
                    ]),
                ),
            )

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(self, project_id: Optional[int] = None) -> List[Job]:
        """List jobs ordered by submission time (newest first)."""
        with self.connection() as conn:
            if project_id is None:
                rows = conn.execute("SELECT * FROM jobs ORDER BY submitted_at DESC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM jobs WHERE project_id = ? ORDER BY submitted_at DESC", (project_id,)
                ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        events = [
            JobEvent(timestamp=deserialize_datetime(e["timestamp"]), message=e["message"])
            for e in json.loads(row["events"] or "[]")
        ]
        return Job(
            id=row["id"],
            project_id=row["project_id"],
            stage=row["stage"],
            state=row["state"],
            params=json.loads(row["params"] or "{}"),
            attempts=row["attempts"],
            submitted_at=deserialize_datetime(row["submitted_at"]),
            started_at=deserialize_datetime(row["started_at"]),
            completed_at=deserialize_datetime(row["completed_at"]),
            failure_reason=row["failure_reason"],
            error=row["error"],
            result=json.loads(row["result"] or "{}"),
            events=events,
        )
