"""
Inventory data imports.

Raw tables arrive as CSV uploads (or already-parsed rows). ``preview`` is a dry
run that reports parse errors and how the rows compare to the project's current
active set; ``commit`` stores a new import batch. Every commit creates a separate
import record; earlier batches are never overwritten. Deleting an import takes
its records out of the active set without removing rows.
"""

from __future__ import annotations

import csv
import io
import logging
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from .database import PipelineDatabase
from .errors import NotFoundError, ValidationError
from .models import DataImport, ImportParams, ImportPreview, ImportStatus, RecordStatus, RowError
from .record_store import RAW_FIELDS, RecordStore
from .utils import coerce_float, coerce_text, deserialize_datetime, serialize_datetime, utcnow

logger = logging.getLogger(__name__)

NUMERIC_FIELDS = {"diameter", "height", "lean_angle"}

# Header aliases seen in field-sheet exports, lower-cased
COLUMN_ALIASES: Dict[str, str] = {
    "plot": "plot_id",
    "plot_no": "plot_id",
    "tree": "tree_no",
    "tree_id": "tree_no",
    "species": "species_code",
    "spp": "species_code",
    "dbh": "diameter",
    "dbh_cm": "diameter",
    "diameter_cm": "diameter",
    "ht": "height",
    "height_m": "height",
    "tree_height": "height",
    "physiographic_zone": "physiography",
    "physio": "physiography",
    "lean": "lean_angle",
}


def read_csv(content: bytes) -> List[Dict[str, Any]]:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValidationError("CSV must be UTF-8 encoded", [{"field": "file", "message": str(exc)}]) from exc
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValidationError("CSV has no header row", [{"field": "file", "message": "empty file"}])
    return [dict(row) for row in reader]


def normalize_rows(raw_rows: Sequence[Mapping[str, Any]]) -> Tuple[List[Dict[str, Any]], List[RowError], List[str]]:
    """
    Map raw columns onto record fields and coerce numeric cells.

    Returns (rows, errors, recognised columns). Row numbers in errors are
    1-based data rows. Rows with any error are excluded from ``rows``.
    """
    rows: List[Dict[str, Any]] = []
    errors: List[RowError] = []
    columns = set()
    for index, raw in enumerate(raw_rows, start=1):
        row: Dict[str, Any] = {field: None for field in RAW_FIELDS}
        row_errors = []
        for key, value in raw.items():
            if key is None:
                continue
            name = key.strip().lower().replace(" ", "_")
            name = COLUMN_ALIASES.get(name, name)
            if name not in RAW_FIELDS:
                continue
            columns.add(name)
            if name in NUMERIC_FIELDS:
                try:
                    row[name] = coerce_float(value)
                except (TypeError, ValueError):
                    row_errors.append(RowError(row=index, field=name, message=f"not a number: {value!r}"))
            else:
                row[name] = coerce_text(value)
        if row_errors:
            errors.extend(row_errors)
        else:
            rows.append(row)
    return rows, errors, [field for field in RAW_FIELDS if field in columns]


class ImportService:
    def __init__(self, db: PipelineDatabase, records: RecordStore) -> None:
        self.db = db
        self.records = records

    def preview(self, project_id: int, raw_rows: Sequence[Mapping[str, Any]], sample_size: int = 20) -> ImportPreview:
        """Dry-run diff of ``raw_rows`` against the project's active records."""
        rows, errors, columns = normalize_rows(raw_rows)
        existing_keys = {
            (record.plot_id, record.tree_no)
            for record in self.records.get_records(project_id, active_only=True)
            if record.plot_id and record.tree_no
        }
        existing = sum(1 for row in rows if row["plot_id"] and row["tree_no"] and (row["plot_id"], row["tree_no"]) in existing_keys)
        return ImportPreview(
            total_rows=len(raw_rows),
            valid_rows=len(rows),
            invalid_rows=errors,
            new_rows=len(rows) - existing,
            existing_rows=existing,
            columns=columns,
            sample=rows[:sample_size],
        )

    def commit(self, project_id: int, params: ImportParams) -> DataImport:
        self.db.ensure_project(project_id)
        rows, errors, _ = normalize_rows(params.rows)
        if errors:
            raise ValidationError(
                f"{len(errors)} cell(s) could not be parsed",
                [{"field": f"rows.{err.row}.{err.field}", "message": err.message} for err in errors],
            )

        now = serialize_datetime(utcnow())
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO data_imports (project_id, label, filename, status, record_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (project_id, params.label or params.filename, params.filename, ImportStatus.ACTIVE.value, len(rows), now),
            )
            import_id = cursor.lastrowid
            self.records.insert_records(project_id, import_id, rows, conn)
        logger.info(f"Committed import {import_id} for project {project_id} with {len(rows)} rows")
        return self.get_import(project_id, import_id)

    def list_imports(self, project_id: int) -> List[DataImport]:
        self.db.ensure_project(project_id)
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM data_imports WHERE project_id = ? ORDER BY id DESC", (project_id,)
            ).fetchall()
        return [self._row_to_import(row) for row in rows]

    def get_import(self, project_id: int, import_id: int) -> DataImport:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM data_imports WHERE project_id = ? AND id = ?", (project_id, import_id)
            ).fetchone()
        if not row:
            raise NotFoundError("data import", import_id)
        return self._row_to_import(row)

    def delete_import(self, project_id: int, import_id: int) -> DataImport:
        """Mark the import deleted and move its records out of the active set."""
        self.get_import(project_id, import_id)
        with self.db.connection() as conn:
            conn.execute(
                "UPDATE data_imports SET status = ? WHERE project_id = ? AND id = ?",
                (ImportStatus.DELETED.value, project_id, import_id),
            )
            cursor = conn.execute(
                "UPDATE records SET status = ? WHERE project_id = ? AND import_id = ?",
                (RecordStatus.REMOVED.value, project_id, import_id),
            )
        logger.info(f"Deleted import {import_id} of project {project_id}; {cursor.rowcount} records removed")
        return self.get_import(project_id, import_id)

    @staticmethod
    def _row_to_import(row) -> DataImport:
        return DataImport(
            id=row["id"],
            project_id=row["project_id"],
            label=row["label"],
            filename=row["filename"],
            status=row["status"],
            record_count=row["record_count"],
            created_at=deserialize_datetime(row["created_at"]),
        )
