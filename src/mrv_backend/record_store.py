"""
Per-project inventory records and their status flags.

Mutations are applied record by record: a patch that fails validation for one
record never blocks the others, and each record update is a single ``UPDATE``
statement so a patch is never half-applied.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from .database import PipelineDatabase
from .errors import NotFoundError, ValidationError
from .models import BulkUpdateResult, FailedItem, Record, RecordPatch, RecordStatus

logger = logging.getLogger(__name__)

RAW_FIELDS = ("plot_id", "tree_no", "species_code", "diameter", "height", "physiography", "lean_angle")
DERIVED_FIELDS = (
    "hd_model_id",
    "predicted_height",
    "slanted_height",
    "stem_volume",
    "volume_ratio",
    "allometric_model_id",
    "biomass",
)


def _row_to_record(row: sqlite3.Row) -> Record:
    return Record(**dict(row))


def validate_patch(patch: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate a user patch and return only the fields that were provided."""
    if not patch:
        raise ValidationError("Patch must change at least one field", [{"field": "__root__", "message": "empty patch"}])
    try:
        model = RecordPatch.model_validate(dict(patch))
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc, "Invalid record patch") from exc
    return model.model_dump(exclude_unset=True)


class RecordStore:
    def __init__(self, db: PipelineDatabase) -> None:
        self.db = db

    def get_records(
        self,
        project_id: int,
        status: Optional[RecordStatus] = None,
        active_only: bool = False,
    ) -> List[Record]:
        """Records ordered by id; ``active_only`` excludes ``removed`` records."""
        self.db.ensure_project(project_id)
        query = "SELECT * FROM records WHERE project_id = ?"
        params: List[Any] = [project_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        elif active_only:
            query += " AND status != ?"
            params.append(RecordStatus.REMOVED.value)
        with self.db.connection() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [_row_to_record(row) for row in rows]

    def get_records_by_ids(self, project_id: int, record_ids: Iterable[int]) -> List[Record]:
        ids = sorted(set(record_ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM records WHERE project_id = ? AND id IN ({placeholders}) ORDER BY id",
                (project_id, *ids),
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def get_record(self, project_id: int, record_id: int) -> Record:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE project_id = ? AND id = ?", (project_id, record_id)
            ).fetchone()
        if not row:
            raise NotFoundError("record", record_id)
        return _row_to_record(row)

    def require_ids(self, project_id: int, record_ids: Iterable[int]) -> List[int]:
        """Return the ids sorted and de-duplicated; raise NotFound for any unknown id."""
        ids = sorted(set(record_ids))
        found = {record.id for record in self.get_records_by_ids(project_id, ids)}
        missing = [record_id for record_id in ids if record_id not in found]
        if missing:
            raise NotFoundError("record", missing if len(missing) > 1 else missing[0])
        return ids

    def insert_records(
        self,
        project_id: int,
        import_id: int,
        rows: Sequence[Mapping[str, Any]],
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Insert raw rows for an import batch, inside ``conn``'s transaction when given."""
        if conn is None:
            with self.db.connection() as conn:
                return self.insert_records(project_id, import_id, rows, conn)

        columns = ("project_id", "import_id", *RAW_FIELDS)
        values = [(project_id, import_id, *(row.get(field) for field in RAW_FIELDS)) for row in rows]
        conn.executemany(
            f"INSERT INTO records ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            values,
        )
        logger.info(f"Inserted {len(values)} records into project {project_id} (import {import_id})")
        return len(values)

    def update_record(self, project_id: int, record_id: int, patch: Mapping[str, Any]) -> Record:
        self.get_record(project_id, record_id)
        fields = validate_patch(patch)
        with self.db.connection() as conn:
            self._apply(conn, project_id, record_id, fields)
        return self.get_record(project_id, record_id)

    def bulk_update(self, project_id: int, record_ids: Sequence[int], patch: Mapping[str, Any]) -> BulkUpdateResult:
        """
        Apply ``patch`` to each listed record independently.

        ``patch`` may be one mapping for all records or a mapping keyed by record
        id (``{id: patch}``) for per-record corrections. Failed ids are returned
        with their reason; valid records are persisted regardless.
        """
        self.db.ensure_project(project_id)
        record_ids = list(dict.fromkeys(record_ids))
        existing = {record.id for record in self.get_records_by_ids(project_id, record_ids)}
        per_record = _is_per_record_patch(patch)

        failed: List[FailedItem] = []
        updated = 0
        with self.db.connection() as conn:
            for record_id in record_ids:
                if record_id not in existing:
                    failed.append(FailedItem(record_id=record_id, reason="record not found"))
                    continue
                record_patch = _patch_for(patch, record_id) if per_record else patch
                try:
                    fields = validate_patch(record_patch)
                except ValidationError as exc:
                    reason = "; ".join(f"{err['field']}: {err['message']}" for err in exc.errors) or exc.message
                    failed.append(FailedItem(record_id=record_id, reason=reason))
                    continue
                self._apply(conn, project_id, record_id, fields)
                updated += 1

        if failed:
            logger.warning(f"Bulk update on project {project_id}: {updated} applied, {len(failed)} failed")
        return BulkUpdateResult(updated=updated, failed=failed)

    def set_derived(self, project_id: int, patches: Mapping[int, Mapping[str, Any]]) -> int:
        """Write computed fields; not user facing, so no patch validation."""
        count = 0
        with self.db.connection() as conn:
            for record_id, fields in patches.items():
                unknown = set(fields) - set(DERIVED_FIELDS)
                if unknown:
                    raise ValueError(f"Not a derived field: {sorted(unknown)}")
                self._apply(conn, project_id, record_id, fields)
                count += 1
        return count

    def set_status(self, project_id: int, record_ids: Iterable[int], status: RecordStatus) -> int:
        ids = list(record_ids)
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        with self.db.connection() as conn:
            cursor = conn.execute(
                f"UPDATE records SET status = ? WHERE project_id = ? AND id IN ({placeholders})",
                (status.value, project_id, *ids),
            )
            return cursor.rowcount

    def status_counts(self, project_id: int) -> Dict[RecordStatus, int]:
        self.db.ensure_project(project_id)
        counts = {status: 0 for status in RecordStatus}
        with self.db.connection() as conn:
            for row in conn.execute(
                "SELECT status, COUNT(*) AS n FROM records WHERE project_id = ? GROUP BY status", (project_id,)
            ):
                counts[RecordStatus(row["status"])] = row["n"]
        return counts

    @staticmethod
    def _apply(conn: sqlite3.Connection, project_id: int, record_id: int, fields: Mapping[str, Any]) -> None:
        if not fields:
            return
        assignments = ", ".join(f"{key} = ?" for key in fields)
        conn.execute(
            f"UPDATE records SET {assignments} WHERE project_id = ? AND id = ?",
            (*fields.values(), project_id, record_id),
        )


def _is_per_record_patch(patch: Mapping[str, Any]) -> bool:
    return bool(patch) and all(str(key).isdigit() and isinstance(value, Mapping) for key, value in patch.items())


def _patch_for(patch: Mapping[str, Any], record_id: int) -> Mapping[str, Any]:
    return patch.get(str(record_id), patch.get(record_id, {}))  # type: ignore[call-overload]
