"""
Detected data-quality issues and the user's ignore decisions.

Issues are recomputed on every scan: the rows for each scanned issue type are
replaced wholesale. Ignore decisions are kept in their own table keyed by
(record, issue type), so they survive re-scans until explicitly unignored.
Record status flags are derived from both tables after every change.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Set

from omegaconf import DictConfig

from .catalog import ModelCatalog
from .database import PipelineDatabase
from .errors import ValidationError
from .models import Issue, IssueDetail, IssueSummary, IssueType, Record, RecordStatus
from .quality_checks import CHECKS, QualityContext
from .record_store import RecordStore
from .utils import deserialize_datetime, serialize_datetime, utcnow

logger = logging.getLogger(__name__)

_REFRESH_STATUS_SQL = """
UPDATE records SET status = CASE
    WHEN EXISTS (
        SELECT 1 FROM ignored_issues i
        JOIN issues s
            ON s.project_id = i.project_id AND s.record_id = i.record_id AND s.issue_type = i.issue_type
        WHERE i.project_id = records.project_id AND i.record_id = records.id
    ) THEN 'ignored'
    WHEN EXISTS (
        SELECT 1 FROM issues s WHERE s.project_id = records.project_id AND s.record_id = records.id
    ) THEN 'flagged'
    ELSE 'active'
END
WHERE project_id = ? AND status != 'removed'
"""


class IssueRegistry:
    def __init__(
        self,
        db: PipelineDatabase,
        records: RecordStore,
        catalog: ModelCatalog,
        config: DictConfig,
        mapped_species: Callable[[int], Set[str]],
    ) -> None:
        self.db = db
        self.records = records
        self.catalog = catalog
        self.config = config
        self._mapped_species = mapped_species

    def _context(self, project_id: int) -> QualityContext:
        known_species = self.catalog.species_codes | self._mapped_species(project_id)
        return QualityContext.from_config(self.config, known_species, self.catalog.physiography_codes)

    def scan(self, project_id: int, check_types: Iterable[IssueType]) -> Dict[IssueType, Issue]:
        """Re-detect the given issue types over the active set, replacing prior results."""
        check_types = sorted(set(check_types), key=list(IssueType).index)
        if not check_types:
            raise ValidationError("At least one check type is required", [{"field": "check_types", "message": "empty"}])

        active = self.records.get_records(project_id, active_only=True)
        ctx = self._context(project_id)
        scanned_at = serialize_datetime(utcnow())

        findings = {issue_type: CHECKS[issue_type](active, ctx) for issue_type in check_types}
        with self.db.connection() as conn:
            for issue_type, found in findings.items():
                conn.execute(
                    "DELETE FROM issues WHERE project_id = ? AND issue_type = ?", (project_id, issue_type.value)
                )
                conn.executemany(
                    "INSERT INTO issues (project_id, issue_type, record_id, reason) VALUES (?, ?, ?, ?)",
                    [(project_id, issue_type.value, record_id, reason) for record_id, reason in found.items()],
                )
                conn.execute(
                    """
                    INSERT INTO issue_scans (project_id, issue_type, scanned_at) VALUES (?, ?, ?)
                    ON CONFLICT (project_id, issue_type) DO UPDATE SET scanned_at = excluded.scanned_at
                    """,
                    (project_id, issue_type.value, scanned_at),
                )
            conn.execute(_REFRESH_STATUS_SQL, (project_id,))

        issues = {issue_type: self.issue(project_id, issue_type) for issue_type in check_types}
        logger.info(
            f"Quality scan for project {project_id} over {len(active)} records: "
            + ", ".join(f"{t.value}={issue.count}" for t, issue in issues.items())
        )
        return issues

    def issue(self, project_id: int, issue_type: IssueType) -> Issue:
        affected = self._affected_ids(project_id, issue_type)
        ignored = self._ignored_ids(project_id, issue_type)
        return Issue(
            issue_type=issue_type,
            record_ids=affected,
            ignored_record_ids=[record_id for record_id in affected if record_id in ignored],
        )

    def details(self, project_id: int, issue_type: IssueType) -> List[IssueDetail]:
        """Affected active-set records in id order, with the reason text for each."""
        self.db.ensure_project(project_id)
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT s.record_id, s.reason FROM issues s
                JOIN records r ON r.id = s.record_id
                WHERE s.project_id = ? AND s.issue_type = ? AND r.status != ?
                ORDER BY s.record_id
                """,
                (project_id, issue_type.value, RecordStatus.REMOVED.value),
            ).fetchall()
        reasons = {row["record_id"]: row["reason"] for row in rows}
        ignored = self._ignored_ids(project_id, issue_type)
        records = self.records.get_records_by_ids(project_id, reasons)
        return [
            IssueDetail(record=record, reason=reasons[record.id], ignored=record.id in ignored)
            for record in records
        ]

    def ignore(self, project_id: int, record_ids: Iterable[int], issue_type: IssueType) -> int:
        """Mark records ignored for ``issue_type``; already-ignored records are a no-op."""
        ids = self.records.require_ids(project_id, record_ids)
        affected = set(self._affected_ids(project_id, issue_type, include_removed=True))
        not_affected = [record_id for record_id in ids if record_id not in affected]
        if not_affected:
            raise ValidationError(
                f"Records are not affected by {issue_type.value}",
                [{"field": "record_ids", "message": f"record {record_id} has no {issue_type.value} issue"} for record_id in not_affected],
            )

        now = serialize_datetime(utcnow())
        with self.db.connection() as conn:
            cursor = conn.executemany(
                """
                INSERT OR IGNORE INTO ignored_issues (project_id, record_id, issue_type, ignored_at)
                VALUES (?, ?, ?, ?)
                """,
                [(project_id, record_id, issue_type.value, now) for record_id in ids],
            )
            added = cursor.rowcount
            conn.execute(_REFRESH_STATUS_SQL, (project_id,))
        logger.info(f"Ignored {added} record(s) for {issue_type.value} in project {project_id}")
        return added

    def unignore(self, project_id: int, record_ids: Iterable[int], issue_type: IssueType) -> int:
        ids = self.records.require_ids(project_id, record_ids)
        with self.db.connection() as conn:
            cursor = conn.executemany(
                "DELETE FROM ignored_issues WHERE project_id = ? AND record_id = ? AND issue_type = ?",
                [(project_id, record_id, issue_type.value) for record_id in ids],
            )
            removed = cursor.rowcount
            conn.execute(_REFRESH_STATUS_SQL, (project_id,))
        logger.info(f"Unignored {removed} record(s) for {issue_type.value} in project {project_id}")
        return removed

    def ignored_records(self, project_id: int, issue_type: IssueType) -> List[Record]:
        """Active-set records ignored for ``issue_type`` whose issue is still detected."""
        self.db.ensure_project(project_id)
        ids = self.issue(project_id, issue_type).ignored_record_ids
        return self.records.get_records_by_ids(project_id, ids)

    def summary(self, project_id: int) -> List[IssueSummary]:
        """Latest counts for every issue type that has been scanned."""
        self.db.ensure_project(project_id)
        with self.db.connection() as conn:
            scans = conn.execute(
                "SELECT issue_type, scanned_at FROM issue_scans WHERE project_id = ?", (project_id,)
            ).fetchall()
        scanned = {IssueType(row["issue_type"]): deserialize_datetime(row["scanned_at"]) for row in scans}
        summaries = []
        for issue_type in IssueType:
            if issue_type not in scanned:
                continue
            issue = self.issue(project_id, issue_type)
            summaries.append(
                IssueSummary(
                    issue_type=issue_type,
                    total=issue.count,
                    ignored=len(issue.ignored_record_ids),
                    scanned_at=scanned[issue_type],
                )
            )
        return summaries

    def _affected_ids(self, project_id: int, issue_type: IssueType, include_removed: bool = False) -> List[int]:
        query = """
            SELECT s.record_id FROM issues s JOIN records r ON r.id = s.record_id
            WHERE s.project_id = ? AND s.issue_type = ?
        """
        params = [project_id, issue_type.value]
        if not include_removed:
            query += " AND r.status != ?"
            params.append(RecordStatus.REMOVED.value)
        with self.db.connection() as conn:
            rows = conn.execute(query + " ORDER BY s.record_id", params).fetchall()
        return [row["record_id"] for row in rows]

    def _ignored_ids(self, project_id: int, issue_type: IssueType) -> Set[int]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT record_id FROM ignored_issues WHERE project_id = ? AND issue_type = ?",
                (project_id, issue_type.value),
            ).fetchall()
        return {row["record_id"] for row in rows}
