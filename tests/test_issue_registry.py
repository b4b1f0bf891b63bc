"""
Tests for issue detection, ignore decisions and their interaction with re-scans.
"""

import pytest

from mrv_backend.errors import NotFoundError, ValidationError
from mrv_backend.models import ImportParams, IssueType, RecordStatus

CHECK_TYPES = [IssueType.MISSING_VALUE, IssueType.OUT_OF_RANGE]


@pytest.fixture
def messy(pipeline, project, rows):
    """Project whose records carry one or two of each issue type."""
    rows = rows(20)
    rows[0]["diameter"] = None
    rows[1]["diameter"] = None
    rows[2]["diameter"] = 500.0
    rows[3]["height"] = 120.0
    rows[5]["tree_no"] = rows[4]["tree_no"]
    rows[6]["species_code"] = "XX"
    rows[7]["physiography"] = "mars"
    pipeline.advance(project.id, "import", ImportParams(rows=rows).model_dump())
    return project


def _ids(pipeline, project_id):
    return [record.id for record in pipeline.records.get_records(project_id)]


class TestScan:
    """Tests for detection over the active set."""

    def test_scan_counts_each_type(self, pipeline, messy):
        ids = _ids(pipeline, messy.id)
        issues = pipeline.issues.scan(messy.id, list(IssueType))

        assert issues[IssueType.MISSING_VALUE].record_ids == ids[0:2]
        assert issues[IssueType.OUT_OF_RANGE].record_ids == ids[2:4]
        assert issues[IssueType.DUPLICATE].record_ids == [ids[5]]
        assert issues[IssueType.SPECIES_UNMAPPED].record_ids == [ids[6]]
        assert issues[IssueType.PHYSIOGRAPHY_UNMAPPED].record_ids == [ids[7]]

    def test_scan_flags_affected_records(self, pipeline, messy):
        pipeline.issues.scan(messy.id, CHECK_TYPES)
        counts = pipeline.records.status_counts(messy.id)
        assert counts[RecordStatus.FLAGGED] == 4
        assert counts[RecordStatus.ACTIVE] == 16

    def test_fixing_a_record_clears_it_on_rescan(self, pipeline, messy):
        ids = _ids(pipeline, messy.id)
        pipeline.issues.scan(messy.id, CHECK_TYPES)
        pipeline.records.update_record(messy.id, ids[0], {"diameter": 25})

        issues = pipeline.issues.scan(messy.id, CHECK_TYPES)

        assert ids[0] not in issues[IssueType.MISSING_VALUE].record_ids
        assert pipeline.records.get_record(messy.id, ids[0]).status == RecordStatus.ACTIVE

    def test_empty_check_types_rejected(self, pipeline, messy):
        with pytest.raises(ValidationError):
            pipeline.issues.scan(messy.id, [])

    def test_details_carry_reasons(self, pipeline, messy):
        ids = _ids(pipeline, messy.id)
        pipeline.issues.scan(messy.id, CHECK_TYPES)
        details = pipeline.issues.details(messy.id, IssueType.OUT_OF_RANGE)
        assert [detail.record.id for detail in details] == ids[2:4]
        assert "diameter 500" in details[0].reason
        assert not any(detail.ignored for detail in details)

    def test_species_mapping_resolves_unmapped_codes(self, pipeline, messy):
        pipeline.issues.scan(messy.id, [IssueType.SPECIES_UNMAPPED])
        pipeline.assignments.update_species_mapping(messy.id, {"XX": "SR"})
        issues = pipeline.issues.scan(messy.id, [IssueType.SPECIES_UNMAPPED])
        assert issues[IssueType.SPECIES_UNMAPPED].record_ids == []


class TestIgnore:
    """Tests for ignore decisions across re-scans."""

    def test_ignore_survives_rescan(self, pipeline, messy):
        ids = _ids(pipeline, messy.id)
        pipeline.issues.scan(messy.id, CHECK_TYPES)
        pipeline.issues.ignore(messy.id, [ids[0]], IssueType.MISSING_VALUE)

        issues = pipeline.issues.scan(messy.id, CHECK_TYPES)

        assert issues[IssueType.MISSING_VALUE].ignored_record_ids == [ids[0]]
        assert issues[IssueType.MISSING_VALUE].count == 2
        assert pipeline.records.get_record(messy.id, ids[0]).status == RecordStatus.IGNORED

    def test_corrected_ignored_record_is_kept_by_cleaning(self, pipeline, messy):
        ids = _ids(pipeline, messy.id)
        checks = {"check_types": [t.value for t in CHECK_TYPES]}
        pipeline.advance(messy.id, "quality_check", checks)
        pipeline.issues.ignore(messy.id, [ids[2]], IssueType.OUT_OF_RANGE)
        pipeline.records.update_record(messy.id, ids[2], {"diameter": 25})

        rescan = pipeline.advance(messy.id, "quality_check", checks)

        assert rescan.result["issues"]["out_of_range"]["ignored"] == 0
        assert pipeline.records.get_record(messy.id, ids[2]).status == RecordStatus.ACTIVE
        assert pipeline.issues.ignored_records(messy.id, IssueType.OUT_OF_RANGE) == []
        assert pipeline.advance(messy.id, "cleaning").result["removed"] == 0
        assert ids[2] in [r.id for r in pipeline.records.get_records(messy.id, active_only=True)]

    def test_ignore_applies_again_when_issue_returns(self, pipeline, messy):
        ids = _ids(pipeline, messy.id)
        pipeline.issues.scan(messy.id, CHECK_TYPES)
        pipeline.issues.ignore(messy.id, [ids[2]], IssueType.OUT_OF_RANGE)
        pipeline.records.update_record(messy.id, ids[2], {"diameter": 25})
        pipeline.issues.scan(messy.id, CHECK_TYPES)

        pipeline.records.update_record(messy.id, ids[2], {"diameter": 500})
        issues = pipeline.issues.scan(messy.id, CHECK_TYPES)

        assert issues[IssueType.OUT_OF_RANGE].ignored_record_ids == [ids[2]]
        assert pipeline.records.get_record(messy.id, ids[2]).status == RecordStatus.IGNORED

    def test_ignore_unignore_scan_commute(self, pipeline, messy):
        """scan(unignore(ignore(scan(x)))) equals scan(x) with nothing ignored."""
        ids = _ids(pipeline, messy.id)
        before = pipeline.issues.scan(messy.id, CHECK_TYPES)
        statuses_before = {r.id: r.status for r in pipeline.records.get_records(messy.id)}

        pipeline.issues.ignore(messy.id, ids[0:2], IssueType.MISSING_VALUE)
        pipeline.issues.scan(messy.id, CHECK_TYPES)
        pipeline.issues.unignore(messy.id, ids[0:2], IssueType.MISSING_VALUE)
        after = pipeline.issues.scan(messy.id, CHECK_TYPES)

        assert after == before
        assert all(not issue.ignored_record_ids for issue in after.values())
        assert {r.id: r.status for r in pipeline.records.get_records(messy.id)} == statuses_before

    def test_ignore_is_idempotent(self, pipeline, messy):
        ids = _ids(pipeline, messy.id)
        pipeline.issues.scan(messy.id, CHECK_TYPES)
        assert pipeline.issues.ignore(messy.id, [ids[2]], IssueType.OUT_OF_RANGE) == 1
        assert pipeline.issues.ignore(messy.id, [ids[2]], IssueType.OUT_OF_RANGE) == 0
        assert [r.id for r in pipeline.issues.ignored_records(messy.id, IssueType.OUT_OF_RANGE)] == [ids[2]]

    def test_ignore_requires_matching_issue(self, pipeline, messy):
        ids = _ids(pipeline, messy.id)
        pipeline.issues.scan(messy.id, CHECK_TYPES)
        with pytest.raises(ValidationError):
            pipeline.issues.ignore(messy.id, [ids[10]], IssueType.MISSING_VALUE)

    def test_ignore_unknown_record(self, pipeline, messy):
        pipeline.issues.scan(messy.id, CHECK_TYPES)
        with pytest.raises(NotFoundError):
            pipeline.issues.ignore(messy.id, [99999], IssueType.MISSING_VALUE)

    def test_summary_reports_scanned_types(self, pipeline, messy):
        ids = _ids(pipeline, messy.id)
        pipeline.issues.scan(messy.id, CHECK_TYPES)
        pipeline.issues.ignore(messy.id, [ids[3]], IssueType.OUT_OF_RANGE)

        summary = {item.issue_type: item for item in pipeline.issues.summary(messy.id)}

        assert set(summary) == set(CHECK_TYPES)
        assert summary[IssueType.OUT_OF_RANGE].total == 2
        assert summary[IssueType.OUT_OF_RANGE].ignored == 1
