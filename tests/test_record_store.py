"""
Tests for the record store: single and bulk record corrections.
"""

import pytest

from mrv_backend.errors import NotFoundError, ValidationError
from mrv_backend.models import RecordStatus


def _ids(pipeline, project_id):
    return [record.id for record in pipeline.records.get_records(project_id)]


class TestUpdateRecord:
    """Tests for single-record updates."""

    def test_update_applies_patch(self, pipeline, imported):
        record_id = _ids(pipeline, imported.id)[0]
        record = pipeline.records.update_record(imported.id, record_id, {"diameter": 42.5, "species_code": "TA"})
        assert record.diameter == 42.5
        assert record.species_code == "TA"

    def test_unknown_record_is_not_found(self, pipeline, imported):
        with pytest.raises(NotFoundError):
            pipeline.records.update_record(imported.id, 99999, {"diameter": 20})

    def test_invalid_value_is_rejected(self, pipeline, imported):
        record_id = _ids(pipeline, imported.id)[0]
        with pytest.raises(ValidationError) as exc_info:
            pipeline.records.update_record(imported.id, record_id, {"diameter": -3})
        assert exc_info.value.errors[0]["field"] == "diameter"
        assert pipeline.records.get_record(imported.id, record_id).diameter == 10.0

    def test_unknown_field_is_rejected(self, pipeline, imported):
        record_id = _ids(pipeline, imported.id)[0]
        with pytest.raises(ValidationError):
            pipeline.records.update_record(imported.id, record_id, {"biomass": 100})

    def test_empty_patch_is_rejected(self, pipeline, imported):
        record_id = _ids(pipeline, imported.id)[0]
        with pytest.raises(ValidationError):
            pipeline.records.update_record(imported.id, record_id, {})


class TestBulkUpdate:
    """Tests for per-record bulk updates."""

    def test_partial_failure_persists_valid_records(self, pipeline, imported):
        """Three invalid patches out of ten fail alone; the other seven are stored."""
        ids = _ids(pipeline, imported.id)[:10]
        bad = set(ids[2:5])
        patch = {str(record_id): {"height": -1.0 if record_id in bad else 15.5} for record_id in ids}

        result = pipeline.records.bulk_update(imported.id, ids, patch)

        assert result.updated == 7
        assert sorted(item.record_id for item in result.failed) == sorted(bad)
        for record in pipeline.records.get_records_by_ids(imported.id, ids):
            if record.id in bad:
                assert record.height != -1.0
            else:
                assert record.height == 15.5

    def test_shared_patch_applies_to_all(self, pipeline, imported):
        ids = _ids(pipeline, imported.id)[:4]
        result = pipeline.records.bulk_update(imported.id, ids, {"physiography": "siwalik"})
        assert result.updated == 4
        assert result.failed == []
        assert {r.physiography for r in pipeline.records.get_records_by_ids(imported.id, ids)} == {"siwalik"}

    def test_missing_ids_are_reported(self, pipeline, imported):
        ids = _ids(pipeline, imported.id)[:2] + [99999]
        result = pipeline.records.bulk_update(imported.id, ids, {"lean_angle": 10})
        assert result.updated == 2
        assert [(item.record_id, item.reason) for item in result.failed] == [(99999, "record not found")]

    def test_repeated_ids_are_applied_once(self, pipeline, imported):
        ids = _ids(pipeline, imported.id)[:2]
        result = pipeline.records.bulk_update(imported.id, [ids[0], ids[1], ids[0]], {"lean_angle": 10})
        assert result.updated == 2
        assert result.failed == []


class TestDerivedFields:
    """Tests for computed-field writes and status bookkeeping."""

    def test_set_derived_rejects_raw_fields(self, pipeline, imported):
        record_id = _ids(pipeline, imported.id)[0]
        with pytest.raises(ValueError):
            pipeline.records.set_derived(imported.id, {record_id: {"diameter": 1.0}})

    def test_set_status_and_counts(self, pipeline, imported):
        ids = _ids(pipeline, imported.id)
        assert pipeline.records.set_status(imported.id, ids[:3], RecordStatus.REMOVED) == 3

        counts = pipeline.records.status_counts(imported.id)
        assert counts[RecordStatus.REMOVED] == 3
        assert counts[RecordStatus.ACTIVE] == 17
        assert len(pipeline.records.get_records(imported.id, active_only=True)) == 17
