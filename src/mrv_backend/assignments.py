"""
HD-model and allometric-model assignment, plus project species mappings.

Assignments are stored per group (physiography and optional species for HD
models, species for allometric models) and then stamped onto the active
records, so re-running an assignment is a recomputation over current state.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

from .catalog import ModelCatalog
from .database import PipelineDatabase
from .errors import ValidationError
from .models import AllometricAssignmentParams, HDAssignmentParams, Record
from .record_store import RecordStore

logger = logging.getLogger(__name__)

ANY_SPECIES = ""


class AssignmentService:
    def __init__(self, db: PipelineDatabase, records: RecordStore, catalog: ModelCatalog) -> None:
        self.db = db
        self.records = records
        self.catalog = catalog

    # Species mapping

    def species_mappings(self, project_id: int) -> Dict[str, str]:
        self.db.ensure_project(project_id)
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT source_code, species_code FROM species_mappings WHERE project_id = ? ORDER BY source_code",
                (project_id,),
            ).fetchall()
        return {row["source_code"]: row["species_code"] for row in rows}

    def mapped_species(self, project_id: int) -> Set[str]:
        return set(self.species_mappings(project_id))

    def update_species_mapping(self, project_id: int, mappings: Dict[str, str]) -> Dict[str, str]:
        self.db.ensure_project(project_id)
        errors = [
            {"field": f"mappings.{source}", "message": f"unknown species code '{target}'"}
            for source, target in mappings.items()
            if target not in self.catalog.species_codes
        ]
        if errors:
            raise ValidationError("Species mapping targets must exist in the species catalog", errors)

        with self.db.connection() as conn:
            conn.executemany(
                """
                INSERT INTO species_mappings (project_id, source_code, species_code) VALUES (?, ?, ?)
                ON CONFLICT (project_id, source_code) DO UPDATE SET species_code = excluded.species_code
                """,
                [(project_id, source, target) for source, target in mappings.items()],
            )
        logger.info(f"Updated {len(mappings)} species mapping(s) for project {project_id}")
        return self.species_mappings(project_id)

    def _resolver(self, project_id: int):
        mappings = self.species_mappings(project_id)
        return lambda code: mappings.get(code, code) if code else code

    # HD models

    def physiography_options(self, project_id: int) -> List[Dict[str, Any]]:
        counts: Dict[Optional[str], int] = defaultdict(int)
        for record in self.records.get_records(project_id, active_only=True):
            counts[record.physiography] += 1
        known = self.catalog.physiography_codes
        return [
            {"physiography": code, "record_count": counts[code], "recognised": code in known}
            for code in sorted(counts, key=lambda value: (value is None, value or ""))
        ]

    def hd_assignments(self, project_id: int) -> Dict[tuple, str]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT physiography, species_code, hd_model_id FROM hd_assignments WHERE project_id = ?",
                (project_id,),
            ).fetchall()
        return {(row["physiography"], row["species_code"]): row["hd_model_id"] for row in rows}

    def physiography_summary(self, project_id: int) -> List[Dict[str, Any]]:
        resolve = self._resolver(project_id)
        assignments = self.hd_assignments(project_id)
        groups: Dict[Optional[str], List[Record]] = defaultdict(list)
        for record in self.records.get_records(project_id, active_only=True):
            groups[record.physiography].append(record)

        summary = []
        for physiography in sorted(groups, key=lambda value: (value is None, value or "")):
            members = groups[physiography]
            default = self.catalog.default_hd_model(physiography)
            summary.append(
                {
                    "physiography": physiography,
                    "record_count": len(members),
                    "species": sorted({resolve(r.species_code) for r in members if r.species_code}),
                    "assigned_model_id": assignments.get((physiography, ANY_SPECIES)),
                    "default_model_id": default.id if default else None,
                    "assigned_records": sum(1 for r in members if r.hd_model_id),
                }
            )
        return summary

    def assign_hd_models(self, project_id: int, params: HDAssignmentParams) -> Dict[str, Any]:
        errors = []
        for index, item in enumerate(params.assignments):
            if self.catalog.hd_model(item.hd_model_id) is None:
                errors.append({"field": f"assignments.{index}.hd_model_id", "message": f"unknown HD model '{item.hd_model_id}'"})
            if item.physiography not in self.catalog.physiography_codes:
                errors.append({"field": f"assignments.{index}.physiography", "message": f"unknown physiographic zone '{item.physiography}'"})
        if errors:
            raise ValidationError("Invalid HD model assignment", errors)

        with self.db.connection() as conn:
            conn.executemany(
                """
                INSERT INTO hd_assignments (project_id, physiography, species_code, hd_model_id) VALUES (?, ?, ?, ?)
                ON CONFLICT (project_id, physiography, species_code) DO UPDATE SET hd_model_id = excluded.hd_model_id
                """,
                [(project_id, a.physiography, a.species_code or ANY_SPECIES, a.hd_model_id) for a in params.assignments],
            )

        resolve = self._resolver(project_id)
        assignments = self.hd_assignments(project_id)
        patches: Dict[int, Dict[str, Any]] = {}
        for record in self.records.get_records(project_id, active_only=True):
            model_id = assignments.get((record.physiography, resolve(record.species_code))) or assignments.get(
                (record.physiography, ANY_SPECIES)
            )
            if model_id is None and params.use_defaults:
                default = self.catalog.default_hd_model(record.physiography)
                model_id = default.id if default else None
            if model_id != record.hd_model_id:
                patches[record.id] = {"hd_model_id": model_id}
        self.records.set_derived(project_id, patches)

        unassigned = len(self.unassigned_records(project_id))
        logger.info(f"HD assignment for project {project_id}: {len(patches)} record(s) changed, {unassigned} unassigned")
        return {"changed": len(patches), "unassigned": unassigned, "groups": self.physiography_summary(project_id)}

    def unassigned_records(self, project_id: int) -> List[Record]:
        return [record for record in self.records.get_records(project_id, active_only=True) if not record.hd_model_id]

    def hd_relation_data(
        self, project_id: int, physiography: Optional[str] = None, species_code: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        points = []
        for record in self.records.get_records(project_id, active_only=True):
            if record.diameter is None:
                continue
            if physiography and record.physiography != physiography:
                continue
            if species_code and record.species_code != species_code:
                continue
            points.append(
                {
                    "record_id": record.id,
                    "physiography": record.physiography,
                    "species_code": record.species_code,
                    "diameter": record.diameter,
                    "height": record.height,
                    "predicted_height": record.predicted_height,
                    "hd_model_id": record.hd_model_id,
                }
            )
        return points

    # Allometric models

    def allometric_assignments(self, project_id: int) -> Dict[str, str]:
        self.db.ensure_project(project_id)
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT species_code, allometric_model_id FROM allometric_assignments WHERE project_id = ? ORDER BY species_code",
                (project_id,),
            ).fetchall()
        return {row["species_code"]: row["allometric_model_id"] for row in rows}

    def allometric_status(self, project_id: int) -> Dict[str, Any]:
        resolve = self._resolver(project_id)
        assignments = self.allometric_assignments(project_id)
        groups: Dict[Optional[str], List[Record]] = defaultdict(list)
        for record in self.records.get_records(project_id, active_only=True):
            groups[resolve(record.species_code)].append(record)

        species = []
        for code in sorted(groups, key=lambda value: (value is None, value or "")):
            default = self.catalog.default_allometric_model(code)
            species.append(
                {
                    "species_code": code,
                    "record_count": len(groups[code]),
                    "assigned_model_id": assignments.get(code) if code else None,
                    "default_model_id": default.id if default else None,
                }
            )
        assigned = sum(1 for members in groups.values() for r in members if r.allometric_model_id)
        total = sum(len(members) for members in groups.values())
        return {"assigned_records": assigned, "unassigned_records": total - assigned, "species": species}

    def assign_allometric_models(self, project_id: int, params: AllometricAssignmentParams) -> Dict[str, Any]:
        errors = [
            {"field": f"assignments.{index}.allometric_model_id", "message": f"unknown allometric model '{item.allometric_model_id}'"}
            for index, item in enumerate(params.assignments)
            if self.catalog.allometric_model(item.allometric_model_id) is None
        ]
        if errors:
            raise ValidationError("Invalid allometric assignment", errors)

        with self.db.connection() as conn:
            conn.executemany(
                """
                INSERT INTO allometric_assignments (project_id, species_code, allometric_model_id) VALUES (?, ?, ?)
                ON CONFLICT (project_id, species_code) DO UPDATE SET allometric_model_id = excluded.allometric_model_id
                """,
                [(project_id, a.species_code, a.allometric_model_id) for a in params.assignments],
            )

        resolve = self._resolver(project_id)
        assignments = self.allometric_assignments(project_id)
        patches: Dict[int, Dict[str, Any]] = {}
        for record in self.records.get_records(project_id, active_only=True):
            species = resolve(record.species_code)
            model_id = assignments.get(species) if species else None
            if model_id is None and params.use_defaults:
                default = self.catalog.default_allometric_model(species)
                model_id = default.id if default else None
            if model_id != record.allometric_model_id:
                patches[record.id] = {"allometric_model_id": model_id}
        self.records.set_derived(project_id, patches)

        status = self.allometric_status(project_id)
        logger.info(
            f"Allometric assignment for project {project_id}: {len(patches)} record(s) changed, "
            f"{status['unassigned_records']} unassigned"
        )
        return {"changed": len(patches), **status}
