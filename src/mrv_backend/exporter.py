"""Tree biometric export snapshots (CSV + manifest, optionally pushed to S3)."""

from __future__ import annotations

import csv
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from omegaconf import DictConfig

from . import s3_service
from .database import PipelineDatabase
from .models import Record
from .record_store import DERIVED_FIELDS, RAW_FIELDS, RecordStore
from .utils import ensure_directory, utcnow

logger = logging.getLogger(__name__)

EXPORT_FILENAME = "tree_biometrics.csv"
EXPORT_COLUMNS = ("id", "import_id", *RAW_FIELDS, "status", *DERIVED_FIELDS)


class Exporter:
    def __init__(self, db: PipelineDatabase, records: RecordStore, config: DictConfig) -> None:
        self.db = db
        self.records = records
        self.config = config
        self.export_root = Path(config.storage.export_dir)

    def _project_dir(self, project_id: int) -> Path:
        return self.export_root / f"project-{project_id}"

    def export(self, project_id: int, upload: bool = True) -> Dict[str, Any]:
        """Write the active records with their computed biometrics to a new snapshot."""
        project = self.db.get_project(project_id)
        records = self.records.get_records(project_id, active_only=True)

        stamp = utcnow().strftime("%Y%m%dT%H%M%S%fZ")
        snapshot_dir = ensure_directory(self._project_dir(project_id) / f"export-{stamp}")
        csv_path = snapshot_dir / EXPORT_FILENAME
        with csv_path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=EXPORT_COLUMNS)
            writer.writeheader()
            for record in records:
                writer.writerow(_export_row(record))

        manifest = {
            "project_id": project.id,
            "project_name": project.name,
            "exported_at": utcnow().isoformat(),
            "record_count": len(records),
            "total_biomass_kg": round(sum(r.biomass for r in records if r.biomass is not None), 3),
            "stages": {
                state.stage.value: state.completed_at.isoformat() if state.completed_at else None
                for state in project.stages
            },
        }
        (snapshot_dir / "manifest.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        logger.info(f"Exported {len(records)} records for project {project_id} to {snapshot_dir}")

        result: Dict[str, Any] = {
            "path": str(csv_path),
            "record_count": len(records),
            "total_biomass_kg": manifest["total_biomass_kg"],
            "s3_key": None,
            "download_url": None,
        }
        if upload and self.config.export.upload_to_s3 and s3_service.is_s3_configured():
            archive = s3_service.zip_directory(snapshot_dir, snapshot_dir)
            s3_key = f"exports/project-{project_id}/{archive.name}"
            if s3_service.upload_to_s3(archive, s3_key):
                result["s3_key"] = s3_key
                result["download_url"] = s3_service.generate_presigned_url(
                    s3_key, expiration=int(self.config.export.presigned_url_expiration)
                )
        return result

    def latest_export(self, project_id: int) -> Optional[Path]:
        project_dir = self._project_dir(project_id)
        if not project_dir.exists():
            return None
        snapshots = sorted(path for path in project_dir.glob("export-*") if (path / EXPORT_FILENAME).exists())
        return snapshots[-1] / EXPORT_FILENAME if snapshots else None


def _export_row(record: Record) -> Dict[str, Any]:
    data = record.model_dump(mode="json")
    return {column: data.get(column) for column in EXPORT_COLUMNS}
