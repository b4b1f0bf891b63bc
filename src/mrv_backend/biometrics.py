"""
Default biometric models for the asynchronous stages.

The pipeline treats these as pluggable: each function takes a snapshot of the
active records and returns per-record patches of derived fields without touching
storage. Swap them out through ``JobTracker(compute_functions=...)`` to call a
real model service; raise ``TransientComputeError`` for retryable failures.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from omegaconf import DictConfig, OmegaConf

from .catalog import ModelCatalog
from .errors import InvalidInputError, ModelUnavailableError
from .models import ComputeParams, Record, StageName

BREAST_HEIGHT = 1.3


@dataclass
class ComputeContext:
    catalog: ModelCatalog
    config: DictConfig
    species_mappings: Mapping[str, str] = field(default_factory=dict)

    def wood_density(self, species_code: Optional[str]) -> Optional[float]:
        if not species_code:
            return None
        entry = self.catalog.species_entry(self.species_mappings.get(species_code, species_code))
        return entry.wood_density if entry else None


@dataclass
class ComputeResult:
    patches: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    skipped: Dict[int, str] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        return {"updated": len(self.patches), "skipped": len(self.skipped)}


ComputeFunction = Callable[[Sequence[Record], ComputeParams, ComputeContext], ComputeResult]


def _finish(result: ComputeResult, records: Sequence[Record], what: str) -> ComputeResult:
    if not records:
        raise InvalidInputError("Project has no active records")
    if not result.patches and result.skipped:
        sample = ", ".join(f"{rid}: {reason}" for rid, reason in list(result.skipped.items())[:5])
        raise InvalidInputError(f"No record could be used for {what} ({sample})")
    return result


def naslund_height(diameter: float, a: float, b: float) -> float:
    return BREAST_HEIGHT + diameter**2 / (a + b * diameter) ** 2


def predict_heights(records: Sequence[Record], params: ComputeParams, ctx: ComputeContext) -> ComputeResult:
    result = ComputeResult()
    for record in records:
        if params.only_missing and record.predicted_height is not None:
            continue
        if record.diameter is None:
            result.skipped[record.id] = "missing diameter"
            continue
        if not record.hd_model_id:
            result.skipped[record.id] = "no HD model assigned"
            continue
        model = ctx.catalog.hd_model(record.hd_model_id)
        if model is None:
            raise ModelUnavailableError(f"HD model '{record.hd_model_id}' is not available")
        result.patches[record.id] = {"predicted_height": round(naslund_height(record.diameter, model.a, model.b), 3)}
    return _finish(result, records, "height prediction")


def slanted_heights(records: Sequence[Record], params: ComputeParams, ctx: ComputeContext) -> ComputeResult:
    """Stem length along the lean: vertical height / cos(lean angle)."""
    result = ComputeResult()
    for record in records:
        if params.only_missing and record.slanted_height is not None:
            continue
        height = record.height_used
        if height is None:
            result.skipped[record.id] = "no measured or predicted height"
            continue
        lean = math.radians(record.lean_angle or 0.0)
        if math.cos(lean) <= 0:
            result.skipped[record.id] = f"lean angle {record.lean_angle} is not usable"
            continue
        result.patches[record.id] = {"slanted_height": round(height / math.cos(lean), 3)}
    return _finish(result, records, "slanted height calculation")


def branch_ratio(diameter: float, classes: Sequence[Mapping[str, Any]]) -> float:
    for cls in classes:
        if cls["max_diameter"] is None or diameter <= cls["max_diameter"]:
            return float(cls["ratio"])
    return float(classes[-1]["ratio"])


def volume_ratios(records: Sequence[Record], params: ComputeParams, ctx: ComputeContext) -> ComputeResult:
    """Stem volume from basal area, stem length and form factor, plus branch-to-stem ratio."""
    volume = OmegaConf.to_container(ctx.config.volume, resolve=True)
    result = ComputeResult()
    for record in records:
        if params.only_missing and record.stem_volume is not None:
            continue
        length = record.slanted_height if record.slanted_height is not None else record.height_used
        if record.diameter is None or length is None:
            result.skipped[record.id] = "missing diameter or height"
            continue
        form_factor = volume["form_factors"].get(record.physiography, volume["default_form_factor"])
        basal_area = math.pi / 4 * (record.diameter / 100) ** 2
        result.patches[record.id] = {
            "stem_volume": round(form_factor * basal_area * length, 5),
            "volume_ratio": branch_ratio(record.diameter, volume["branch_ratio_classes"]),
        }
    return _finish(result, records, "volume ratio calculation")


def biomass(records: Sequence[Record], params: ComputeParams, ctx: ComputeContext) -> ComputeResult:
    """Above-ground biomass in kg per tree."""
    result = ComputeResult()
    for record in records:
        if params.only_missing and record.biomass is not None:
            continue
        if not record.allometric_model_id:
            result.skipped[record.id] = "no allometric model assigned"
            continue
        model = ctx.catalog.allometric_model(record.allometric_model_id)
        if model is None:
            raise ModelUnavailableError(f"Allometric model '{record.allometric_model_id}' is not available")
        density = ctx.wood_density(record.species_code)
        if density is None:
            result.skipped[record.id] = f"no wood density for species '{record.species_code}'"
            continue

        if model.form == "volume_density":
            if record.stem_volume is None or record.volume_ratio is None:
                result.skipped[record.id] = "stem volume not calculated"
                continue
            value = record.stem_volume * (1 + record.volume_ratio) * density * 1000
        elif model.form == "power":
            height = record.height_used
            if record.diameter is None or height is None:
                result.skipped[record.id] = "missing diameter or height"
                continue
            value = model.a * (density * record.diameter**2 * height) ** model.b
        else:
            raise ModelUnavailableError(f"Allometric form '{model.form}' is not supported")
        result.patches[record.id] = {"biomass": round(value, 3)}
    return _finish(result, records, "biomass calculation")


DEFAULT_COMPUTE_FUNCTIONS: Dict[StageName, ComputeFunction] = {
    StageName.HEIGHT_PREDICTION: predict_heights,
    StageName.SLANTED_HEIGHT: slanted_heights,
    StageName.VOLUME_RATIO: volume_ratios,
    StageName.BIOMASS: biomass,
}
