"""
Data-quality detection rules.

Each rule is a pure function over the current active record set and returns
``{record_id: reason}`` for the records it flags. Rules are cheap, so the issue
registry recomputes them on every scan instead of patching stored issues.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Sequence, Tuple

from omegaconf import DictConfig

from .models import IssueType, Record

Findings = Dict[int, str]


@dataclass(frozen=True)
class QualityContext:
    diameter_range: Tuple[float, float]
    height_range: Tuple[float, float]
    lean_angle_max: float
    required_fields: Tuple[str, ...]
    known_species: FrozenSet[str] = field(default_factory=frozenset)
    known_physiography: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_config(cls, config: DictConfig, known_species, known_physiography) -> "QualityContext":
        quality = config.quality
        return cls(
            diameter_range=(float(quality.diameter_min), float(quality.diameter_max)),
            height_range=(float(quality.height_min), float(quality.height_max)),
            lean_angle_max=float(quality.lean_angle_max),
            required_fields=tuple(quality.required_fields),
            known_species=frozenset(known_species),
            known_physiography=frozenset(known_physiography),
        )


def missing_values(records: Sequence[Record], ctx: QualityContext) -> Findings:
    findings: Findings = {}
    for record in records:
        missing = [name for name in ctx.required_fields if getattr(record, name) in (None, "")]
        if missing:
            findings[record.id] = f"missing {', '.join(missing)}"
    return findings


def out_of_range(records: Sequence[Record], ctx: QualityContext) -> Findings:
    findings: Findings = {}
    d_min, d_max = ctx.diameter_range
    h_min, h_max = ctx.height_range
    for record in records:
        reasons = []
        if record.diameter is not None and not d_min <= record.diameter <= d_max:
            reasons.append(f"diameter {record.diameter:g} outside [{d_min:g}, {d_max:g}] cm")
        if record.height is not None and not h_min <= record.height <= h_max:
            reasons.append(f"height {record.height:g} outside [{h_min:g}, {h_max:g}] m")
        if record.lean_angle is not None and not 0 <= record.lean_angle <= ctx.lean_angle_max:
            reasons.append(f"lean angle {record.lean_angle:g} outside [0, {ctx.lean_angle_max:g}] degrees")
        if reasons:
            findings[record.id] = "; ".join(reasons)
    return findings


def duplicates(records: Sequence[Record], ctx: QualityContext) -> Findings:
    """Flag every repeat of a (plot, tree number) pair after its first occurrence."""
    findings: Findings = {}
    first_seen: Dict[Tuple[str, str], int] = {}
    for record in records:
        if not record.plot_id or not record.tree_no:
            continue
        key = (record.plot_id, record.tree_no)
        if key in first_seen:
            findings[record.id] = f"duplicate of record {first_seen[key]} (plot {key[0]}, tree {key[1]})"
        else:
            first_seen[key] = record.id
    return findings


def species_unmapped(records: Sequence[Record], ctx: QualityContext) -> Findings:
    return {
        record.id: f"species code '{record.species_code}' has no mapping"
        for record in records
        if record.species_code and record.species_code not in ctx.known_species
    }


def physiography_unmapped(records: Sequence[Record], ctx: QualityContext) -> Findings:
    return {
        record.id: f"physiographic zone '{record.physiography}' is not recognised"
        for record in records
        if record.physiography and record.physiography not in ctx.known_physiography
    }


CHECKS: Dict[IssueType, Callable[[Sequence[Record], QualityContext], Findings]] = {
    IssueType.MISSING_VALUE: missing_values,
    IssueType.OUT_OF_RANGE: out_of_range,
    IssueType.DUPLICATE: duplicates,
    IssueType.SPECIES_UNMAPPED: species_unmapped,
    IssueType.PHYSIOGRAPHY_UNMAPPED: physiography_unmapped,
}
