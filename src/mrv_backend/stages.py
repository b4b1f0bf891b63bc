"""
The fixed stage graph.

Every stage is declared once here with its execution mode, its direct
predecessors and its params model. Precondition checks walk this table; no other
module encodes stage ordering.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Set, Tuple, Type

from pydantic import BaseModel

from .models import (
    AllometricAssignmentParams,
    CleaningParams,
    ComputeParams,
    ExportParams,
    HDAssignmentParams,
    ImportParams,
    PreviewParams,
    QualityCheckParams,
    StageName,
)


@dataclass(frozen=True)
class StageDefinition:
    name: StageName
    requires: Tuple[StageName, ...]
    params_model: Type[BaseModel]
    is_async: bool = False


STAGES: Dict[StageName, StageDefinition] = {
    definition.name: definition
    for definition in (
        StageDefinition(StageName.IMPORT, (), ImportParams),
        StageDefinition(StageName.PREVIEW, (StageName.IMPORT,), PreviewParams),
        StageDefinition(StageName.QUALITY_CHECK, (StageName.IMPORT,), QualityCheckParams),
        StageDefinition(StageName.CLEANING, (StageName.QUALITY_CHECK,), CleaningParams),
        StageDefinition(StageName.HD_MODEL_ASSIGNMENT, (StageName.QUALITY_CHECK,), HDAssignmentParams),
        StageDefinition(StageName.HEIGHT_PREDICTION, (StageName.HD_MODEL_ASSIGNMENT,), ComputeParams, is_async=True),
        StageDefinition(StageName.SLANTED_HEIGHT, (StageName.HEIGHT_PREDICTION,), ComputeParams, is_async=True),
        StageDefinition(StageName.VOLUME_RATIO, (StageName.SLANTED_HEIGHT,), ComputeParams, is_async=True),
        StageDefinition(StageName.ALLOMETRIC_ASSIGNMENT, (StageName.QUALITY_CHECK,), AllometricAssignmentParams),
        StageDefinition(
            StageName.BIOMASS,
            (StageName.VOLUME_RATIO, StageName.ALLOMETRIC_ASSIGNMENT),
            ComputeParams,
            is_async=True,
        ),
        StageDefinition(StageName.EXPORT, (StageName.BIOMASS,), ExportParams),
    )
}


def ancestors(stage: StageName) -> Set[StageName]:
    """All stages that must have completed before ``stage`` may run."""
    seen: Set[StageName] = set()
    pending = list(STAGES[stage].requires)
    while pending:
        current = pending.pop()
        if current not in seen:
            seen.add(current)
            pending.extend(STAGES[current].requires)
    return seen


def missing_predecessors(stage: StageName, completed: Iterable[StageName]) -> List[StageName]:
    """Incomplete ancestors of ``stage`` in pipeline order."""
    done = set(completed)
    order = list(StageName)
    return sorted((s for s in ancestors(stage) if s not in done), key=order.index)
