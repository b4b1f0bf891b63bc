"""Reference lists of species, physiographic zones and the HD / allometric models."""

from __future__ import annotations

from typing import List, Optional

from omegaconf import DictConfig, OmegaConf

from .models import AllometricModel, CatalogEntry, HDModel, SpeciesEntry


class ModelCatalog:
    def __init__(
        self,
        physiography: List[CatalogEntry],
        species: List[SpeciesEntry],
        hd_models: List[HDModel],
        allometric_models: List[AllometricModel],
    ) -> None:
        self.physiography = physiography
        self.species = species
        self.hd_models = hd_models
        self.allometric_models = allometric_models
        self._species = {entry.code: entry for entry in species}
        self._hd = {model.id: model for model in hd_models}
        self._allometric = {model.id: model for model in allometric_models}

    @classmethod
    def from_config(cls, config: DictConfig) -> "ModelCatalog":
        raw = OmegaConf.to_container(config.catalog, resolve=True)
        return cls(
            physiography=[CatalogEntry(**item) for item in raw["physiography"]],
            species=[SpeciesEntry(**item) for item in raw["species"]],
            hd_models=[HDModel(**item) for item in raw["hd_models"]],
            allometric_models=[AllometricModel(**item) for item in raw["allometric_models"]],
        )

    @property
    def physiography_codes(self) -> set:
        return {entry.code for entry in self.physiography}

    @property
    def species_codes(self) -> set:
        return set(self._species)

    def species_entry(self, code: Optional[str]) -> Optional[SpeciesEntry]:
        return self._species.get(code) if code else None

    def hd_model(self, model_id: Optional[str]) -> Optional[HDModel]:
        return self._hd.get(model_id) if model_id else None

    def allometric_model(self, model_id: Optional[str]) -> Optional[AllometricModel]:
        return self._allometric.get(model_id) if model_id else None

    def default_hd_model(self, physiography: Optional[str]) -> Optional[HDModel]:
        return next((model for model in self.hd_models if physiography in model.physiography), None)

    def default_allometric_model(self, species_code: Optional[str]) -> Optional[AllometricModel]:
        return next((model for model in self.allometric_models if species_code in model.species), None)
