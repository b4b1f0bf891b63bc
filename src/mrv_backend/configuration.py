from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

load_dotenv()

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:5]]

CONFIG_PATH = next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)
if CONFIG_PATH is None:  # pragma: no cover - fail fast in misconfigured environments
    raise FileNotFoundError("Default config.yaml could not be located; ensure the package data was installed.")

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "MRV_DATA_DIR": "storage.data_dir",
    "MRV_DB_PATH": "storage.db_path",
    "MRV_UPLOAD_DIR": "storage.upload_dir",
    "MRV_EXPORT_DIR": "storage.export_dir",
    "MRV_MAX_WORKERS": "jobs.max_workers",
    "MRV_JOB_MAX_ATTEMPTS": "jobs.max_attempts",
    "MRV_JOB_BACKOFF_SECONDS": "jobs.backoff_seconds",
    "MRV_STAGE_LOCK_TIMEOUT": "pipeline.stage_lock_timeout_seconds",
    "MRV_LOG_LEVEL": "logging.level",
}


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def _env_overrides() -> Dict[str, Any]:
    dotlist = [f"{key}={os.environ[env]}" for env, key in ENV_OVERRIDES.items() if os.environ.get(env)]
    return OmegaConf.to_container(OmegaConf.from_dotlist(dotlist)) if dotlist else {}  # type: ignore[return-value]


def make_runtime_config(overrides: Dict[str, Any] | None = None) -> DictConfig:
    """
    Build the effective configuration.

    Precedence (lowest first): packaged config.yaml, environment variables,
    explicit ``overrides``. Unknown keys are rejected because the base is struct.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    merged = OmegaConf.merge(base, OmegaConf.create(_env_overrides()), OmegaConf.create(overrides or {}))
    config = DictConfig(merged)

    storage = config.storage
    data_dir = Path(storage.data_dir)
    storage.db_path = str(storage.db_path or data_dir / "mrv.db")
    storage.upload_dir = str(storage.upload_dir or data_dir / "uploads")
    storage.export_dir = str(storage.export_dir or data_dir / "exports")
    return config
