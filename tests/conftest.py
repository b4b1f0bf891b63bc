"""
Pytest configuration and fixtures for MRV Backend tests.
"""

import os
import shutil
import tempfile
import time

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["MRV_DATA_DIR"] = tempfile.mkdtemp(prefix="mrv_test_data_")
os.environ["MRV_JOB_BACKOFF_SECONDS"] = "0"
os.environ["S3_BUCKET_NAME"] = ""

from mrv_backend.configuration import make_runtime_config
from mrv_backend.main import app
from mrv_backend.models import ImportParams
from mrv_backend.orchestrator import PipelineOrchestrator

SPECIES = ["SR", "PR", "SW", "TA"]
ZONES = ["terai", "siwalik", "middle_mountains"]


@pytest.fixture(scope="session", autouse=True)
def test_data_dir():
    """Clean up the app's data directory after all tests."""
    data_dir = os.environ["MRV_DATA_DIR"]
    yield data_dir
    shutil.rmtree(data_dir, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def make_pipeline(tmp_path):
    """Factory for an isolated orchestrator backed by a fresh database."""
    created = []

    def factory(overrides=None, compute_functions=None, sleeps=None):
        config = make_runtime_config(
            {
                "storage": {"data_dir": str(tmp_path)},
                "jobs": {"backoff_seconds": 0.0},
                **(overrides or {}),
            }
        )
        sleeper = sleeps.append if sleeps is not None else (lambda seconds: None)
        orchestrator = PipelineOrchestrator(config, compute_functions=compute_functions, job_sleep=sleeper)
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        orchestrator.shutdown()


@pytest.fixture
def pipeline(make_pipeline):
    return make_pipeline()


@pytest.fixture
def project(pipeline):
    return pipeline.create_project("Test forest", "Inventory fixture")


def tree_rows(count=20):
    """Clean tree measurements that pass every quality rule."""
    return [
        {
            "plot_id": f"P{index // 10 + 1}",
            "tree_no": str(index % 10 + 1),
            "species_code": SPECIES[index % len(SPECIES)],
            "diameter": 10.0 + index % 50,
            "height": 8.0 + index % 20 if index % 2 == 0 else None,
            "physiography": ZONES[index % len(ZONES)],
            "lean_angle": 5.0 if index % 3 == 0 else 0.0,
        }
        for index in range(count)
    ]


@pytest.fixture
def rows():
    return tree_rows


@pytest.fixture
def imported(pipeline, project):
    """Project with 20 clean records committed through the import stage."""
    pipeline.advance(project.id, "import", ImportParams(label="fixture", rows=tree_rows()).model_dump())
    return project


@pytest.fixture
def wait_for_job():
    """Poll a tracker until the job is terminal."""

    def wait(tracker, job_id, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            job = tracker.status(job_id)
            if job.state.is_terminal:
                return job
            time.sleep(0.01)
        raise AssertionError(f"Job {job_id} did not finish within {timeout}s")

    return wait
