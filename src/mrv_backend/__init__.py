"""
MRV Backend - REST API for the forest-inventory processing pipeline

This package provides a FastAPI-based web service that drives a forest
inventory project through its data-processing stages. It enables:

- CSV tree-measurement imports with dry-run previews
- Data quality checks with ignore/unignore and bulk record corrections
- Cleaning, HD-model and allometric-model assignment
- Asynchronous height, slanted-height, volume-ratio and biomass jobs
- Export of computed tree biometrics, optionally uploaded to S3

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - orchestrator: Stage sequencing, preconditions and per-stage locking
    - stage_runner: Synchronous stage handlers
    - job_tracker: Async job lifecycle, retries and cancellation
    - record_store / issue_registry: Tree records and data-quality issues
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn mrv_backend.main:app --reload --host 0.0.0.0 --port 8000
"""
