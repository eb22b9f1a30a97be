# api.py
from __future__ import annotations

import os
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from .buildlog import BuildLogRepository, SqlBuildLogRepository
from .errors import LogRepositoryError

# -------------------- Schemas --------------------


class _Schema(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class SubmitResponse(_Schema):
    uuid: str
    submitted_at: datetime
    finished_at: Optional[datetime]
    outcome: Optional[str]
    targets: List[str]
    images: List[str]
    repo_hash: Optional[str]


class PhaseResponse(_Schema):
    phase: str
    endpoint: str
    status: str
    exit_code: Optional[int]
    started_at: datetime
    finished_at: datetime
    error_message: Optional[str]
    output: str


class ArtifactResponse(_Schema):
    hash: str
    name: str
    size: int
    job_uuid: str
    package_name: str
    package_version: str
    created_at: datetime


class ReleaseResponse(_Schema):
    artifact_hash: str
    store: str
    released_at: datetime
    job_uuid: str
    package_name: str
    package_version: str


class JobSummaryResponse(_Schema):
    uuid: str
    submit_uuid: str
    package_name: str
    package_version: str
    image: str
    state: str
    endpoint: Optional[str]
    cached: bool
    error_kind: Optional[str]
    error_message: Optional[str]
    skipped_because: Optional[str]


class JobResponse(JobSummaryResponse):
    input_hash: Optional[str]
    phases: List[PhaseResponse]
    artifacts: List[ArtifactResponse]


# -------------------- App --------------------


def get_repository(request: Request) -> BuildLogRepository:
    return request.app.state.repository


def create_app(repository: BuildLogRepository) -> FastAPI:
    """Read-only view of the build log."""
    app = FastAPI(title="buildyard build log")
    app.state.repository = repository

    @app.exception_handler(LogRepositoryError)
    async def _repository_error(request: Request, exc: LogRepositoryError):
        return JSONResponse(status_code=503, content={"detail": exc.message, "kind": exc.kind})

    @app.get("/submits", response_model=List[SubmitResponse])
    def list_submits(limit: int = Query(50, ge=1, le=1000), repo: BuildLogRepository = Depends(get_repository)):
        return repo.list_submits(limit=limit)

    @app.get("/submits/{submit_uuid}", response_model=SubmitResponse)
    def get_submit(submit_uuid: str, repo: BuildLogRepository = Depends(get_repository)):
        submit = repo.get_submit(submit_uuid)
        if submit is None:
            raise HTTPException(status_code=404, detail="Submit not found")
        return submit

    @app.get("/submits/{submit_uuid}/jobs", response_model=List[JobSummaryResponse])
    def jobs_of_submit(submit_uuid: str, repo: BuildLogRepository = Depends(get_repository)):
        if repo.get_submit(submit_uuid) is None:
            raise HTTPException(status_code=404, detail="Submit not found")
        return repo.jobs_of_submit(submit_uuid)

    @app.get("/jobs/{job_uuid}", response_model=JobResponse)
    def get_job(job_uuid: str, repo: BuildLogRepository = Depends(get_repository)):
        """Get job details including phases and logs."""
        job = repo.get_job(job_uuid)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    @app.get("/artifacts", response_model=List[ArtifactResponse])
    def list_artifacts(
        package: Optional[str] = None,
        limit: int = Query(100, ge=1, le=1000),
        repo: BuildLogRepository = Depends(get_repository),
    ):
        return repo.list_artifacts(package=package, limit=limit)

    @app.get("/releases", response_model=List[ReleaseResponse])
    def list_releases(
        store: Optional[str] = None,
        limit: int = Query(100, ge=1, le=1000),
        repo: BuildLogRepository = Depends(get_repository),
    ):
        return repo.list_releases(store=store, limit=limit)

    return app


def app_from_env() -> FastAPI:
    """`uvicorn --factory buildyard.api:app_from_env`, with BUILDYARD_DATABASE_URL set."""
    return create_app(SqlBuildLogRepository.from_url(os.environ["BUILDYARD_DATABASE_URL"]))
