from __future__ import annotations

import abc
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import LogRepositoryError
from ..model import Artifact, BuildJob, PhaseExecution
from .db import init_db, make_engine, make_session_factory
from .models import ArtifactRecord, Job, JobTransition, PhaseRecord, ReleaseRecord, Submit

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


# -------------------- Views --------------------

@dataclass(frozen=True)
class SubmitView:
    uuid: str
    submitted_at: datetime
    targets: List[str]
    images: List[str]
    repo_hash: Optional[str]
    finished_at: Optional[datetime]
    outcome: Optional[str]


@dataclass(frozen=True)
class PhaseView:
    phase: str
    endpoint: str
    status: str
    exit_code: Optional[int]
    started_at: datetime
    finished_at: datetime
    error_message: Optional[str]
    output: str


@dataclass(frozen=True)
class ArtifactView:
    hash: str
    name: str
    size: int
    job_uuid: str
    package_name: str
    package_version: str
    created_at: datetime


@dataclass(frozen=True)
class ReleaseView:
    artifact_hash: str
    store: str
    released_at: datetime
    job_uuid: str
    package_name: str
    package_version: str


@dataclass(frozen=True)
class JobView:
    uuid: str
    submit_uuid: str
    package_name: str
    package_version: str
    image: str
    state: str
    endpoint: Optional[str] = None
    input_hash: Optional[str] = None
    cached: bool = False
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    skipped_because: Optional[str] = None
    phases: List[PhaseView] = field(default_factory=list)
    artifacts: List[ArtifactView] = field(default_factory=list)


@dataclass(frozen=True)
class CachedBuild:
    """A previous successful build with the same input hash."""
    job_uuid: str
    artifacts: List[ArtifactView]


# -------------------- Interface --------------------

class BuildLogRepository(abc.ABC):
    """
    Durable record of submits, job transitions, phase executions,
    artifacts and releases.

    Write methods raise LogRepositoryError; callers treat that as
    degraded audit, never as a build failure.
    """

    @abc.abstractmethod
    def record_submit(self, submit_uuid: str, *, targets: Sequence[str], images: Sequence[str],
                      repo_hash: Optional[str], submitted_at: datetime | None = None) -> None: ...

    @abc.abstractmethod
    def record_jobs(self, submit_uuid: str, jobs: Iterable[BuildJob]) -> None: ...

    @abc.abstractmethod
    def record_job_transition(self, job: BuildJob) -> None: ...

    @abc.abstractmethod
    def record_phase(self, job_uuid: str, execution: PhaseExecution) -> None: ...

    @abc.abstractmethod
    def record_artifacts(self, job_uuid: str, artifacts: Sequence[Artifact]) -> None: ...

    @abc.abstractmethod
    def finish_submit(self, submit_uuid: str, outcome: str, finished_at: datetime | None = None) -> None: ...

    @abc.abstractmethod
    def find_cached_build(self, input_hash: str) -> Optional[CachedBuild]: ...

    # queries

    @abc.abstractmethod
    def list_submits(self, limit: int = 50) -> List[SubmitView]: ...

    @abc.abstractmethod
    def get_submit(self, submit_uuid: str) -> Optional[SubmitView]: ...

    @abc.abstractmethod
    def jobs_of_submit(self, submit_uuid: str) -> List[JobView]: ...

    @abc.abstractmethod
    def get_job(self, job_uuid: str) -> Optional[JobView]: ...

    @abc.abstractmethod
    def list_artifacts(self, package: Optional[str] = None, limit: int = 100) -> List[ArtifactView]: ...

    @abc.abstractmethod
    def list_releases(self, store: Optional[str] = None, limit: int = 100) -> List[ReleaseView]: ...


# -------------------- SQL implementation --------------------

class SqlBuildLogRepository(BuildLogRepository):
    """SQLAlchemy-backed build log. Writes are append-only except for closing a submit."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = make_session_factory(engine)

    @classmethod
    def from_url(cls, url: str, *, create: bool = True) -> SqlBuildLogRepository:
        try:
            engine = make_engine(url)
        except (SQLAlchemyError, ImportError) as e:
            # malformed url, unknown dialect or missing DBAPI driver
            raise LogRepositoryError(
                kind="database_unavailable",
                message=f"Cannot open build log database: {e}",
            ) from e
        if create:
            try:
                init_db(engine)
            except SQLAlchemyError as e:
                raise LogRepositoryError(kind="database_unavailable", message=str(e), details={"url": engine.url.render_as_string(hide_password=True)}) from e
        return cls(engine)

    @contextmanager
    def _write(self, what: str) -> Iterator[Session]:
        try:
            with self._sessions() as s:
                with s.begin():
                    yield s
        except SQLAlchemyError as e:
            raise LogRepositoryError(kind="write_failed", message=f"Cannot record {what}: {e}") from e

    @contextmanager
    def _read(self) -> Iterator[Session]:
        try:
            with self._sessions() as s:
                yield s
        except SQLAlchemyError as e:
            raise LogRepositoryError(kind="read_failed", message=str(e)) from e

    # ---- writes ----

    def record_submit(self, submit_uuid, *, targets, images, repo_hash, submitted_at=None):
        with self._write("submit") as s:
            s.add(Submit(
                uuid=submit_uuid,
                submitted_at=submitted_at or now_utc(),
                targets=list(targets),
                images=list(images),
                repo_hash=repo_hash,
            ))

    def record_jobs(self, submit_uuid, jobs):
        with self._write("jobs") as s:
            for job in jobs:
                s.add(Job(
                    uuid=job.uuid,
                    submit_uuid=submit_uuid,
                    package_name=job.spec.name,
                    package_version=job.spec.version,
                    image=job.spec.image,
                    phases=list(job.spec.phases),
                ))

    def record_job_transition(self, job):
        with self._write(f"transition of {job.id}") as s:
            s.add(JobTransition(
                job_uuid=job.uuid,
                state=job.state.value,
                at=now_utc(),
                endpoint=job.endpoint,
                input_hash=job.input_hash,
                cached=job.cached,
                error_kind=job.error_kind,
                error_message=job.error_message,
                skipped_because=str(job.skipped_because) if job.skipped_because else None,
            ))

    def record_phase(self, job_uuid, execution):
        with self._write(f"phase {execution.phase}") as s:
            s.add(PhaseRecord(
                job_uuid=job_uuid,
                phase=execution.phase,
                endpoint=execution.endpoint,
                status=execution.status.value,
                exit_code=execution.exit_code,
                output=execution.output,
                error_message=execution.error_message,
                started_at=execution.started_at,
                finished_at=execution.finished_at,
            ))

    def record_artifacts(self, job_uuid, artifacts):
        at = now_utc()
        with self._write("artifacts") as s:
            for a in artifacts:
                s.add(ArtifactRecord(job_uuid=job_uuid, hash=a.hash, name=a.name, size=a.size, created_at=at))
                for store in a.stores:
                    s.add(ReleaseRecord(job_uuid=job_uuid, artifact_hash=a.hash, store=store, released_at=at))

    def finish_submit(self, submit_uuid, outcome, finished_at=None):
        with self._write("submit outcome") as s:
            submit = s.get(Submit, submit_uuid)
            if submit is None:
                raise LogRepositoryError(kind="unknown_submit", message=f"Submit {submit_uuid} was never recorded")
            submit.outcome = outcome
            submit.finished_at = finished_at or now_utc()

    def find_cached_build(self, input_hash):
        with self._read() as s:
            q = (
                sa.select(JobTransition.job_uuid)
                .where(JobTransition.input_hash == input_hash, JobTransition.state == "succeeded")
                .order_by(JobTransition.id.desc())
                .limit(1)
            )
            job_uuid = s.execute(q).scalar_one_or_none()
            if job_uuid is None:
                return None
            return CachedBuild(job_uuid=job_uuid, artifacts=self._artifacts(s, ArtifactRecord.job_uuid == job_uuid))

    # ---- queries ----

    @staticmethod
    def _submit_view(row: Submit) -> SubmitView:
        return SubmitView(
            uuid=row.uuid,
            submitted_at=row.submitted_at,
            targets=list(row.targets or []),
            images=list(row.images or []),
            repo_hash=row.repo_hash,
            finished_at=row.finished_at,
            outcome=row.outcome,
        )

    def list_submits(self, limit=50):
        with self._read() as s:
            rows = s.execute(sa.select(Submit).order_by(Submit.submitted_at.desc()).limit(limit)).scalars()
            return [self._submit_view(r) for r in rows]

    def get_submit(self, submit_uuid):
        with self._read() as s:
            row = s.get(Submit, submit_uuid)
            return self._submit_view(row) if row is not None else None

    @staticmethod
    def _latest_transitions(s: Session, job_uuids: Sequence[str]) -> Dict[str, JobTransition]:
        latest: Dict[str, JobTransition] = {}
        if not job_uuids:
            return latest
        q = sa.select(JobTransition).where(JobTransition.job_uuid.in_(job_uuids)).order_by(JobTransition.id)
        for t in s.execute(q).scalars():
            latest[t.job_uuid] = t
        return latest

    @staticmethod
    def _job_view(job: Job, t: Optional[JobTransition], phases=(), artifacts=()) -> JobView:
        return JobView(
            uuid=job.uuid,
            submit_uuid=job.submit_uuid,
            package_name=job.package_name,
            package_version=job.package_version,
            image=job.image,
            state=t.state if t is not None else "pending",
            endpoint=t.endpoint if t is not None else None,
            input_hash=t.input_hash if t is not None else None,
            cached=bool(t.cached) if t is not None else False,
            error_kind=t.error_kind if t is not None else None,
            error_message=t.error_message if t is not None else None,
            skipped_because=t.skipped_because if t is not None else None,
            phases=list(phases),
            artifacts=list(artifacts),
        )

    def jobs_of_submit(self, submit_uuid):
        with self._read() as s:
            jobs = list(s.execute(
                sa.select(Job).where(Job.submit_uuid == submit_uuid).order_by(Job.package_name, Job.package_version)
            ).scalars())
            latest = self._latest_transitions(s, [j.uuid for j in jobs])
            return [self._job_view(j, latest.get(j.uuid)) for j in jobs]

    def get_job(self, job_uuid):
        with self._read() as s:
            job = s.get(Job, job_uuid)
            if job is None:
                return None
            latest = self._latest_transitions(s, [job_uuid])
            phases = [
                PhaseView(
                    phase=p.phase,
                    endpoint=p.endpoint,
                    status=p.status,
                    exit_code=p.exit_code,
                    started_at=p.started_at,
                    finished_at=p.finished_at,
                    error_message=p.error_message,
                    output=p.output,
                )
                for p in s.execute(
                    sa.select(PhaseRecord).where(PhaseRecord.job_uuid == job_uuid).order_by(PhaseRecord.id)
                ).scalars()
            ]
            artifacts = self._artifacts(s, ArtifactRecord.job_uuid == job_uuid)
            return self._job_view(job, latest.get(job_uuid), phases, artifacts)

    @staticmethod
    def _artifacts(s: Session, *where, limit: Optional[int] = None) -> List[ArtifactView]:
        q = (
            sa.select(ArtifactRecord, Job.package_name, Job.package_version)
            .join(Job, Job.uuid == ArtifactRecord.job_uuid)
            .where(*where)
            .order_by(ArtifactRecord.id.desc())
        )
        if limit is not None:
            q = q.limit(limit)
        return [
            ArtifactView(
                hash=a.hash,
                name=a.name,
                size=a.size,
                job_uuid=a.job_uuid,
                package_name=name,
                package_version=version,
                created_at=a.created_at,
            )
            for a, name, version in s.execute(q)
        ]

    def list_artifacts(self, package=None, limit=100):
        with self._read() as s:
            where = [Job.package_name == package] if package else []
            return self._artifacts(s, *where, limit=limit)

    def list_releases(self, store=None, limit=100):
        with self._read() as s:
            q = (
                sa.select(ReleaseRecord, Job.package_name, Job.package_version)
                .join(Job, Job.uuid == ReleaseRecord.job_uuid)
                .order_by(ReleaseRecord.id.desc())
                .limit(limit)
            )
            if store:
                q = q.where(ReleaseRecord.store == store)
            return [
                ReleaseView(
                    artifact_hash=r.artifact_hash,
                    store=r.store,
                    released_at=r.released_at,
                    job_uuid=r.job_uuid,
                    package_name=name,
                    package_version=version,
                )
                for r, name, version in s.execute(q)
            ]
