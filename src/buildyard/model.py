# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True, order=True)
class PackageId:
    """Identity of a package: (name, version)."""
    name: str
    version: str

    def __str__(self) -> str:
        return f"{self.name} {self.version}"


@dataclass(frozen=True)
class Dependency:
    """
    A dependency as written in a package spec.

    `version` may be omitted; it then resolves only if the catalog holds
    exactly one version of `name`.
    """
    name: str
    version: str | None = None

    def __str__(self) -> str:
        return self.name if self.version is None else f"{self.name} {self.version}"


SOURCE_HASH_TYPES = ("sha1", "sha256", "sha512")


@dataclass(frozen=True)
class PackageSource:
    """A source file a package builds from, pinned by its hash."""
    name: str
    url: str
    hash_type: str
    hash: str
    download_manually: bool = False

    @property
    def file_name(self) -> str:
        return f"{self.name}-{self.hash}.source"


@dataclass(frozen=True)
class PackageSpec:
    """
    A package as the graph builder and executor see it.
    Immutable once loaded for a run.
    """
    name: str
    version: str
    image: str
    script: str
    phases: Tuple[str, ...]
    dependencies: Tuple[Dependency, ...] = ()

    # requested environment: name -> value
    environment: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    allowed_images: Optional[Tuple[str, ...]] = None
    denied_images: Optional[Tuple[str, ...]] = None

    # glob patterns relative to the container output dir, empty = everything
    outputs: Tuple[str, ...] = ()

    sources: Tuple[PackageSource, ...] = ()

    @property
    def id(self) -> PackageId:
        return PackageId(self.name, self.version)


class JobState(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED, JobState.ABORTED})


class PhaseStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMEOUT = "timeout"
    ABORTED = "aborted"


@dataclass
class PhaseExecution:
    """One container run: one phase of one job."""
    phase: str
    endpoint: str
    status: PhaseStatus
    exit_code: int | None
    output: str
    started_at: datetime
    finished_at: datetime
    error_message: str | None = None

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> bool:
        return self.status is PhaseStatus.SUCCEEDED


@dataclass(frozen=True)
class Artifact:
    """A published, content-addressed build output."""
    hash: str
    name: str
    size: int
    package: PackageId
    stores: Tuple[str, ...] = ()


@dataclass
class BuildJob:
    """
    One node of a BuildGraph. Only the scheduler's coordinator mutates it.
    """
    index: int
    spec: PackageSpec
    uuid: str
    state: JobState = JobState.PENDING
    phases: List[PhaseExecution] = field(default_factory=list)
    endpoint: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    artifacts: List[Artifact] = field(default_factory=list)
    error_kind: str | None = None
    error_message: str | None = None
    skipped_because: PackageId | None = None
    cached: bool = False
    input_hash: str | None = None

    @property
    def id(self) -> PackageId:
        return self.spec.id

    @property
    def name(self) -> str:
        return self.spec.name


# ----------------------------------------------------------------------
# Run summary
# ----------------------------------------------------------------------

class RunState(str, enum.Enum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    COMPLETED = "completed"


class RunOutcome(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial-failure"
    ABORTED = "aborted"


@dataclass(frozen=True)
class PhaseReport:
    phase: str
    status: PhaseStatus
    exit_code: int | None
    duration: float
    endpoint: str


@dataclass(frozen=True)
class JobReport:
    package: PackageId
    uuid: str
    state: JobState
    endpoint: str | None
    phases: Tuple[PhaseReport, ...]
    artifacts: Tuple[str, ...]
    error_kind: str | None = None
    error_message: str | None = None
    skipped_because: PackageId | None = None
    cached: bool = False
    log_tail: Tuple[str, ...] = ()

    @classmethod
    def from_job(cls, job: BuildJob, tail_lines: int = 10) -> JobReport:
        tail: Tuple[str, ...] = ()
        # only when the last recorded phase is the one that failed
        if (
            job.state is JobState.FAILED
            and job.phases
            and job.phases[-1].status is not PhaseStatus.SUCCEEDED
            and tail_lines > 0
        ):
            lines = job.phases[-1].output.splitlines()
            tail = tuple(lines[-tail_lines:])
        return cls(
            package=job.id,
            uuid=job.uuid,
            state=job.state,
            endpoint=job.endpoint,
            phases=tuple(
                PhaseReport(
                    phase=p.phase,
                    status=p.status,
                    exit_code=p.exit_code,
                    duration=p.duration,
                    endpoint=p.endpoint,
                )
                for p in job.phases
            ),
            artifacts=tuple(a.hash for a in job.artifacts),
            error_kind=job.error_kind,
            error_message=job.error_message,
            skipped_because=job.skipped_because,
            cached=job.cached,
            log_tail=tail,
        )


@dataclass
class RunSummary:
    """What a run hands back to its caller."""
    submit_uuid: str
    outcome: RunOutcome
    jobs: List[JobReport]
    started_at: datetime
    finished_at: datetime
    warnings: List[str] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in JobState if s.terminal}
        for j in self.jobs:
            out[j.state.value] = out.get(j.state.value, 0) + 1
        return out

    def job(self, name: str) -> JobReport:
        for j in self.jobs:
            if j.package.name == name:
                return j
        raise KeyError(name)

    @property
    def succeeded(self) -> bool:
        return all(j.state is JobState.SUCCEEDED for j in self.jobs)

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1
